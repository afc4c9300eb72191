"""nixforge CLI: Typer-based command-line interface.

Provides the ``nixforge`` command with subcommands to preview changes
(``plan``), converge instances (``apply``), forget them (``destroy``) and
show which address would be used (``address``).

All output uses Rich for formatted terminal display.
"""
