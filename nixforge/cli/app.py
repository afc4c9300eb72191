"""Main Typer application — imports and registers all CLI commands.

Entry point: ``nixforge`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from nixforge import __version__
from nixforge.cli.commands.address import address_cmd
from nixforge.cli.commands.apply import apply_cmd
from nixforge.cli.commands.destroy import destroy_cmd
from nixforge.cli.commands.plan import plan_cmd
from nixforge.cli.common import configure_logging, console
from nixforge.config import ForgeSettings

app = typer.Typer(
    name="nixforge",
    help="nixforge: converge remote NixOS machines to a declared configuration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="plan", help="Show which instances would change.")(plan_cmd)
app.command(name="apply", help="Build, push and activate changed instances.")(apply_cmd)
app.command(name="destroy", help="Forget instances (no remote action).")(destroy_cmd)
app.command(name="address", help="Show the address each instance would use.")(address_cmd)


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    settings = ForgeSettings()
    if verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})
    configure_logging(settings)


@app.command(name="version", help="Print the nixforge version.")
def version_cmd() -> None:
    console.print(f"nixforge {__version__}")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
