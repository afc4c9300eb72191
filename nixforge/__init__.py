"""nixforge: converge remote NixOS machines to a declared configuration.

  - Builds a system closure with ``nix build`` through a wrapper expression
  - Ships secrets as a tar stream held in zeroing memory
  - Copies the closure over ssh (optionally via a bastion) and activates it
  - Retries secret sync and push together; build and switch fail fast
  - Skips all remote work when artifacts and secrets are unchanged
"""

__version__ = "0.1.0"
__description__ = "Remote NixOS convergence over ssh with secret distribution"

from nixforge.core.controller import ConvergenceController
from nixforge.core.instance import Instance
from nixforge.cli.app import app as cli

__all__ = ["ConvergenceController", "Instance", "cli", "__version__"]
