"""Per-instance state persistence.

Layout: {base_path}/{instance name}.json, one record per instance.  Writes go
through a temporary file in the same directory and are renamed into place.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError

from nixforge.errors import NixforgeError
from nixforge.models.state import InstanceState

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class StateStoreError(NixforgeError):
    """Raised when a state record cannot be read or the name is unusable."""


class StateStore:
    """JSON file store for ``InstanceState`` records.

    Parameters
    ----------
    base_path:
        Directory holding the state files.  Created on first write.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)

    @property
    def base_path(self) -> Path:
        return self._base

    def _path(self, name: str) -> Path:
        if not _SAFE_NAME.match(name):
            raise StateStoreError(f"invalid instance name for state file: {name!r}")
        return self._base / f"{name}.json"

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def load(self, name: str) -> InstanceState | None:
        """Return the stored state, or None if the instance has none."""
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return InstanceState.model_validate_json(path.read_bytes())
        except ValidationError as exc:
            raise StateStoreError(f"corrupt state file {path}: {exc}") from exc

    def names(self) -> list[str]:
        """Instance names that have stored state, sorted."""
        if not self._base.is_dir():
            return []
        return sorted(p.stem for p in self._base.glob("*.json"))

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, state: InstanceState) -> Path:
        """Atomically write ``state`` under its instance name."""
        path = self._path(state.name)
        self._base.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{state.name}.", suffix=".tmp", dir=self._base)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(state.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise
        logger.debug("Saved state for %s to %s", state.name, path)
        return path

    def delete(self, name: str) -> bool:
        """Remove the stored state.  Returns whether a record existed."""
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Deleted state for %s", name)
        return True
