"""Owned, zeroing memory for secret material.

Secret bytes are never held in plain ``bytes`` objects by nixforge once they
have been resolved: they live in a ``LockedBuffer`` whose backing
``bytearray`` is overwritten with zeros on release.  The pages are not
locked (no ``mlock``); "locked" means access is refused after release.
Buffers are context managers, so the usual pattern is::

    with LockedBuffer.take(raw) as buf:
        use(buf.view())
"""

from __future__ import annotations

import logging
from types import TracebackType

from nixforge.errors import SecretDestroyedError

logger = logging.getLogger(__name__)


def wipe(data: bytearray | memoryview) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    view = data if isinstance(data, memoryview) else memoryview(data)
    view[:] = bytes(len(view))


class LockedBuffer:
    """Zeroing buffer, not page-locked: a bytearray wiped exactly once on release.

    Use ``LockedBuffer.take(raw)`` to adopt a mutable buffer without copying
    (the caller's reference then aliases the protected memory), or the
    constructor to copy from any bytes-like object.
    """

    __slots__ = ("_data", "_destroyed")

    def __init__(self, data: bytes | bytearray | memoryview = b"") -> None:
        self._data = bytearray(data)
        self._destroyed = False

    @classmethod
    def take(cls, data: bytearray) -> LockedBuffer:
        """Adopt ``data`` as the backing storage."""
        buf = cls.__new__(cls)
        buf._data = data
        buf._destroyed = False
        return buf

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def view(self) -> memoryview:
        """Read-only view of the secret bytes."""
        if self._destroyed:
            raise SecretDestroyedError("secret buffer has been destroyed")
        return memoryview(self._data).toreadonly()

    def size(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def state(self) -> memoryview:
        """Read-only view of the backing storage, valid even after destroy.

        Exposed so callers can check erasure; everything else uses ``view``.
        """
        return memoryview(self._data).toreadonly()

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def destroy(self) -> None:
        """Zero the backing storage.  Safe to call more than once."""
        if self._destroyed:
            return
        wipe(self._data)
        self._destroyed = True

    def __enter__(self) -> LockedBuffer:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.destroy()

    def __del__(self) -> None:
        if not getattr(self, "_destroyed", True):
            logger.debug("LockedBuffer released without destroy(); wiping")
            self.destroy()

    def __repr__(self) -> str:
        state = "destroyed" if self._destroyed else f"{len(self._data)} bytes"
        return f"<LockedBuffer {state}>"
