"""Secret resolution, drift fingerprinting and transport archives.

A ``SecretStore`` resolves declared secrets through a pluggable backend,
keeps the resolved bytes in ``LockedBuffer`` objects, and is the single owner
of that memory until ``destroy()``.  Resolution is all-or-nothing: if any
secret fails, everything resolved so far is wiped before the error
propagates.

Backends
--------
filesystem
    Reads the source path from the local filesystem.
command
    Runs ``<name> <arguments...> <source>`` and takes its stdout.
gopass
    ``gopass show -n <source>``, optionally against a specific store.
"""

from __future__ import annotations

import hashlib
import hmac
import io
import logging
import os
import random
import secrets as _random_bytes
import tarfile
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import Protocol, runtime_checkable

from nixforge.core.hasher import sha256_digest
from nixforge.core.process import Environment, ProcessInvoker
from nixforge.core.secure_buffer import LockedBuffer, wipe
from nixforge.errors import (
    NixforgeError,
    SecretResolutionError,
    UnsupportedSecretsBackendError,
)
from nixforge.models.secrets import SecretDescriptor, SecretFingerprint
from nixforge.models.settings import SecretsSettings

logger = logging.getLogger(__name__)

SALT_SIZE = 32
KEY_SIZE = 32
DEFAULT_KDF_MIN_ITERATIONS = 32
DEFAULT_KDF_MAX_ITERATIONS = 64

BACKEND_FILESYSTEM = "filesystem"
BACKEND_COMMAND = "command"
BACKEND_GOPASS = "gopass"
SUPPORTED_BACKENDS: tuple[str, ...] = (BACKEND_FILESYSTEM, BACKEND_COMMAND, BACKEND_GOPASS)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@runtime_checkable
class SecretsBackend(Protocol):
    """Anything that can fetch raw secret bytes keyed by source."""

    @property
    def name(self) -> str:
        ...

    def get(self, source: str) -> bytearray:
        ...


class FilesystemBackend:
    """Reads secrets from local files."""

    name = BACKEND_FILESYSTEM

    def get(self, source: str) -> bytearray:
        path = Path(source)
        if path.is_dir():
            raise SecretResolutionError(
                source, self.name, "got directory as secret, this is not supported"
            )
        try:
            with path.open("rb", buffering=0) as fd:
                size = os.fstat(fd.fileno()).st_size
                buf = bytearray(size)
                read = fd.readinto(buf)
                if read != size:
                    # File changed underneath us; fall back to reading to EOF
                    del buf[read:]
                    while chunk := fd.read(4096):
                        buf.extend(chunk)
        except OSError as exc:
            raise SecretResolutionError(source, self.name, str(exc)) from exc
        return buf


class CommandBackend:
    """Fetches secrets from an arbitrary command's stdout.

    Parameters
    ----------
    command:
        Program name, looked up in PATH.
    arguments:
        Arguments placed before the secret source.
    environment:
        Extra environment variables for the command.
    """

    name = BACKEND_COMMAND

    def __init__(
        self,
        command: str,
        arguments: Sequence[str] = (),
        environment: Mapping[str, str] | None = None,
        *,
        invoker: ProcessInvoker | None = None,
    ) -> None:
        self.command = command
        self.arguments = list(arguments)
        self.environment = Environment(environment or {})
        # Secret contents must not be tee'd into the log
        self._invoker = invoker or ProcessInvoker(sink=None)

    def get(self, source: str) -> bytearray:
        try:
            out = self._invoker.execute(
                self.command, [*self.arguments, source], env=self.environment, raw=True
            )
        except NixforgeError as exc:
            raise SecretResolutionError(
                source, self.name, f"using {self.command!r} {self.arguments}: {exc}"
            ) from exc
        return out


class GopassBackend(CommandBackend):
    """Fetches secrets with ``gopass show -n``."""

    name = BACKEND_GOPASS

    def __init__(self, store: str | None = None, *, invoker: ProcessInvoker | None = None) -> None:
        environment = {}
        if store:
            environment["PASSWORD_STORE_DIR"] = os.path.expandvars(store)
        super().__init__("gopass", ["show", "-n"], environment, invoker=invoker)


def backend_from_settings(
    settings: SecretsSettings, *, invoker: ProcessInvoker | None = None
) -> SecretsBackend:
    """Instantiate the backend named by ``settings.provider``."""
    name = settings.provider.lower()
    if name == BACKEND_FILESYSTEM:
        return FilesystemBackend()
    if name == BACKEND_COMMAND:
        if settings.command is None:
            raise UnsupportedSecretsBackendError(
                "command (missing [secrets.command] settings)", SUPPORTED_BACKENDS
            )
        return CommandBackend(
            settings.command.name,
            settings.command.arguments,
            settings.command.environment,
            invoker=invoker,
        )
    if name == BACKEND_GOPASS:
        return GopassBackend(settings.gopass.store, invoker=invoker)
    raise UnsupportedSecretsBackendError(settings.provider, SUPPORTED_BACKENDS)


# ---------------------------------------------------------------------------
# Values and fingerprints
# ---------------------------------------------------------------------------


class SecretValue:
    """A resolved secret: its descriptor plus the protected bytes."""

    __slots__ = ("descriptor", "buffer")

    def __init__(self, descriptor: SecretDescriptor, buffer: LockedBuffer) -> None:
        self.descriptor = descriptor
        self.buffer = buffer

    def view(self) -> memoryview:
        return self.buffer.view()

    def destroy(self) -> None:
        self.buffer.destroy()

    def __repr__(self) -> str:
        return f"<SecretValue {self.descriptor.destination!r} {self.buffer!r}>"


def fingerprint_sum(values: Sequence[SecretValue], salt: bytes, iterations: int) -> bytes:
    """PBKDF2-HMAC-SHA256 over the concatenated SHA-256 of each secret."""
    material = bytearray()
    try:
        for value in values:
            material.extend(sha256_digest(value.view()))
        return hashlib.pbkdf2_hmac("sha256", bytes(material), salt, iterations, KEY_SIZE)
    finally:
        wipe(material)


def compute_fingerprint(
    values: Sequence[SecretValue],
    *,
    min_iterations: int = DEFAULT_KDF_MIN_ITERATIONS,
    max_iterations: int = DEFAULT_KDF_MAX_ITERATIONS,
) -> SecretFingerprint:
    """Fresh salt, pseudo-random iteration count, and the resulting sum."""
    salt = _random_bytes.token_bytes(SALT_SIZE)
    iterations = random.SystemRandom().randint(min_iterations, max_iterations)
    return SecretFingerprint(
        sum=fingerprint_sum(values, salt, iterations),
        salt=salt,
        kdf_iterations=iterations,
    )


def verify_fingerprint(values: Sequence[SecretValue], stored: SecretFingerprint) -> bool:
    """Recompute with the stored salt and iterations; constant-time compare."""
    return hmac.compare_digest(
        fingerprint_sum(values, stored.salt, stored.kdf_iterations), stored.sum
    )


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


class _BufferReader(io.RawIOBase):
    """Reads from a LockedBuffer without copying it whole."""

    def __init__(self, buffer: LockedBuffer) -> None:
        self._view = buffer.view()
        self._pos = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b: bytearray | memoryview) -> int:  # type: ignore[override]
        n = min(len(b), len(self._view) - self._pos)
        b[:n] = self._view[self._pos:self._pos + n]
        self._pos += n
        return n

    def close(self) -> None:
        self._view.release()
        super().close()


class SecretArchive:
    """An uncompressed tar stream of secrets, held in protected memory."""

    def __init__(self, buffer: LockedBuffer, members: int) -> None:
        self._buffer = buffer
        self.members = members

    def reader(self) -> io.RawIOBase:
        """A fresh binary reader positioned at the start of the archive."""
        return _BufferReader(self._buffer)

    def size(self) -> int:
        return len(self._buffer)

    @property
    def buffer(self) -> LockedBuffer:
        return self._buffer

    def destroy(self) -> None:
        self._buffer.destroy()

    def __enter__(self) -> SecretArchive:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.destroy()


def build_archive(values: Sequence[SecretValue], *, mtime: float | None = None) -> SecretArchive:
    """Assemble the tar archive in memory, one entry per secret."""
    stamp = time.time() if mtime is None else mtime
    raw = io.BytesIO()
    try:
        with tarfile.open(fileobj=raw, mode="w", format=tarfile.GNU_FORMAT) as tar:
            for value in values:
                desc = value.descriptor
                info = tarfile.TarInfo(name=desc.destination)
                info.size = len(value.buffer)
                info.uname = desc.owner
                info.gname = desc.group
                info.mode = desc.mode
                info.mtime = stamp
                tar.addfile(info, _BufferReader(value.buffer))
        with raw.getbuffer() as view:
            archive = LockedBuffer(view)
    finally:
        with raw.getbuffer() as view:
            wipe(view)
        raw.close()
    return SecretArchive(archive, len(values))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SecretStore:
    """Resolves and owns secret values for one convergence run.

    Parameters
    ----------
    backend:
        Where secret bytes come from.
    min_iterations / max_iterations:
        Bounds for the fingerprint KDF iteration count.
    """

    def __init__(
        self,
        backend: SecretsBackend,
        *,
        min_iterations: int = DEFAULT_KDF_MIN_ITERATIONS,
        max_iterations: int = DEFAULT_KDF_MAX_ITERATIONS,
    ) -> None:
        self.backend = backend
        self._min_iterations = min_iterations
        self._max_iterations = max_iterations
        self._values: list[SecretValue] | None = None

    @property
    def values(self) -> list[SecretValue]:
        return list(self._values or [])

    def resolve(self, descriptors: Sequence[SecretDescriptor]) -> list[SecretValue]:
        """Fetch every declared secret; all-or-nothing.

        Repeated calls return the already-resolved values.
        """
        if self._values is not None:
            return list(self._values)

        resolved: list[SecretValue] = []
        try:
            for desc in descriptors:
                resolved.append(SecretValue(desc, LockedBuffer.take(self._fetch(desc))))
        except BaseException:
            for value in resolved:
                value.destroy()
            raise

        logger.debug("Resolved %d secret(s) via %s backend", len(resolved), self.backend.name)
        self._values = resolved
        return list(resolved)

    def _fetch(self, desc: SecretDescriptor) -> bytearray:
        try:
            raw = self.backend.get(desc.source)
        except SecretResolutionError:
            raise
        except (OSError, NixforgeError) as exc:
            raise SecretResolutionError(desc.source, self.backend.name, str(exc)) from exc
        return raw if isinstance(raw, bytearray) else bytearray(raw)

    def _held(self, values: Sequence[SecretValue] | None) -> Sequence[SecretValue]:
        if values is not None:
            return values
        return self._values or []

    def fingerprint(self, values: Sequence[SecretValue] | None = None) -> SecretFingerprint:
        """Fingerprint ``values`` (default: the resolved ones) with a fresh salt."""
        return compute_fingerprint(
            self._held(values),
            min_iterations=self._min_iterations,
            max_iterations=self._max_iterations,
        )

    def verify_unchanged(
        self, stored: SecretFingerprint, values: Sequence[SecretValue] | None = None
    ) -> bool:
        return verify_fingerprint(self._held(values), stored)

    def to_archive(self, values: Sequence[SecretValue] | None = None) -> SecretArchive:
        return build_archive(self._held(values))

    def destroy(self) -> None:
        """Zero every held secret.  Idempotent."""
        if self._values is None:
            return
        for value in self._values:
            value.destroy()
        logger.debug("Destroyed %d secret(s)", len(self._values))
        self._values = None

    def __enter__(self) -> SecretStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.destroy()
