"""Remote shell transport: ssh invocations backed by transient config files.

Structured ssh settings are serialized to a temporary ``ssh_config`` file and
passed with ``-F``.  When a bastion is configured, an inner ``ssh -W``
invocation becomes the outer connection's ``ProxyCommand``.  Every file a
transport creates is removed by ``close()``, including when ``open()`` fails
halfway.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import tempfile
from collections.abc import Sequence
from pathlib import Path
from types import TracebackType
from typing import IO, Any

from nixforge.core.process import ProcessInvoker, Stdin
from nixforge.models.settings import SshEndpointSettings, SshSettings

logger = logging.getLogger(__name__)

KEY_HOST = "host"
KEY_USER = "user"
KEY_PORT = "port"
KEY_PROXY_COMMAND = "proxycommand"


class SshConfigMap:
    """Insertion-ordered ssh options with case-insensitive keys.

    Keys are stored lower-cased; setting an existing key replaces its value
    in place, so serialization order is stable for identical settings.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def set(self, key: str, value: str) -> None:
        self._store[key.lower()] = value

    def get(self, key: str) -> str | None:
        return self._store.get(key.lower())

    def extend(self, other: SshConfigMap) -> None:
        for key, value in other.pairs():
            self.set(key, value)

    def copy(self) -> SshConfigMap:
        clone = SshConfigMap()
        clone._store = dict(self._store)
        return clone

    def pairs(self) -> list[tuple[str, str]]:
        return list(self._store.items())

    def serialize(self) -> str:
        return "".join(f"{key} {value}\n" for key, value in self._store.items())

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._store


def config_map_from_settings(
    settings: SshEndpointSettings, base: SshConfigMap | None = None
) -> SshConfigMap:
    """Apply endpoint settings on top of ``base`` (or an empty map)."""
    config = base.copy() if base is not None else SshConfigMap()
    if settings.host:
        config.set(KEY_HOST, settings.host)
    if settings.user:
        config.set(KEY_USER, settings.user)
    if settings.port:
        config.set(KEY_PORT, str(settings.port))
    for key, value in settings.config.items():
        config.set(key, value)
    return config


class RemoteTransport:
    """Builds and runs ssh invocations against one target.

    Usage::

        with RemoteTransport(ssh_settings, invoker=invoker) as transport:
            transport.run(address, "uname", ["-a"])

    Parameters
    ----------
    settings:
        Target ssh settings, including an optional bastion.
    invoker:
        Runs the resulting ssh commands.
    ssh_program / tar_program:
        Executable names used for local ssh and remote tar.
    temp_dir:
        Directory for generated config files (system default if None).
    """

    def __init__(
        self,
        settings: SshSettings,
        *,
        invoker: ProcessInvoker | None = None,
        ssh_program: str = "ssh",
        tar_program: str = "tar",
        temp_dir: Path | None = None,
    ) -> None:
        self.settings = settings
        self.ssh_program = ssh_program
        self.tar_program = tar_program
        self._invoker = invoker or ProcessInvoker()
        self._temp_dir = temp_dir
        self._stack = contextlib.ExitStack()
        self._arguments: list[str] | None = None
        self._files: list[Path] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> RemoteTransport:
        """Materialize config files.  Idempotent while open."""
        if self._arguments is not None:
            return self
        with contextlib.ExitStack() as stack:
            stack.callback(self._reset)
            self._arguments = self._build_arguments()
            stack.pop_all()
        return self

    def close(self) -> None:
        """Remove every generated file.  Safe to call more than once."""
        self._reset()

    def _reset(self) -> None:
        self._stack.close()
        self._stack = contextlib.ExitStack()
        self._arguments = None
        self._files = []

    def __enter__(self) -> RemoteTransport:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def config_files(self) -> list[Path]:
        """Config files currently owned by this transport."""
        return list(self._files)

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def _build_arguments(self) -> list[str]:
        config = SshConfigMap()

        bastion = self.settings.bastion
        if bastion is not None and bastion.host:
            # Base settings extended with bastion-specific ones
            inner_map = config_map_from_settings(
                bastion, base=config_map_from_settings(self.settings)
            )
            inner = [
                self.ssh_program,
                *self._config_arguments(inner_map, "ssh_bastion_config."),
                "-N",
                "-W", "%h:%p",
                bastion.host,
            ]
            # Set first so outer settings override it
            config.set(KEY_PROXY_COMMAND, shlex.join(inner))

        config = config_map_from_settings(self.settings, base=config)
        return self._config_arguments(config, "ssh_config.")

    def _config_arguments(self, config: SshConfigMap, prefix: str) -> list[str]:
        if not len(config):
            return []
        path = self._materialize(config.serialize(), prefix)
        return ["-F", str(path)]

    def _materialize(self, content: str, prefix: str) -> Path:
        fd, name = tempfile.mkstemp(prefix=prefix, dir=self._temp_dir)
        path = Path(name)
        self._stack.callback(_remove, path)
        self._files.append(path)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        logger.debug("Wrote ssh config %s", path)
        return path

    def _require_open(self) -> list[str]:
        if self._arguments is None:
            self.open()
        assert self._arguments is not None
        return self._arguments

    def ssh_opts(self) -> list[str]:
        """Options to pass through ``NIX_SSHOPTS`` (e.g. ``-F <file>``)."""
        return list(self._require_open())

    def prefix(self, host: str) -> list[str]:
        """``ssh [-F file] <host>``: prepend to a remote command."""
        return [self.ssh_program, *self._require_open(), host]

    def command(self, host: str, program: str, args: Sequence[str] = ()) -> list[str]:
        return [*self.prefix(host), program, *args]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        host: str,
        program: str,
        args: Sequence[str] = (),
        *,
        stdin: Stdin | None = None,
    ) -> Any:
        """Run ``program args...`` on ``host`` and return its stdout."""
        argv = self.command(host, program, args)
        return self._invoker.execute(argv[0], argv[1:], stdin=stdin)

    def extract_archive(self, host: str, reader: IO[bytes] | Stdin) -> None:
        """Stream a tar archive into ``tar -x -C /`` on ``host``."""
        self.run(host, self.tar_program, ["-x", "-C", "/"], stdin=reader)


def _remove(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()
