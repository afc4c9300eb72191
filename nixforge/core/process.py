"""External process execution with environment merging and live log tee.

Every tool nixforge drives (nix, nix-env, ssh, tar, secret backends) is run
through ``ProcessInvoker.execute``.  Output is captured in full and, when a
sink is configured, each line is also forwarded to the log as it arrives.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Mapping, Sequence
from typing import IO, Any, Protocol, runtime_checkable

from pydantic import TypeAdapter, ValidationError

from nixforge.core.secure_buffer import wipe
from nixforge.errors import SubprocessError, UnmarshalError

logger = logging.getLogger(__name__)

# Live subprocess output goes here unless another sink is supplied
output_logger = logging.getLogger("nixforge.process")

_CHUNK_SIZE = 64 * 1024

Stdin = bytes | bytearray | memoryview | IO[bytes]


# ---------------------------------------------------------------------------
# Unmarshalers
# ---------------------------------------------------------------------------


@runtime_checkable
class Unmarshaler(Protocol):
    """Decodes captured stdout into a structured value."""

    def unmarshal(self, data: bytes) -> Any:
        ...


class PassthroughUnmarshaler:
    """Returns the raw captured bytes without decoding."""

    def unmarshal(self, data: bytes) -> bytes:
        return data


class JSONUnmarshaler:
    """Decodes captured stdout as JSON."""

    def unmarshal(self, data: bytes) -> Any:
        try:
            return json.loads(data)
        except ValueError as exc:
            raise UnmarshalError(f"failed to decode JSON output: {exc}") from exc


class ModelUnmarshaler:
    """Decodes JSON stdout and validates it into a pydantic-compatible type.

    Parameters
    ----------
    type_:
        Any type ``pydantic.TypeAdapter`` accepts, e.g. ``list[Artifact]``.
    """

    def __init__(self, type_: Any) -> None:
        self._adapter = TypeAdapter(type_)

    def unmarshal(self, data: bytes) -> Any:
        try:
            return self._adapter.validate_json(data)
        except ValidationError as exc:
            raise UnmarshalError(f"unexpected command output: {exc}") from exc


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


class Environment:
    """Declared environment variables; each key may carry several values.

    Multiple values for one key are joined with a space when exported,
    which is how option lists such as ``NIX_SSHOPTS`` are passed.
    """

    def __init__(self, values: Mapping[str, str | Sequence[str]] | None = None) -> None:
        self._values: dict[str, list[str]] = {}
        for key, value in (values or {}).items():
            self.set(key, *([value] if isinstance(value, str) else value))

    def set(self, key: str, *values: str) -> Environment:
        self._values[key] = list(values)
        return self

    def add(self, key: str, *values: str) -> Environment:
        self._values.setdefault(key, []).extend(values)
        return self

    def __repr__(self) -> str:
        return f"Environment({self._values!r})"

    def to_dict(self) -> dict[str, str]:
        return {k: " ".join(v) for k, v in self._values.items()}

    def merged_with_process(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Inherited environment overlaid by declared values (declared wins)."""
        merged = dict(os.environ if base is None else base)
        merged.update(self.to_dict())
        return merged


# ---------------------------------------------------------------------------
# Invoker
# ---------------------------------------------------------------------------


class ProcessInvoker:
    """Runs external programs and captures their output.

    Parameters
    ----------
    sink:
        Logger receiving each output line while the process runs.  ``None``
        disables the tee; output is still captured.
    """

    def __init__(self, sink: logging.Logger | None = output_logger) -> None:
        self._sink = sink

    def execute(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        env: Environment | Mapping[str, str] | None = None,
        stdin: Stdin | None = None,
        unmarshaler: Unmarshaler | None = None,
        raw: bool = False,
    ) -> Any:
        """Run ``program args...`` to completion.

        Returns captured stdout as bytes, or the value decoded by
        ``unmarshaler``.  Raises ``SubprocessError`` on launch failure or
        nonzero exit, carrying the command line and captured stderr.

        With ``raw`` the capture buffer itself is returned as a mutable
        ``bytearray`` the caller owns and must wipe.  Stdout is then never
        sent to the sink, and it is zeroed here if the command fails.
        """
        command = [program, *args]
        if env is None:
            env = Environment()
        elif not isinstance(env, Environment):
            env = Environment(env)

        logger.info("running command: %s", shlex.join(command))
        stdout, stderr, returncode = self._run(
            command, env.merged_with_process(), stdin, tee=not raw
        )
        if returncode != 0:
            if raw:
                wipe(stdout)
            raise SubprocessError(command, stderr, returncode)

        if raw:
            return stdout
        return (unmarshaler or PassthroughUnmarshaler()).unmarshal(bytes(stdout))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(
        self,
        command: list[str],
        env: dict[str, str],
        stdin: Stdin | None,
        *,
        tee: bool = True,
    ) -> tuple[bytearray, bytes, int]:
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise SubprocessError(command, str(exc).encode("utf-8")) from exc

        stdout = bytearray()
        stderr = bytearray()
        with proc:
            threads = [
                threading.Thread(target=self._pump, args=(proc.stdout, stdout, tee), daemon=True),
                threading.Thread(target=self._pump, args=(proc.stderr, stderr, True), daemon=True),
            ]
            if stdin is not None:
                threads.append(
                    threading.Thread(target=_feed, args=(proc.stdin, stdin), daemon=True)
                )
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
            returncode = proc.wait()

        return stdout, bytes(stderr), returncode

    def _pump(self, stream: IO[bytes], buffer: bytearray, tee: bool) -> None:
        if tee and self._sink is not None:
            for line in iter(stream.readline, b""):
                buffer.extend(line)
                self._sink.info(line.decode("utf-8", errors="replace").rstrip("\n"))
            return
        # Scratch buffer is zeroed on exit; no per-line bytes objects
        chunk = bytearray(_CHUNK_SIZE)
        try:
            while n := stream.readinto(chunk):
                buffer.extend(memoryview(chunk)[:n])
        finally:
            wipe(chunk)


def _feed(pipe: IO[bytes], source: Stdin) -> None:
    """Stream ``source`` into the child's stdin, then close it."""
    try:
        if isinstance(source, (bytes, bytearray, memoryview)):
            view = memoryview(source)
            for offset in range(0, len(view), _CHUNK_SIZE):
                pipe.write(view[offset:offset + _CHUNK_SIZE])
        else:
            while chunk := source.read(_CHUNK_SIZE):
                pipe.write(chunk)
    except BrokenPipeError:
        # The child exited early; its exit status reports the failure.
        pass
    finally:
        try:
            pipe.close()
        except BrokenPipeError:
            pass
