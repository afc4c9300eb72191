"""Nix command construction and the build orchestrator.

``NixCommand`` turns ``NixSettings`` into argument lists for ``nix build``,
``nix copy`` and profile installation.  ``NixMode`` is consulted only here:
the rest of nixforge never branches on the nix dialect.

``Builder`` evaluates a NixOS configuration through a wrapper expression and
returns the resulting ``ArtifactSet``.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator, Sequence
from importlib import resources
from pathlib import Path

from nixforge.core.process import Environment, ModelUnmarshaler, ProcessInvoker
from nixforge.errors import AmbiguousArtifactError, NoArtifactProducedError
from nixforge.models.artifacts import Artifact, ArtifactSet
from nixforge.models.settings import NixMode, NixSettings

logger = logging.getLogger(__name__)

NIX_SSHOPTS = "NIX_SSHOPTS"
FEATURE_NIX_COMMAND = "nix-command"
WRAPPER_RESOURCE = "build_wrapper.nix"


def load_build_wrapper() -> bytes:
    """Contents of the default wrapper expression shipped with nixforge."""
    return resources.files("nixforge.data").joinpath(WRAPPER_RESOURCE).read_bytes()


class NixCommand:
    """Argument lists for one nix installation.

    Parameters
    ----------
    settings:
        Dialect and flags.
    program / env_program:
        ``nix`` and ``nix-env`` executables.
    ssh_opts:
        Options exported as ``NIX_SSHOPTS`` so ``nix copy`` reaches the
        target through the same ssh config as every other remote call.
    """

    def __init__(
        self,
        settings: NixSettings,
        *,
        program: str = "nix",
        env_program: str = "nix-env",
        ssh_opts: Sequence[str] = (),
    ) -> None:
        self.settings = settings
        self.program = program
        self.env_program = env_program
        self.ssh_opts = list(ssh_opts)

    @property
    def mode(self) -> NixMode:
        return self.settings.mode

    def feature_arguments(self) -> list[str]:
        if self.mode is NixMode.COMPAT:
            return ["--extra-experimental-features", FEATURE_NIX_COMMAND]
        return []

    def global_arguments(self) -> list[str]:
        """Flags shared by every ``nix`` subcommand."""
        args: list[str] = []
        if self.settings.show_trace:
            args.append("--show-trace")
        if self.settings.cores:
            args += ["--cores", str(self.settings.cores)]
        if self.settings.use_substitutes:
            args.append("--builders-use-substitutes")
        return args + self.feature_arguments()

    def environment(self) -> Environment:
        env = Environment()
        if self.ssh_opts:
            env.add(NIX_SSHOPTS, *self.ssh_opts)
        return env

    def build_arguments(
        self, wrapper: Path, system: str, settings_json: str, configuration: Path
    ) -> list[str]:
        return [
            "build",
            "-f", str(wrapper),
            "--arg", "system", json.dumps(system),
            "--argstr", "settings", settings_json,
            "--argstr", "configuration", str(configuration),
            "--json",
            "--no-link",
            *self.global_arguments(),
        ]

    def copy_arguments(self, path: str, target: str) -> list[str]:
        args = ["copy", "--to", self.settings.copy_protocol.uri(target), path]
        if self.settings.use_substitutes:
            args.append("--use-substitutes")
        return args + self.global_arguments()

    def profile_install_command(self, path: str) -> list[str]:
        """Full argv (program included) that installs ``path`` as the profile.

        Meant to run on the target, so it is returned as a single list.
        """
        profile = self.settings.profile
        if self.mode is NixMode.COMPAT:
            return [self.env_program, "--profile", profile, "--set", path]
        return [
            self.program, "profile", "install",
            "--profile", profile,
            "--derivation", path,
        ]

    def activation_command(self, action: str) -> list[str]:
        return [self.settings.activation_script, action]


class Builder:
    """Runs ``nix build`` for a configuration and returns its artifacts.

    Exactly one top-level artifact is expected per build.
    """

    def __init__(
        self,
        settings: NixSettings,
        *,
        invoker: ProcessInvoker | None = None,
        program: str = "nix",
        temp_dir: Path | None = None,
    ) -> None:
        self.command = NixCommand(settings, program=program)
        self._invoker = invoker or ProcessInvoker()
        self._temp_dir = temp_dir

    @contextlib.contextmanager
    def wrapper_file(self) -> Iterator[Path]:
        """Yield the wrapper path; a generated one is removed on exit."""
        configured = self.command.settings.build_wrapper
        if configured is not None:
            yield configured
            return

        fd, name = tempfile.mkstemp(prefix="nix_wrapper.", suffix=".nix", dir=self._temp_dir)
        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(load_build_wrapper())
            yield path
        finally:
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    def build(
        self,
        configuration: str | Path,
        settings_json: str,
        system: str,
        *,
        cancel: threading.Event | None = None,
    ) -> ArtifactSet | None:
        """Build ``configuration`` for ``system``.

        Returns ``None`` without doing anything when ``cancel`` is already
        set.  Raises ``NoArtifactProducedError`` / ``AmbiguousArtifactError``
        when the build does not yield exactly one artifact.
        """
        if cancel is not None and cancel.is_set():
            logger.info("Build cancelled before start")
            return None

        configuration_abs = Path(configuration).absolute()
        with self.wrapper_file() as wrapper:
            args = self.command.build_arguments(
                wrapper, system, settings_json, configuration_abs
            )
            artifacts: list[Artifact] = self._invoker.execute(
                self.command.program,
                args,
                env=self.command.environment(),
                unmarshaler=ModelUnmarshaler(list[Artifact]),
            )

        if not artifacts:
            raise NoArtifactProducedError(str(configuration_abs))
        if len(artifacts) > 1:
            raise AmbiguousArtifactError(str(configuration_abs), len(artifacts))

        result = ArtifactSet(tuple(artifacts))
        logger.info("Built %s (%s)", artifacts[0].path, result.content_hash())
        return result
