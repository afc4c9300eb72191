"""Artifact transfer, profile installation and activation on the target."""

from __future__ import annotations

import logging
import threading

from nixforge.core.nix import NixCommand
from nixforge.core.process import ProcessInvoker
from nixforge.core.secrets import SecretArchive
from nixforge.core.ssh import RemoteTransport
from nixforge.errors import MissingArtifactOutputError, UnsupportedActivationActionError
from nixforge.models.artifacts import ArtifactSet
from nixforge.models.settings import ActivationAction

logger = logging.getLogger(__name__)

_SUPPORTED_ACTIONS = frozenset(a.value for a in ActivationAction)


def validate_activation_action(action: str) -> ActivationAction:
    if action not in _SUPPORTED_ACTIONS:
        raise UnsupportedActivationActionError(action)
    return ActivationAction(action)


class Deployer:
    """Moves a built system onto a target and activates it.

    Parameters
    ----------
    command:
        Nix argument builder; its ``ssh_opts`` should come from ``transport``.
    transport:
        Open remote transport for profile, activation and secret commands.
    invoker:
        Runs local ``nix copy``.
    """

    def __init__(
        self,
        command: NixCommand,
        transport: RemoteTransport,
        *,
        invoker: ProcessInvoker | None = None,
    ) -> None:
        self.command = command
        self.transport = transport
        self._invoker = invoker or ProcessInvoker()

    def push(
        self,
        artifacts: ArtifactSet,
        host: str,
        *,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Copy every output of every artifact to ``host``.

        Returns ``False`` if ``cancel`` was set before all copies were made.
        """
        for artifact in artifacts:
            for name, path in artifact.outputs.items():
                if cancel is not None and cancel.is_set():
                    logger.info("Push to %s cancelled", host)
                    return False
                logger.info("Copying %s output %r to %s", artifact.path, name, host)
                self._invoker.execute(
                    self.command.program,
                    self.command.copy_arguments(path, host),
                    env=self.command.environment(),
                )
        return True

    def switch(self, artifacts: ArtifactSet, host: str) -> None:
        """Install the last artifact's system output and activate it.

        Runs to completion regardless of cancellation.
        """
        action = validate_activation_action(self.command.settings.activation_action)

        output = self.command.settings.output
        last = artifacts[len(artifacts) - 1]
        if output not in last.outputs:
            raise MissingArtifactOutputError(output, list(last.outputs))
        path = last.outputs[output]

        install = self.command.profile_install_command(path)
        logger.info("Installing %s into %s on %s", path, self.command.settings.profile, host)
        self.transport.run(host, install[0], install[1:])

        if action is ActivationAction.NONE:
            logger.info("Activation skipped for %s", host)
            return

        activation = self.command.activation_command(action.value)
        logger.info("Activating %s on %s (%s)", path, host, action.value)
        self.transport.run(host, activation[0], activation[1:])

    def copy_secrets(self, archive: SecretArchive, host: str) -> None:
        """Unpack the secret archive at ``/`` on ``host``."""
        logger.info("Copying %d secret(s) to %s", archive.members, host)
        reader = archive.reader()
        try:
            self.transport.extract_archive(host, reader)
        finally:
            reader.close()
