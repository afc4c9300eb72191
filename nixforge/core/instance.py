"""Instance lifecycle surface: create / update / delete / diff / close.

A host (the CLI, or any resource manager) drives instances through this
class.  Each call builds a fresh ``ConvergenceController`` so secret memory
and transient files never outlive the call.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from nixforge.config import ForgeSettings
from nixforge.core.controller import ConvergenceController
from nixforge.core.process import ProcessInvoker
from nixforge.core.secrets import SecretsBackend
from nixforge.errors import NixforgeError
from nixforge.models.settings import InstanceConfig, ProviderConfig
from nixforge.models.state import ConvergenceResult, DiffResult, InstanceState

logger = logging.getLogger(__name__)


class InstanceClosedError(NixforgeError):
    """Raised when an operation is requested after ``close()``."""


class Instance:
    """Lifecycle operations for instances sharing one provider configuration.

    Parameters
    ----------
    provider_config:
        Provider-level configuration shared by every instance.
    forge_settings:
        Tool locations and runtime knobs.
    invoker / backend / sleep:
        Passed through to each ``ConvergenceController``.
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        forge_settings: ForgeSettings | None = None,
        *,
        invoker: ProcessInvoker | None = None,
        backend: SecretsBackend | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider_config = provider_config
        self.forge_settings = forge_settings or ForgeSettings()
        self._invoker = invoker
        self._backend = backend
        self._sleep = sleep
        self._closed = False
        self.last_result: ConvergenceResult | None = None

    def controller(self, instance: InstanceConfig) -> ConvergenceController:
        if self._closed:
            raise InstanceClosedError("instance manager is closed")
        return ConvergenceController(
            self.provider_config,
            instance,
            self.forge_settings,
            invoker=self._invoker,
            backend=self._backend,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self, instance: InstanceConfig, cancel: threading.Event | None = None
    ) -> InstanceState | None:
        """Converge ``instance`` from scratch.  ``None`` if cancelled."""
        return self._converge(instance, cancel)

    def update(
        self,
        instance: InstanceConfig,
        state: InstanceState | None,
        cancel: threading.Event | None = None,
    ) -> InstanceState | None:
        """Re-converge only if ``diff`` reports a change.

        Returns ``state`` unchanged when nothing changed or the run was
        cancelled.
        """
        diff = self.diff(instance, state, cancel)
        if not diff.needs_convergence:
            logger.info("%s is up to date", instance.name)
            return state
        converged = self._converge(instance, cancel, previous=state)
        return converged if converged is not None else state

    def _converge(
        self,
        instance: InstanceConfig,
        cancel: threading.Event | None,
        previous: InstanceState | None = None,
    ) -> InstanceState | None:
        result = self.controller(instance).converge(cancel, previous=previous)
        self.last_result = result
        return result.state

    def delete(self, state: InstanceState) -> None:
        """Forget an instance.  The target machine is left untouched."""
        if self._closed:
            raise InstanceClosedError("instance manager is closed")
        logger.info("Forgetting %s (%s); no remote action taken", state.name, state.address)

    def diff(
        self,
        instance: InstanceConfig,
        state: InstanceState | None,
        cancel: threading.Event | None = None,
    ) -> DiffResult:
        return self.controller(instance).diff(state, cancel)

    def close(self) -> None:
        self._closed = True
