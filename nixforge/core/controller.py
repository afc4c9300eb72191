"""Convergence controller: Build -> SecretSync -> Push -> Switch.

Drives one instance to its declared configuration.  Every step failure is
wrapped in ``ConvergenceError`` tagged with the step; only secret sync and
push are retried, together, up to ``retry + 1`` attempts.  Every state change
is checked against ``VALID_TRANSITIONS`` and recorded.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from nixforge.config import ForgeSettings
from nixforge.core.address import AddressSelector
from nixforge.core.deployer import Deployer
from nixforge.core.nix import Builder, NixCommand
from nixforge.core.process import ProcessInvoker
from nixforge.core.retry import with_retry
from nixforge.core.secrets import SecretsBackend, SecretStore, SecretValue, backend_from_settings
from nixforge.core.settings import (
    SettingsSection,
    resolve_secret_descriptors,
    resolve_settings,
)
from nixforge.core.ssh import RemoteTransport
from nixforge.errors import ConvergenceError, InvalidTransitionError
from nixforge.models.artifacts import ArtifactSet
from nixforge.models.secrets import SecretDescriptor
from nixforge.models.settings import InstanceConfig, ProviderConfig
from nixforge.models.state import (
    VALID_TRANSITIONS,
    ConvergenceResult,
    ConvergenceState,
    ConvergenceStep,
    DiffResult,
    InstanceState,
    StateTransition,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TERMINAL = frozenset(
    {ConvergenceState.DONE, ConvergenceState.SKIPPED, ConvergenceState.FAILED}
)


class ConvergenceController:
    """Converges one instance.

    Parameters
    ----------
    provider:
        Provider-level configuration (retry policy, shared sections).
    instance:
        The instance to converge.
    forge_settings:
        Tool locations and runtime knobs.  Defaults from the environment.
    invoker:
        Runs every external command.  Tests pass a recording fake.
    backend:
        Secrets backend override; normally built from the secrets section.
    sleep:
        Called between retry attempts.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        instance: InstanceConfig,
        forge_settings: ForgeSettings | None = None,
        *,
        invoker: ProcessInvoker | None = None,
        backend: SecretsBackend | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.instance = instance
        self.forge = forge_settings or ForgeSettings()
        self._invoker = invoker or ProcessInvoker(
            sink=logging.getLogger("nixforge.process") if self.forge.live_log else None
        )
        self._sleep = sleep

        self.nix_settings = resolve_settings(provider, instance, SettingsSection.NIX)
        self.ssh_settings = resolve_settings(provider, instance, SettingsSection.SSH)
        self.secrets_settings = resolve_settings(provider, instance, SettingsSection.SECRETS)
        self.descriptors: list[SecretDescriptor] = resolve_secret_descriptors(provider, instance)

        self.selector = AddressSelector(provider.address_filter, provider.address_priority)
        self.builder = Builder(
            self.nix_settings,
            invoker=self._invoker,
            program=self.forge.nix_program,
            temp_dir=self.forge.temp_dir,
        )
        self._backend = backend

        self.state = ConvergenceState.IDLE
        self.transitions: list[StateTransition] = []
        self.push_attempts = 0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self.state = ConvergenceState.IDLE
        self.transitions = []
        self.push_attempts = 0

    def _transition(
        self, target: ConvergenceState, *, attempt: int = 0, detail: str = ""
    ) -> None:
        allowed = VALID_TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self.state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        self.transitions.append(
            StateTransition(
                from_state=self.state, to_state=target, attempt=attempt, detail=detail
            )
        )
        logger.debug("%s: %s -> %s", self.instance.name, self.state.value, target.value)
        self.state = target

    def _result(self, state: InstanceState | None = None) -> ConvergenceResult:
        return ConvergenceResult(
            final_state=self.state,
            state=state,
            transitions=list(self.transitions),
            push_attempts=self.push_attempts,
        )

    @staticmethod
    def _step(step: ConvergenceStep, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except ConvergenceError:
            raise
        except Exception as exc:
            raise ConvergenceError(step, exc) from exc

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def select_address(self) -> str:
        return self.selector.select(self.instance.address)

    def secret_store(self) -> SecretStore:
        backend = self._backend or backend_from_settings(
            self.secrets_settings, invoker=ProcessInvoker(sink=None)
        )
        return SecretStore(
            backend,
            min_iterations=self.forge.kdf_min_iterations,
            max_iterations=self.forge.kdf_max_iterations,
        )

    def transport(self) -> RemoteTransport:
        return RemoteTransport(
            self.ssh_settings,
            invoker=self._invoker,
            ssh_program=self.forge.ssh_program,
            tar_program=self.forge.tar_program,
            temp_dir=self.forge.temp_dir,
        )

    def deployer(self, transport: RemoteTransport) -> Deployer:
        command = NixCommand(
            self.nix_settings,
            program=self.forge.nix_program,
            env_program=self.forge.nix_env_program,
            ssh_opts=transport.ssh_opts(),
        )
        return Deployer(command, transport, invoker=self._invoker)

    def build(self, cancel: threading.Event | None = None) -> ArtifactSet | None:
        return self.builder.build(
            self.instance.configuration,
            self.instance.settings,
            self.instance.system,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    def converge(
        self,
        cancel: threading.Event | None = None,
        *,
        previous: InstanceState | None = None,
    ) -> ConvergenceResult:
        """Run the full pipeline once.

        Returns a result whose ``final_state`` is ``DONE`` (with the new
        ``InstanceState``) or ``SKIPPED`` (cancelled).  Failures raise
        ``ConvergenceError`` after the ``FAILED`` transition is recorded.
        When ``previous`` is given the new state keeps its ``id``.
        """
        self._reset()
        try:
            return self._converge(cancel, previous)
        except Exception as exc:
            if self.state not in _TERMINAL:
                self._transition(ConvergenceState.FAILED, detail=str(exc))
            logger.error("Convergence of %s failed: %s", self.instance.name, exc)
            raise

    def _converge(
        self, cancel: threading.Event | None, previous: InstanceState | None
    ) -> ConvergenceResult:
        address = self._step(ConvergenceStep.ADDRESS, self.select_address)
        logger.info("Converging %s at %s", self.instance.name, address)

        self._transition(ConvergenceState.BUILDING)
        artifacts = self._step(ConvergenceStep.BUILD, self.build, cancel)
        if artifacts is None:
            self._transition(ConvergenceState.SKIPPED, detail="build cancelled")
            return self._result()

        store = self._step(ConvergenceStep.SECRETS, self.secret_store)
        with contextlib.ExitStack() as stack:
            stack.enter_context(store)
            transport = self._step(ConvergenceStep.TRANSPORT, self.transport().open)
            stack.callback(transport.close)

            values: list[SecretValue] = []
            if self.descriptors:
                values = self._step(ConvergenceStep.SECRETS, store.resolve, self.descriptors)

            deployer = self.deployer(transport)

            def attempt(n: int) -> bool:
                if values:
                    self._transition(ConvergenceState.SECRET_SYNC, attempt=n)
                    self._step(
                        ConvergenceStep.SECRET_SYNC, self._sync_secrets, store, deployer, address
                    )
                self._transition(ConvergenceState.PUSHING, attempt=n)
                self.push_attempts += 1
                return self._step(
                    ConvergenceStep.PUSH, deployer.push, artifacts, address, cancel=cancel
                )

            pushed = with_retry(
                self.provider.retry + 1,
                self.provider.retry_wait,
                attempt,
                retry_on=lambda exc: isinstance(exc, ConvergenceError) and exc.retryable,
                sleep=self._sleep,
                on_retry=lambda n, exc: self._transition(
                    ConvergenceState.RETRYING, attempt=n, detail=str(exc)
                ),
            )
            if not pushed:
                self._transition(ConvergenceState.SKIPPED, detail="push cancelled")
                return self._result()

            self._transition(ConvergenceState.SWITCHING)
            self._step(ConvergenceStep.SWITCH, deployer.switch, artifacts, address)

            fingerprint = (
                self._step(ConvergenceStep.STATE, store.fingerprint, values) if values else None
            )

        reused: dict[str, Any] = {"id": previous.id} if previous is not None else {}
        state = InstanceState(
            **reused,
            name=self.instance.name,
            address=address,
            identity=artifacts.content_hash(),
            derivations=list(artifacts),
            secrets_fingerprint=fingerprint.to_record() if fingerprint else None,
        )
        self._transition(ConvergenceState.DONE)
        logger.info("Converged %s to %s", self.instance.name, state.identity)
        return self._result(state)

    @staticmethod
    def _sync_secrets(store: SecretStore, deployer: Deployer, address: str) -> None:
        with store.to_archive() as archive:
            deployer.copy_secrets(archive, address)

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    def diff(
        self, state: InstanceState | None, cancel: threading.Event | None = None
    ) -> DiffResult:
        """Compare declared configuration against the stored state.

        Makes no remote calls: secrets are checked against the stored
        fingerprint and artifacts by rebuilding locally.
        """
        secrets_changed = self._step(ConvergenceStep.SECRETS, self._secrets_changed, state)

        artifacts = self._step(ConvergenceStep.BUILD, self.build, cancel)
        if artifacts is None:
            artifacts_changed = state is None
        else:
            artifacts_changed = state is None or artifacts.content_hash() != state.identity

        result = DiffResult(
            secrets_changed=secrets_changed,
            artifacts_changed=artifacts_changed,
            artifacts=artifacts,
        )
        logger.info(
            "Diff for %s: secrets_changed=%s artifacts_changed=%s",
            self.instance.name,
            secrets_changed,
            artifacts_changed,
        )
        return result

    def _secrets_changed(self, state: InstanceState | None) -> bool:
        stored = state.fingerprint if state is not None else None
        if not self.descriptors:
            return stored is not None
        if stored is None:
            return True
        with self.secret_store() as store:
            values = store.resolve(self.descriptors)
            return not store.verify_unchanged(stored, values)
