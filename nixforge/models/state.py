"""Convergence state machine and persisted instance state models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from nixforge.models.artifacts import Artifact, ArtifactSet
from nixforge.models.secrets import SecretFingerprint


class ConvergenceState(str, Enum):
    """Strict state model for one convergence run."""

    IDLE = "idle"
    BUILDING = "building"
    SECRET_SYNC = "secret_sync"
    PUSHING = "pushing"
    RETRYING = "retrying"
    SWITCHING = "switching"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


# Valid state transitions, enforced by ConvergenceController._transition.
# Terminal states (DONE, SKIPPED, FAILED) have no outgoing transitions.
VALID_TRANSITIONS: dict[ConvergenceState, set[ConvergenceState]] = {
    ConvergenceState.IDLE: {ConvergenceState.BUILDING, ConvergenceState.FAILED},
    ConvergenceState.BUILDING: {
        ConvergenceState.SECRET_SYNC,
        ConvergenceState.PUSHING,
        ConvergenceState.SKIPPED,
        ConvergenceState.FAILED,
    },
    ConvergenceState.SECRET_SYNC: {
        ConvergenceState.PUSHING,
        ConvergenceState.RETRYING,
        ConvergenceState.FAILED,
    },
    ConvergenceState.PUSHING: {
        ConvergenceState.SWITCHING,
        ConvergenceState.RETRYING,
        ConvergenceState.SKIPPED,
        ConvergenceState.FAILED,
    },
    ConvergenceState.RETRYING: {
        ConvergenceState.SECRET_SYNC,
        ConvergenceState.PUSHING,
        ConvergenceState.FAILED,
    },
    ConvergenceState.SWITCHING: {ConvergenceState.DONE, ConvergenceState.FAILED},
    ConvergenceState.DONE: set(),  # terminal
    ConvergenceState.SKIPPED: set(),  # terminal
    ConvergenceState.FAILED: set(),  # terminal
}


class ConvergenceStep(str, Enum):
    """Pipeline step that produced an error; drives the retry decision."""

    ADDRESS = "address"
    BUILD = "build"
    SECRETS = "secrets"
    TRANSPORT = "transport"
    SECRET_SYNC = "secret_sync"
    PUSH = "push"
    SWITCH = "switch"
    STATE = "state"

    @property
    def retryable(self) -> bool:
        return self in (ConvergenceStep.SECRET_SYNC, ConvergenceStep.PUSH)


class StateTransition(BaseModel):
    """Records a single state transition for the run history."""

    model_config = ConfigDict(frozen=True)

    from_state: ConvergenceState
    to_state: ConvergenceState
    attempt: int = 0
    detail: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InstanceState(BaseModel):
    """Persisted outcome of a successful convergence."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    address: str
    identity: str
    derivations: list[Artifact]
    secrets_fingerprint: dict[str, str] | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def artifacts(self) -> ArtifactSet:
        return ArtifactSet(tuple(self.derivations))

    @property
    def fingerprint(self) -> SecretFingerprint | None:
        if not self.secrets_fingerprint:
            return None
        return SecretFingerprint.from_record(self.secrets_fingerprint)


class DiffResult(BaseModel):
    """Change-detection outcome for one reconciliation pass."""

    model_config = ConfigDict(frozen=True)

    secrets_changed: bool = False
    artifacts_changed: bool = False
    artifacts: ArtifactSet | None = None

    @property
    def needs_convergence(self) -> bool:
        return self.secrets_changed or self.artifacts_changed


class ConvergenceResult(BaseModel):
    """What a controller run produced, including its transition history."""

    model_config = ConfigDict(frozen=True)

    final_state: ConvergenceState
    state: InstanceState | None = None
    transitions: list[StateTransition] = Field(default_factory=list)
    push_attempts: int = 0
