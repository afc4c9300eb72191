"""nixforge data models — all Pydantic v2, all frozen (immutable)."""

from nixforge.models.artifacts import Artifact, ArtifactSet
from nixforge.models.secrets import SecretDescriptor, SecretFingerprint
from nixforge.models.settings import (
    ActivationAction,
    AddressPriority,
    CommandBackendSettings,
    CopyProtocol,
    DeploymentConfig,
    GopassBackendSettings,
    InstanceConfig,
    NixMode,
    NixSettings,
    ProviderConfig,
    SecretsSettings,
    SshEndpointSettings,
    SshSettings,
)
from nixforge.models.state import (
    VALID_TRANSITIONS,
    ConvergenceResult,
    ConvergenceState,
    ConvergenceStep,
    DiffResult,
    InstanceState,
    StateTransition,
)

__all__ = [
    # artifacts
    "Artifact",
    "ArtifactSet",
    # secrets
    "SecretDescriptor",
    "SecretFingerprint",
    # settings
    "ActivationAction",
    "AddressPriority",
    "CommandBackendSettings",
    "CopyProtocol",
    "DeploymentConfig",
    "GopassBackendSettings",
    "InstanceConfig",
    "NixMode",
    "NixSettings",
    "ProviderConfig",
    "SecretsSettings",
    "SshEndpointSettings",
    "SshSettings",
    # state
    "VALID_TRANSITIONS",
    "ConvergenceResult",
    "ConvergenceState",
    "ConvergenceStep",
    "DiffResult",
    "InstanceState",
    "StateTransition",
]
