"""Typed deployment configuration tree.

``ProviderConfig`` carries defaults shared by every instance; each
``InstanceConfig`` may override the ``nix``, ``ssh`` and ``secrets`` sections
and add its own secrets.  ``nixforge.core.settings`` merges the two levels.
"""

from __future__ import annotations

import json
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nixforge.models.secrets import SecretDescriptor


class NixMode(IntEnum):
    """Command-line dialect used when talking to nix.

    ``COMPAT`` targets installations where the ``nix`` command is still an
    experimental feature and profiles are managed with ``nix-env``.
    """

    COMPAT = 0
    DEFAULT = 1


class ActivationAction(str, Enum):
    """Actions accepted by ``switch-to-configuration``.

    ``NONE`` skips activation entirely.
    """

    NONE = ""
    SWITCH = "switch"
    BOOT = "boot"
    TEST = "test"
    DRY_ACTIVATE = "dry-activate"


class CopyProtocol(str, Enum):
    """Store URI schemes understood by ``nix copy``."""

    SSH = "ssh"
    S3 = "s3"
    FILE = "file"

    def uri(self, target: str) -> str:
        return f"{self.value}://{target}"


DEFAULT_PROFILE = "/nix/var/nix/profiles/system"
DEFAULT_ACTIVATION_SCRIPT = "/nix/var/nix/profiles/system/bin/switch-to-configuration"
DEFAULT_USER = "root"


class NixSettings(BaseModel):
    """Nix package manager options."""

    model_config = ConfigDict(frozen=True)

    mode: NixMode = NixMode.COMPAT
    build_wrapper: Path | None = None
    profile: str = DEFAULT_PROFILE
    output: str = "out"
    activation_script: str = DEFAULT_ACTIVATION_SCRIPT
    # Kept as a plain string so unsupported values surface from the deployer
    activation_action: str = ActivationAction.SWITCH.value
    show_trace: bool = True
    cores: int | None = None
    use_substitutes: bool = True
    copy_protocol: CopyProtocol = CopyProtocol.SSH


class SshEndpointSettings(BaseModel):
    """Connection settings for one ssh hop."""

    model_config = ConfigDict(frozen=True)

    host: str | None = None
    user: str | None = DEFAULT_USER
    port: int | None = None
    config: dict[str, str] = Field(default_factory=dict)


class SshSettings(SshEndpointSettings):
    """Connection settings for the target, optionally through a bastion."""

    bastion: SshEndpointSettings | None = None


class CommandBackendSettings(BaseModel):
    """Settings for the ``command`` secrets backend."""

    model_config = ConfigDict(frozen=True)

    name: str
    arguments: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)


class GopassBackendSettings(BaseModel):
    """Settings for the ``gopass`` secrets backend."""

    model_config = ConfigDict(frozen=True)

    store: str | None = None


class SecretsSettings(BaseModel):
    """Secrets backend selection."""

    model_config = ConfigDict(frozen=True)

    provider: str = "filesystem"
    command: CommandBackendSettings | None = None
    gopass: GopassBackendSettings = GopassBackendSettings()


class AddressPriority(BaseModel):
    """Weight applied to addresses inside ``cidr``."""

    model_config = ConfigDict(frozen=True)

    cidr: str
    weight: int


DEFAULT_ADDRESS_PRIORITY: tuple[AddressPriority, ...] = (
    AddressPriority(cidr="0.0.0.0/0", weight=1),
    AddressPriority(cidr="::/0", weight=0),
)


class ProviderConfig(BaseModel):
    """Settings shared by every managed instance."""

    model_config = ConfigDict(frozen=True)

    retry: int = Field(default=5, ge=0)
    retry_wait: float = Field(default=5, ge=0)
    address_filter: list[str] = Field(default_factory=list)
    address_priority: list[AddressPriority] = Field(
        default_factory=lambda: list(DEFAULT_ADDRESS_PRIORITY)
    )

    nix: NixSettings = NixSettings()
    ssh: SshSettings = SshSettings()
    secrets: SecretsSettings = SecretsSettings()
    secret: list[SecretDescriptor] = Field(default_factory=list)

    @field_validator("address_priority", mode="before")
    @classmethod
    def _priority_from_mapping(cls, value: Any) -> Any:
        # TOML tables arrive as {cidr: weight}; keep their declared order
        if isinstance(value, dict):
            return [{"cidr": k, "weight": v} for k, v in value.items()]
        return value


class InstanceConfig(BaseModel):
    """One managed NixOS machine."""

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    address: list[str]
    configuration: Path
    settings: str = "{}"
    system: str = "x86_64-linux"

    nix: NixSettings | None = None
    ssh: SshSettings | None = None
    secrets: SecretsSettings | None = None
    secret: list[SecretDescriptor] = Field(default_factory=list)

    @field_validator("settings", mode="before")
    @classmethod
    def _encode_settings(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return json.dumps(value, sort_keys=True)
        return value

    @field_validator("address")
    @classmethod
    def _require_address(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one address is required")
        return value


class DeploymentConfig(BaseModel):
    """Top-level configuration file: provider defaults plus named instances."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderConfig = ProviderConfig()
    instances: dict[str, InstanceConfig] = Field(default_factory=dict)

    @field_validator("instances", mode="before")
    @classmethod
    def _name_instances(cls, value: Any) -> Any:
        # Table keys double as instance names unless one is given
        if isinstance(value, dict):
            return {
                key: ({"name": key, **item} if isinstance(item, dict) else item)
                for key, item in value.items()
            }
        return value
