"""Provider/instance settings resolution.

Instance-level sections override provider-level ones key by key.  Only the
values an instance explicitly declares take part in the merge, so instance
defaults never mask provider configuration.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel

from nixforge.models.secrets import SecretDescriptor
from nixforge.models.settings import (
    InstanceConfig,
    NixSettings,
    ProviderConfig,
    SecretsSettings,
    SshEndpointSettings,
    SshSettings,
)

logger = logging.getLogger(__name__)


class SettingsSection(str, Enum):
    """Addressable sections of the settings tree."""

    NIX = "nix"
    SSH = "ssh"
    BASTION = "bastion"
    SECRETS = "secrets"


_SECTION_PATHS: dict[SettingsSection, tuple[str, ...]] = {
    SettingsSection.NIX: ("nix",),
    SettingsSection.SSH: ("ssh",),
    SettingsSection.BASTION: ("ssh", "bastion"),
    SettingsSection.SECRETS: ("secrets",),
}

_SECTION_MODELS: dict[SettingsSection, type[BaseModel]] = {
    SettingsSection.NIX: NixSettings,
    SettingsSection.SSH: SshSettings,
    SettingsSection.BASTION: SshEndpointSettings,
    SettingsSection.SECRETS: SecretsSettings,
}


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Nested mappings merge; any other value in ``override`` replaces.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _lookup(tree: Mapping[str, Any], path: tuple[str, ...]) -> Mapping[str, Any] | None:
    node: Any = tree
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
        if node is None:
            return None
    return node if isinstance(node, Mapping) else None


def resolve_settings(
    provider: ProviderConfig,
    instance: InstanceConfig,
    section: SettingsSection,
) -> Any:
    """Merged settings for ``section``, or ``None`` if neither level has it."""
    path = _SECTION_PATHS[section]
    base = _lookup(provider.model_dump(), path)
    override = _lookup(instance.model_dump(exclude_unset=True), path)
    if base is None and override is None:
        logger.debug("No %s settings declared", section.value)
        return None
    return _SECTION_MODELS[section].model_validate(deep_merge(base or {}, override or {}))


def resolve_secret_descriptors(
    provider: ProviderConfig, instance: InstanceConfig
) -> list[SecretDescriptor]:
    """Provider secrets followed by instance secrets."""
    return [*provider.secret, *instance.secret]
