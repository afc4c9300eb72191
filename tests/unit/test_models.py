"""Tests for all Pydantic data models — validation, immutability, defaults."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest
from pydantic import ValidationError

from nixforge.models.artifacts import Artifact, ArtifactSet
from nixforge.models.secrets import SecretDescriptor, SecretFingerprint
from nixforge.models.settings import (
    DEFAULT_ADDRESS_PRIORITY,
    ActivationAction,
    CopyProtocol,
    DeploymentConfig,
    InstanceConfig,
    NixMode,
    NixSettings,
    ProviderConfig,
)
from nixforge.models.state import (
    VALID_TRANSITIONS,
    ConvergenceState,
    ConvergenceStep,
    DiffResult,
    InstanceState,
)

# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


class TestArtifact:
    def test_accepts_drv_path_alias(self):
        artifact = Artifact.model_validate({"drvPath": "/nix/store/a.drv", "outputs": {}})
        assert artifact.path == "/nix/store/a.drv"

    def test_hash_is_sha1_of_path(self):
        artifact = Artifact(path="/nix/store/a.drv")
        assert artifact.content_hash() == hashlib.sha1(b"/nix/store/a.drv").hexdigest()

    def test_frozen(self):
        artifact = Artifact(path="/nix/store/a.drv")
        with pytest.raises(ValidationError):
            artifact.path = "/other"  # type: ignore[misc]


class TestArtifactSet:
    a = Artifact(path="/nix/store/a.drv", outputs={"out": "/nix/store/a"})
    b = Artifact(path="/nix/store/b.drv", outputs={"out": "/nix/store/b", "lib": "/nix/store/b-lib"})

    def test_hash_stable(self):
        assert ArtifactSet((self.a, self.b)).content_hash() == ArtifactSet((self.a, self.b)).content_hash()

    def test_hash_is_order_sensitive(self):
        assert ArtifactSet((self.a, self.b)).content_hash() != ArtifactSet((self.b, self.a)).content_hash()

    def test_hash_definition(self):
        concatenated = (self.a.content_hash() + self.b.content_hash()).encode()
        expected = hashlib.sha1(concatenated).hexdigest()
        assert ArtifactSet((self.a, self.b)).content_hash() == expected


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class TestSecretDescriptor:
    def test_defaults(self):
        desc = SecretDescriptor(source="s", destination="/d")
        assert (desc.owner, desc.group, desc.permissions) == ("root", "root", "600")
        assert desc.mode == 0o600

    @pytest.mark.parametrize("value, mode", [(400, 0o400), ("0640", 0o640), ("755", 0o755)])
    def test_permissions_accepted(self, value, mode):
        assert SecretDescriptor(source="s", destination="/d", permissions=value).mode == mode

    @pytest.mark.parametrize("value", ["rw-", "89", "", "77777"])
    def test_permissions_rejected(self, value):
        with pytest.raises(ValidationError):
            SecretDescriptor(source="s", destination="/d", permissions=value)


class TestSecretFingerprint:
    def test_record_roundtrip(self):
        fp = SecretFingerprint(sum=b"\x01\x02", salt=b"\xff", kdf_iterations=48)
        record = fp.to_record()
        assert record == {"sum": "0102", "salt": "ff", "kdf_iterations": "48"}
        assert SecretFingerprint.from_record(record) == fp


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettingsModels:
    def test_nix_defaults(self):
        nix = NixSettings()
        assert nix.mode is NixMode.COMPAT
        assert nix.activation_action == ActivationAction.SWITCH.value
        assert nix.copy_protocol is CopyProtocol.SSH

    def test_provider_defaults(self):
        provider = ProviderConfig()
        assert provider.retry == 5
        assert provider.retry_wait == 5
        assert provider.address_filter == []
        assert tuple(provider.address_priority) == DEFAULT_ADDRESS_PRIORITY

    def test_negative_retry_rejected(self):
        with pytest.raises(ValidationError):
            ProviderConfig(retry=-1)

    def test_priority_from_mapping_keeps_order(self):
        provider = ProviderConfig.model_validate(
            {"address_priority": {"10.0.0.0/8": 5, "0.0.0.0/0": 1}}
        )
        assert [(p.cidr, p.weight) for p in provider.address_priority] == [
            ("10.0.0.0/8", 5),
            ("0.0.0.0/0", 1),
        ]

    def test_instance_settings_dict_encoded(self):
        inst = InstanceConfig(
            address=["10.0.0.1"], configuration=Path("c.nix"), settings={"b": 1, "a": [2]}
        )
        assert inst.settings == '{"a": [2], "b": 1}'

    def test_instance_requires_address(self):
        with pytest.raises(ValidationError):
            InstanceConfig(address=[], configuration=Path("c.nix"))

    def test_deployment_names_instances_from_keys(self):
        config = DeploymentConfig.model_validate(
            {
                "provider": {"retry": 1},
                "instances": {
                    "web": {"address": ["10.0.0.1"], "configuration": "web.nix"},
                    "db": {"name": "postgres", "address": ["10.0.0.2"], "configuration": "db.nix"},
                },
            }
        )
        assert config.provider.retry == 1
        assert config.instances["web"].name == "web"
        assert config.instances["db"].name == "postgres"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class TestStateModels:
    def test_terminal_states_have_no_exits(self):
        for state in (ConvergenceState.DONE, ConvergenceState.SKIPPED, ConvergenceState.FAILED):
            assert VALID_TRANSITIONS[state] == set()

    def test_every_state_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(ConvergenceState)

    def test_only_sync_and_push_retryable(self):
        assert {s for s in ConvergenceStep if s.retryable} == {
            ConvergenceStep.SECRET_SYNC,
            ConvergenceStep.PUSH,
        }

    def test_instance_state_fingerprint(self):
        state = InstanceState(
            name="web",
            address="10.0.0.1",
            identity="x",
            derivations=[],
            secrets_fingerprint={"sum": "00", "salt": "01", "kdf_iterations": "32"},
        )
        assert state.fingerprint == SecretFingerprint(sum=b"\x00", salt=b"\x01", kdf_iterations=32)

    def test_instance_state_without_fingerprint(self):
        state = InstanceState(name="web", address="10.0.0.1", identity="x", derivations=[])
        assert state.fingerprint is None

    def test_diff_needs_convergence(self):
        assert not DiffResult().needs_convergence
        assert DiffResult(secrets_changed=True).needs_convergence
        assert DiffResult(artifacts_changed=True).needs_convergence
