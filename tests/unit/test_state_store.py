"""Tests for the per-instance JSON state store."""

from __future__ import annotations

import pytest
from conftest import DRV_PATH, OUT_PATH

from nixforge.core.state_store import StateStore, StateStoreError
from nixforge.models.artifacts import Artifact
from nixforge.models.state import InstanceState


def state(name: str = "web", **kwargs) -> InstanceState:
    defaults = {
        "name": name,
        "address": "10.0.0.5",
        "identity": "abc123",
        "derivations": [Artifact(path=DRV_PATH, outputs={"out": OUT_PATH})],
    }
    defaults.update(kwargs)
    return InstanceState(**defaults)


class TestStateStore:
    def test_missing_returns_none(self, tmp_path):
        assert StateStore(tmp_path / "state").load("web") is None

    def test_save_then_load(self, tmp_path):
        store = StateStore(tmp_path / "state")
        original = state(secrets_fingerprint={"sum": "00", "salt": "11", "kdf_iterations": "40"})
        path = store.save(original)
        assert path == tmp_path / "state" / "web.json"
        loaded = store.load("web")
        assert loaded == original
        assert loaded.artifacts[0].outputs == {"out": OUT_PATH}

    def test_save_overwrites(self, tmp_path):
        store = StateStore(tmp_path)
        store.save(state(identity="one"))
        store.save(state(identity="two"))
        assert store.load("web").identity == "two"
        assert [p.name for p in tmp_path.iterdir()] == ["web.json"]

    def test_names(self, tmp_path):
        store = StateStore(tmp_path / "state")
        assert store.names() == []
        store.save(state("db"))
        store.save(state("web"))
        assert store.names() == ["db", "web"]

    def test_delete(self, tmp_path):
        store = StateStore(tmp_path)
        store.save(state())
        assert store.delete("web") is True
        assert store.delete("web") is False
        assert store.load("web") is None

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "web.json").write_text("{not json")
        with pytest.raises(StateStoreError, match="corrupt"):
            StateStore(tmp_path).load("web")

    @pytest.mark.parametrize("name", ["../escape", "a/b", ".hidden", ""])
    def test_unsafe_names_rejected(self, tmp_path, name):
        with pytest.raises(StateStoreError):
            StateStore(tmp_path).load(name)
