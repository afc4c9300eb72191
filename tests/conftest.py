"""Shared test fixtures for nixforge."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from nixforge.config import ForgeSettings
from nixforge.core.process import Environment, PassthroughUnmarshaler
from nixforge.errors import SubprocessError
from nixforge.models.settings import InstanceConfig, ProviderConfig

DRV_PATH = "/nix/store/0000000000000000000000000000000a-nixos-system-test.drv"
OUT_PATH = "/nix/store/0000000000000000000000000000000a-nixos-system-test"


# ---------------------------------------------------------------------------
# Recording invoker
# ---------------------------------------------------------------------------


@dataclass
class Call:
    """One recorded ``execute`` call."""

    argv: list[str]
    env: dict[str, str]
    stdin: bytes | None

    @property
    def program(self) -> str:
        return self.argv[0]


@dataclass
class _Rule:
    match: Callable[[list[str]], bool]
    stdout: bytes = b""
    error: bool = False
    remaining: int | None = None


@dataclass
class FakeInvoker:
    """Stands in for ProcessInvoker: records calls and replays scripted output.

    Rules are checked in registration order; the first live rule whose
    predicate matches the argv wins.  Unmatched commands succeed with empty
    output.
    """

    calls: list[Call] = field(default_factory=list)
    rules: list[_Rule] = field(default_factory=list)

    def on(
        self,
        match: Callable[[list[str]], bool],
        stdout: bytes = b"",
        *,
        times: int | None = None,
    ) -> FakeInvoker:
        self.rules.append(_Rule(match, stdout=stdout, remaining=times))
        return self

    def fail(
        self, match: Callable[[list[str]], bool], *, times: int | None = None
    ) -> FakeInvoker:
        self.rules.append(_Rule(match, error=True, remaining=times))
        return self

    def execute(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        env: Any = None,
        stdin: Any = None,
        unmarshaler: Any = None,
        raw: bool = False,
    ) -> Any:
        argv = [program, *args]
        if isinstance(env, Environment):
            env_dict = env.to_dict()
        else:
            env_dict = dict(env or {})
        data: bytes | None = None
        if stdin is not None:
            data = bytes(stdin) if isinstance(stdin, (bytes, bytearray, memoryview)) else stdin.read()
        self.calls.append(Call(argv, env_dict, data))

        for rule in self.rules:
            if rule.remaining == 0 or not rule.match(argv):
                continue
            if rule.remaining is not None:
                rule.remaining -= 1
            if rule.error:
                raise SubprocessError(argv, b"scripted failure", 1)
            return self._output(rule.stdout, unmarshaler, raw)
        return self._output(b"", unmarshaler, raw)

    @staticmethod
    def _output(stdout: bytes, unmarshaler: Any, raw: bool) -> Any:
        if raw:
            return bytearray(stdout)
        return (unmarshaler or PassthroughUnmarshaler()).unmarshal(stdout)

    # Query helpers

    def matching(self, match: Callable[[list[str]], bool]) -> list[Call]:
        return [c for c in self.calls if match(c.argv)]


def is_build(argv: list[str]) -> bool:
    return "build" in argv and "--json" in argv


def is_copy(argv: list[str]) -> bool:
    return "copy" in argv and "--to" in argv


def is_tar(argv: list[str]) -> bool:
    return "tar" in argv and "-x" in argv


def is_profile_install(argv: list[str]) -> bool:
    return "--set" in argv or ("profile" in argv and "install" in argv)


def is_activation(argv: list[str]) -> bool:
    return any(a.endswith("switch-to-configuration") for a in argv)


def build_output(*records: tuple[str, dict[str, str]]) -> bytes:
    """``nix build --json`` stdout for the given (drvPath, outputs) records."""
    return json.dumps([{"drvPath": drv, "outputs": outs} for drv, outs in records]).encode()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    """A FakeInvoker whose builds yield one system derivation."""
    return FakeInvoker().on(is_build, build_output((DRV_PATH, {"out": OUT_PATH})))


@pytest.fixture
def forge_settings(tmp_path: Path) -> ForgeSettings:
    """Runtime settings isolated to a temp directory and the default tools."""
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    return ForgeSettings(
        _env_file=None,
        state_path=tmp_path / "state",
        temp_dir=temp_dir,
        nix_program="nix",
        nix_env_program="nix-env",
        ssh_program="ssh",
        tar_program="tar",
        live_log=False,
    )


@pytest.fixture
def configuration_file(tmp_path: Path) -> Path:
    path = tmp_path / "configuration.nix"
    path.write_text("{ ... }: { }\n")
    return path


@pytest.fixture
def secret_files(tmp_path: Path) -> dict[str, Path]:
    """Two secret files with known contents."""
    secrets_dir = tmp_path / "secrets"
    secrets_dir.mkdir()
    paths = {
        "api": secrets_dir / "api.key",
        "db": secrets_dir / "db.pass",
    }
    paths["api"].write_bytes(b"api-key-material")
    paths["db"].write_bytes(b"correct horse battery staple")
    return paths


@pytest.fixture
def provider_config() -> ProviderConfig:
    """Provider defaults with no wait between retries."""
    return ProviderConfig(retry=2, retry_wait=0)


@pytest.fixture
def make_instance(configuration_file: Path) -> Callable[..., InstanceConfig]:
    """Factory fixture: build an InstanceConfig with sensible defaults."""

    def _factory(**overrides: Any) -> InstanceConfig:
        defaults: dict[str, Any] = {
            "name": "web",
            "address": ["10.0.0.5", "fe80::1"],
            "configuration": configuration_file,
            "settings": {"hostname": "web"},
        }
        defaults.update(overrides)
        return InstanceConfig(**defaults)

    return _factory
