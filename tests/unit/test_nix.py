"""Tests for NixCommand and Builder — argument dialects, cardinality, cancellation."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from conftest import DRV_PATH, OUT_PATH, FakeInvoker, build_output, is_build

from nixforge.core.nix import Builder, NixCommand, load_build_wrapper
from nixforge.errors import (
    AmbiguousArtifactError,
    NoArtifactProducedError,
    SubprocessError,
    UnmarshalError,
)
from nixforge.models.settings import CopyProtocol, NixMode, NixSettings


class TestNixCommand:
    def test_compat_adds_feature_flag(self):
        cmd = NixCommand(NixSettings(mode=NixMode.COMPAT))
        assert cmd.feature_arguments() == ["--extra-experimental-features", "nix-command"]

    def test_default_mode_has_no_feature_flag(self):
        cmd = NixCommand(NixSettings(mode=NixMode.DEFAULT))
        assert cmd.feature_arguments() == []

    def test_global_arguments(self):
        cmd = NixCommand(
            NixSettings(mode=NixMode.DEFAULT, show_trace=True, cores=4, use_substitutes=True)
        )
        assert cmd.global_arguments() == [
            "--show-trace",
            "--cores", "4",
            "--builders-use-substitutes",
        ]

    def test_global_arguments_disabled(self):
        cmd = NixCommand(
            NixSettings(mode=NixMode.DEFAULT, show_trace=False, use_substitutes=False)
        )
        assert cmd.global_arguments() == []

    def test_build_arguments_order(self):
        cmd = NixCommand(NixSettings(show_trace=False, use_substitutes=False))
        args = cmd.build_arguments(
            Path("/tmp/w.nix"), "aarch64-linux", '{"a":1}', Path("/etc/nixos/configuration.nix")
        )
        assert args == [
            "build",
            "-f", "/tmp/w.nix",
            "--arg", "system", '"aarch64-linux"',
            "--argstr", "settings", '{"a":1}',
            "--argstr", "configuration", "/etc/nixos/configuration.nix",
            "--json",
            "--no-link",
            "--extra-experimental-features", "nix-command",
        ]

    def test_copy_arguments(self):
        cmd = NixCommand(NixSettings(mode=NixMode.DEFAULT, show_trace=False))
        assert cmd.copy_arguments("/nix/store/x", "10.0.0.5") == [
            "copy",
            "--to", "ssh://10.0.0.5",
            "/nix/store/x",
            "--use-substitutes",
            "--builders-use-substitutes",
        ]

    def test_copy_protocol(self):
        cmd = NixCommand(NixSettings(copy_protocol=CopyProtocol.S3, use_substitutes=False))
        assert cmd.copy_arguments("/nix/store/x", "bucket")[:3] == ["copy", "--to", "s3://bucket"]

    def test_profile_install_compat(self):
        cmd = NixCommand(NixSettings(mode=NixMode.COMPAT), env_program="nix-env")
        assert cmd.profile_install_command("/nix/store/sys") == [
            "nix-env", "--profile", "/nix/var/nix/profiles/system", "--set", "/nix/store/sys",
        ]

    def test_profile_install_default(self):
        cmd = NixCommand(NixSettings(mode=NixMode.DEFAULT, profile="/p"))
        assert cmd.profile_install_command("/nix/store/sys") == [
            "nix", "profile", "install", "--profile", "/p", "--derivation", "/nix/store/sys",
        ]

    def test_ssh_opts_exported(self):
        cmd = NixCommand(NixSettings(), ssh_opts=["-F", "/tmp/ssh_config.x"])
        assert cmd.environment().to_dict() == {"NIX_SSHOPTS": "-F /tmp/ssh_config.x"}

    def test_no_ssh_opts_no_env(self):
        assert len(NixCommand(NixSettings()).environment()) == 0


class TestBuildWrapper:
    def test_packaged_wrapper_takes_expected_arguments(self):
        text = load_build_wrapper().decode()
        assert "{ system, settings, configuration }" in text
        assert "builtins.fromJSON settings" in text


class TestBuilder:
    def test_single_artifact(self, tmp_path, fake_invoker, configuration_file):
        builder = Builder(NixSettings(), invoker=fake_invoker, temp_dir=tmp_path)
        artifacts = builder.build(configuration_file, "{}", "x86_64-linux")
        assert len(artifacts) == 1
        assert artifacts[0].path == DRV_PATH
        assert artifacts[0].outputs == {"out": OUT_PATH}

    def test_configuration_passed_absolute(self, tmp_path, fake_invoker, monkeypatch):
        monkeypatch.chdir(tmp_path)
        Builder(NixSettings(), invoker=fake_invoker, temp_dir=tmp_path).build(
            "configuration.nix", "{}", "x86_64-linux"
        )
        argv = fake_invoker.calls[0].argv
        configuration = argv[argv.index("configuration") + 1]
        assert Path(configuration).is_absolute()
        assert configuration == str(tmp_path / "configuration.nix")

    def test_zero_artifacts_rejected(self, tmp_path, configuration_file):
        invoker = FakeInvoker().on(is_build, b"[]")
        with pytest.raises(NoArtifactProducedError):
            Builder(NixSettings(), invoker=invoker, temp_dir=tmp_path).build(
                configuration_file, "{}", "x86_64-linux"
            )

    def test_multiple_artifacts_rejected(self, tmp_path, configuration_file):
        invoker = FakeInvoker().on(
            is_build, build_output(("/nix/store/a.drv", {}), ("/nix/store/b.drv", {}))
        )
        with pytest.raises(AmbiguousArtifactError) as exc_info:
            Builder(NixSettings(), invoker=invoker, temp_dir=tmp_path).build(
                configuration_file, "{}", "x86_64-linux"
            )
        assert exc_info.value.count == 2

    def test_malformed_output_rejected(self, tmp_path, configuration_file):
        invoker = FakeInvoker().on(is_build, b"not json")
        with pytest.raises(UnmarshalError):
            Builder(NixSettings(), invoker=invoker, temp_dir=tmp_path).build(
                configuration_file, "{}", "x86_64-linux"
            )

    def test_cancelled_build_does_nothing(self, tmp_path, fake_invoker, configuration_file):
        cancel = threading.Event()
        cancel.set()
        result = Builder(NixSettings(), invoker=fake_invoker, temp_dir=tmp_path).build(
            configuration_file, "{}", "x86_64-linux", cancel=cancel
        )
        assert result is None
        assert fake_invoker.calls == []
        assert list(tmp_path.glob("nix_wrapper.*")) == []

    def test_generated_wrapper_written_then_removed(self, tmp_path, configuration_file):
        seen: dict[str, bytes] = {}

        class Capturing(FakeInvoker):
            def execute(self, program, args=(), **kwargs):
                wrapper = Path(args[args.index("-f") + 1])
                seen["content"] = wrapper.read_bytes()
                seen["path"] = str(wrapper)
                return super().execute(program, args, **kwargs)

        invoker = Capturing().on(is_build, build_output(("/nix/store/a.drv", {"out": "/o"})))
        Builder(NixSettings(), invoker=invoker, temp_dir=tmp_path).build(
            configuration_file, "{}", "x86_64-linux"
        )
        assert seen["content"] == load_build_wrapper()
        assert not Path(seen["path"]).exists()

    def test_wrapper_removed_on_failure(self, tmp_path, configuration_file):
        invoker = FakeInvoker().fail(is_build)
        with pytest.raises(SubprocessError):
            Builder(NixSettings(), invoker=invoker, temp_dir=tmp_path).build(
                configuration_file, "{}", "x86_64-linux"
            )
        assert list(tmp_path.glob("nix_wrapper.*")) == []

    def test_configured_wrapper_used_as_is(self, tmp_path, fake_invoker, configuration_file):
        wrapper = tmp_path / "custom.nix"
        wrapper.write_text("{ system, settings, configuration }: null\n")
        Builder(
            NixSettings(build_wrapper=wrapper), invoker=fake_invoker, temp_dir=tmp_path
        ).build(configuration_file, "{}", "x86_64-linux")
        argv = fake_invoker.calls[0].argv
        assert argv[argv.index("-f") + 1] == str(wrapper)
        assert wrapper.exists()

    def test_settings_json_passed_verbatim(self, tmp_path, fake_invoker, configuration_file):
        settings = json.dumps({"hostname": "web", "ports": [22, 80]})
        Builder(NixSettings(), invoker=fake_invoker, temp_dir=tmp_path).build(
            configuration_file, settings, "x86_64-linux"
        )
        argv = fake_invoker.calls[0].argv
        assert argv[argv.index("settings") + 1] == settings
