from dataclasses import replace

import pytest
from click.testing import CliRunner

from modtrust import cli
from modtrust.reconciler import Reconciler
from tests.conftest import SB_ENABLED, install_kernel


@pytest.fixture
def invoke(monkeypatch, layout, runner):
    monkeypatch.setattr(cli, "HostLayout", lambda: layout)
    monkeypatch.setattr(
        cli,
        "Reconciler",
        lambda host_layout, confirm=None: Reconciler(
            host_layout, runner=runner, confirm=confirm, hook_python="/usr/bin/python3"
        ),
    )

    def _invoke(command, args=()):
        return CliRunner().invoke(command, list(args))

    return _invoke


def test_completed_run(invoke, layout):
    install_kernel(layout, "6.8.0-45-generic")

    result = invoke(cli.main)

    assert result.exit_code == 0, result.output
    assert "✅ Done (Secure Boot: disabled)" in result.output
    assert "signer: VMware Kernel Module Signing" in result.output


def test_pending_reboot_exits_zero(invoke, runner, layout):
    runner.sb_state = SB_ENABLED

    result = invoke(cli.main)

    assert result.exit_code == 0, result.output
    assert "Stopping here" in result.output
    assert "Enroll MOK" in result.output


def test_fatal_error_exits_one(invoke, runner):
    runner.privileged = False

    result = invoke(cli.main)

    assert result.exit_code == 1
    assert "❌" in result.output


def test_show_config(invoke, runner, layout):
    result = invoke(cli.main, ["--show-config"])

    assert result.exit_code == 0
    assert "modtrust Configuration Summary" in result.output
    assert str(layout.key_dir) in result.output
    assert runner.calls == []


def test_invalid_config_exits_one(monkeypatch, layout):
    monkeypatch.setattr(cli, "HostLayout", lambda: replace(layout, key_bits=1024))

    result = CliRunner().invoke(cli.main, [])

    assert result.exit_code == 1
    assert "MODTRUST_KEY_BITS" in result.output


def test_hook_runs_for_given_kernel(invoke, runner, layout):
    install_kernel(layout, "6.11.0-9-generic")

    result = invoke(cli.hook_main, ["6.11.0-9-generic", "/boot/vmlinuz-6.11.0-9-generic"])

    assert result.exit_code == 0
    build = [c for c in runner.calls if c["argv"][0] == "vmware-modconfig"]
    assert build[0]["env"] == {"VM_UNAME": "6.11.0-9-generic"}


def test_hook_swallows_unexpected_errors(monkeypatch):
    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(cli, "HostLayout", explode)

    result = CliRunner().invoke(cli.hook_main, ["6.11.0-9-generic"])

    assert result.exit_code == 0
    assert result.exception is None


def test_completed_run_shows_certificate(invoke, layout):
    install_kernel(layout, "6.8.0-45-generic")

    result = invoke(cli.main)

    assert "🔑 MOK: CN=VMware Kernel Module Signing" in result.output
    assert "SHA-256: " in result.output
    assert f"Certificate: {layout.certificate_path}" in result.output


def test_pending_reboot_shows_fingerprint_to_match(invoke, runner):
    runner.sb_state = SB_ENABLED

    result = invoke(cli.main)

    lines = [line for line in result.output.splitlines() if "SHA-256: " in line]
    assert len(lines) == 1
    assert len(lines[0].split("SHA-256: ")[1]) == 64


def test_hook_without_kernel_uses_running_kernel(invoke, runner):
    result = invoke(cli.hook_main)

    assert result.exit_code == 0
    build = [c for c in runner.calls if c["argv"][0] == "vmware-modconfig"]
    assert build[0]["env"] == {"VM_UNAME": "6.8.0-45-generic"}


def test_hook_with_invalid_config_does_nothing(monkeypatch, layout, runner):
    monkeypatch.setattr(cli, "HostLayout", lambda: replace(layout, key_bits=None))
    monkeypatch.setattr(cli, "Reconciler", lambda *args, **kwargs: pytest.fail("hook ran with invalid config"))

    result = CliRunner().invoke(cli.hook_main, ["6.11.0-9-generic"])

    assert result.exit_code == 0
    assert runner.calls == []
