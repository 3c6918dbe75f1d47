"""Initiator control flow with provisioning stubbed out, and the target run
against the in-memory host."""

import contextlib
import json

import httpx
import pytest
from rich.console import Console

from agentvps import orchestrator
from agentvps.config import Configuration
from agentvps.exceptions import ConfigurationError, StepFailure, UnreachableError
from agentvps.orchestrator import add_ssh_alias, run_initiator, run_target, shell_rc_path
from agentvps.server import SUMMARY_PATH
from agentvps.types import Credential, Instance, KeyPair

INSTANCE = Instance(id=5, name="agent-vps-0a1b2c3d", server_type="cpx21", location="ash", ip="203.0.113.5")


class FakeProvider:
    def __init__(self, calls):
        self.calls = calls

    def register_key(self, key):
        self.calls.append("register_key")
        return Credential(key, 17, "aa:bb")

    def create_instance(self, config, credential):
        self.calls.append("create_instance")
        return INSTANCE


@pytest.fixture
def initiator(monkeypatch, tmp_path):
    """Stub every external effect of run_initiator; returns the call log and knobs."""
    state = {"calls": [], "returncode": 0, "summary": {"state": "completed", "warned": []}}
    calls = state["calls"]
    key = KeyPair(tmp_path / "agentvps_ed25519")

    monkeypatch.setattr(orchestrator, "missing_tools", lambda tools: [])
    monkeypatch.setattr(orchestrator, "ensure_local_key", lambda path, confirm=None: calls.append("key") or key)
    monkeypatch.setattr(orchestrator, "get_provider", lambda config: FakeProvider(calls))
    monkeypatch.setattr(orchestrator, "wait_for_ssh", lambda ip, key_path: calls.append("wait") or 1)
    monkeypatch.setattr(orchestrator, "connect", lambda ip, key_path: contextlib.nullcontext("conn"))
    monkeypatch.setattr(orchestrator, "ship_package", lambda c: calls.append("ship"))
    monkeypatch.setattr(orchestrator, "bootstrap_runtime", lambda c: calls.append("bootstrap"))
    monkeypatch.setattr(
        orchestrator, "run_remote_setup", lambda c, config: calls.append("remote") or state["returncode"]
    )
    monkeypatch.setattr(orchestrator, "read_summary", lambda c: state["summary"])
    monkeypatch.setattr(orchestrator, "fetch_tailscale_ip", lambda ip, key_path, user: "100.64.0.1")
    monkeypatch.setattr(orchestrator, "print_completion", lambda *args: calls.append("completion"))
    return state


def test_initiator_runs_phases_in_order(initiator):
    run_initiator(Configuration(hetzner_token="tok"), interactive=False)

    assert initiator["calls"] == [
        "key",
        "register_key",
        "create_instance",
        "wait",
        "ship",
        "bootstrap",
        "remote",
        "completion",
    ]


def test_initiator_requires_token_without_wizard(initiator):
    with pytest.raises(ConfigurationError):
        run_initiator(Configuration(), interactive=False)

    assert initiator["calls"] == []


def test_initiator_requires_local_tools(initiator, monkeypatch):
    monkeypatch.setattr(orchestrator, "missing_tools", lambda tools: ["ssh-keygen"])

    with pytest.raises(ConfigurationError) as exc:
        run_initiator(Configuration(hetzner_token="tok"), interactive=False)

    assert "ssh-keygen" in str(exc.value)
    assert initiator["calls"] == []


def test_initiator_reports_remote_failing_step(initiator):
    initiator["returncode"] = 1
    initiator["summary"] = {
        "state": "aborted",
        "failed": "firewall",
        "failed_label": "Configuring firewall",
        "error": "Command failed with exit code 1: ufw allow 22/tcp",
        "log_path": "/var/log/agentvps-setup.log",
    }

    with pytest.raises(StepFailure) as exc:
        run_initiator(Configuration(hetzner_token="tok"), interactive=False)

    assert exc.value.step == "firewall"
    assert "Configuring firewall failed" in str(exc.value)
    assert "/var/log/agentvps-setup.log" in str(exc.value)
    assert "completion" not in initiator["calls"]


def test_initiator_stops_when_unreachable(initiator, monkeypatch):
    def unreachable(ip, key_path):
        raise UnreachableError("did not accept SSH")

    monkeypatch.setattr(orchestrator, "wait_for_ssh", unreachable)

    with pytest.raises(UnreachableError):
        run_initiator(Configuration(hetzner_token="tok"), interactive=False)

    assert "ship" not in initiator["calls"]


def test_target_writes_summary(make_host, tmp_path, baseline_config, monkeypatch):
    monkeypatch.setattr(orchestrator.os, "geteuid", lambda: 0)
    hosts = []

    def factory(run_log):
        hosts.append(make_host())
        hosts[-1].run_log = run_log
        return hosts[-1]

    summary = run_target(
        baseline_config, log_path=str(tmp_path / "agentvps-setup.log"), host_factory=factory, console=Console(quiet=True)
    )

    assert summary.ok
    data = json.loads(hosts[0].read_text(SUMMARY_PATH))
    assert data["state"] == "completed"
    assert data["failed"] is None
    assert ["chown", "dev:dev", SUMMARY_PATH] in hosts[0].commands("chown")


def test_target_writes_summary_on_abort(make_host, tmp_path, baseline_config, monkeypatch):
    monkeypatch.setattr(orchestrator.os, "geteuid", lambda: 0)
    hosts = []

    def factory(run_log):
        hosts.append(make_host(root_user=False))
        hosts[-1].run_log = run_log
        return hosts[-1]

    with pytest.raises(StepFailure):
        run_target(
            baseline_config,
            log_path=str(tmp_path / "agentvps-setup.log"),
            host_factory=factory,
            console=Console(quiet=True),
        )

    data = json.loads(hosts[0].read_text(SUMMARY_PATH))
    assert data["state"] == "aborted"
    assert data["failed"] == "privileges"


def test_target_requires_root(monkeypatch, baseline_config):
    monkeypatch.setattr(orchestrator.os, "geteuid", lambda: 1000)

    with pytest.raises(ConfigurationError):
        run_target(baseline_config)


def test_ssh_alias_is_added_once(tmp_path):
    rc = tmp_path / ".zshrc"
    rc.write_text("export EDITOR=vim")
    line = "alias vps='ssh -i /k dev@203.0.113.5'"

    assert add_ssh_alias(rc, "vps", line) is True
    assert add_ssh_alias(rc, "vps", line) is False
    assert rc.read_text().count(line) == 1
    assert rc.read_text().startswith("export EDITOR=vim\n")


def test_shell_rc_follows_login_shell():
    assert shell_rc_path("/bin/zsh").name == ".zshrc"
    assert shell_rc_path("/bin/bash").name == ".bashrc"
    assert shell_rc_path("").name == ".bashrc"


def test_interactive_run_connects_local_tailscale_before_alias(initiator, monkeypatch):
    calls = initiator["calls"]
    config = Configuration(hetzner_token="tok", install_tailscale=True)
    monkeypatch.setattr(orchestrator, "run_wizard", lambda c: c)
    monkeypatch.setattr(orchestrator, "setup_local_tailscale", lambda: calls.append("local-tailscale"))
    monkeypatch.setattr(orchestrator, "offer_ssh_alias", lambda *args: calls.append("alias"))

    run_initiator(config, interactive=True)

    assert calls[-3:] == ["local-tailscale", "alias", "completion"]


def test_interactive_run_skips_local_tailscale_when_disabled(initiator, monkeypatch):
    calls = initiator["calls"]
    monkeypatch.setattr(orchestrator, "run_wizard", lambda c: c)
    monkeypatch.setattr(orchestrator, "setup_local_tailscale", lambda: calls.append("local-tailscale"))
    monkeypatch.setattr(orchestrator, "offer_ssh_alias", lambda *args: calls.append("alias"))

    run_initiator(Configuration(hetzner_token="tok", install_tailscale=False), interactive=True)

    assert "local-tailscale" not in calls


class LocalCommands:
    """Records local commands; ``status`` is the exit code of ``tailscale status``."""

    def __init__(self, status=1):
        self.status = status
        self.calls = []

    def __call__(self, args, *, quiet=False):
        self.calls.append(args)
        if args[:2] == ["tailscale", "status"]:
            return self.status
        return 0


def installed(*tools):
    return lambda name: f"/usr/bin/{name}" if name in tools else None


def test_local_tailscale_already_connected(monkeypatch):
    monkeypatch.setattr(orchestrator.shutil, "which", installed("tailscale"))
    run = LocalCommands(status=0)

    orchestrator.setup_local_tailscale("Linux", run)

    assert run.calls == [["tailscale", "status"]]


def test_local_tailscale_installed_but_disconnected(monkeypatch):
    monkeypatch.setattr(orchestrator.shutil, "which", installed("tailscale"))
    linux, mac = LocalCommands(), LocalCommands()

    orchestrator.setup_local_tailscale("Linux", linux)
    orchestrator.setup_local_tailscale("Darwin", mac)

    assert linux.calls[-1] == ["sudo", "tailscale", "up"]
    assert mac.calls[-1] == ["open", "-a", "Tailscale"]


def test_local_tailscale_installs_with_homebrew_on_mac(monkeypatch):
    monkeypatch.setattr(orchestrator.shutil, "which", installed("brew"))
    monkeypatch.setattr(orchestrator, "wait_for_enter", lambda message: None)
    run = LocalCommands()

    orchestrator.setup_local_tailscale("Darwin", run)

    assert run.calls == [["brew", "install", "--cask", "tailscale"], ["open", "-a", "Tailscale"]]


def test_local_tailscale_guides_mac_without_homebrew(monkeypatch):
    monkeypatch.setattr(orchestrator.shutil, "which", installed())
    waited = []
    monkeypatch.setattr(orchestrator, "wait_for_enter", waited.append)
    run = LocalCommands()

    orchestrator.setup_local_tailscale("Darwin", run)

    assert run.calls == []
    assert waited == ["Press Enter to continue"]


def test_local_tailscale_installs_on_linux(monkeypatch, tmp_path):
    script = tmp_path / "install.sh"
    script.write_text("#!/bin/sh\n")
    monkeypatch.setattr(orchestrator.shutil, "which", installed())
    monkeypatch.setattr(orchestrator, "download_installer", lambda url: script)
    run = LocalCommands()

    orchestrator.setup_local_tailscale("Linux", run)

    assert run.calls == [["bash", str(script)], ["sudo", "tailscale", "up"]]
    assert not script.exists()


def test_local_tailscale_download_failure_is_not_fatal(monkeypatch):
    def fail(url):
        raise httpx.ConnectError("no route")

    monkeypatch.setattr(orchestrator.shutil, "which", installed())
    monkeypatch.setattr(orchestrator, "download_installer", fail)
    run = LocalCommands()

    orchestrator.setup_local_tailscale("Linux", run)

    assert run.calls == []
