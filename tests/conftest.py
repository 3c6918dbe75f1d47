"""Shared fixtures: an in-memory host for pipeline tests, and a session-scoped
live server for integration tests against Hetzner."""

import itertools
import os
from pathlib import Path

import httpx
import pytest

from agentvps.client import API_URL
from agentvps.config import Configuration
from agentvps.host import LocalHost
from agentvps.providers import HetznerProvider, generate_key
from agentvps.server import bootstrap_runtime, connect, run_remote_setup, ship_package, wait_for_ssh
from agentvps.steps import RunLog

AUTHORIZED_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFakeKeyForTests operator@laptop\n"

# packages that put commands on PATH
PACKAGE_BINARIES = {
    "nodejs": ["node", "npm"],
    "docker-ce": ["docker"],
    "ufw": ["ufw"],
}


class FakeHost(LocalHost):
    """Ubuntu host simulated in memory.

    Files are real, under ``root``. Commands never run: each one is recorded
    in ``calls`` and answered from the simulated state (users, packages,
    services, firewall, swap, crontabs). ``failures`` maps a substring of
    the command line to the exit code it should fail with.
    """

    def __init__(self, run_log: RunLog, root: Path, *, memory_mb: int = 4096, root_user: bool = True):
        super().__init__(run_log, root)
        self.memory_mb = memory_mb
        self.root_user = root_user
        self.failures: dict[str, int] = {}
        self.calls: list[tuple[str | None, list[str]]] = []
        self.downloads: list[str] = []
        self.interactive: list[list[str]] = []

        self.users: set[str] = set()
        self.groups: dict[str, set[str]] = {}
        self.packages: set[str] = set()
        self.binaries: set[str] = {"bash", "apt-get", "systemctl"}
        self.upgradable = 3
        self.active: set[str] = set()
        self.enabled: set[str] = set()
        self.ufw_defaults: dict[str, str] = {"incoming": "allow", "outgoing": "allow"}
        self.ufw_rules: list[str] = []
        self.ufw_active = False
        self.swaps: list[str] = []
        self.swap_sizes: dict[str, str] = {}
        self.crontabs: dict[str, str] = {}

        self.path("/root/.ssh").mkdir(parents=True)
        self.path("/root/.ssh/authorized_keys").write_text(AUTHORIZED_KEY)

    def is_root(self) -> bool:
        return self.root_user

    def total_memory_mb(self) -> int:
        return self.memory_mb

    def download(self, url: str, host_path: str) -> None:
        self.downloads.append(url)
        p = self.path(host_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text("#!/bin/sh\n")

    def run_interactive(self, cmd: list[str]) -> None:
        self.interactive.append(cmd)

    def commands(self, program: str) -> list[list[str]]:
        """Recorded argument lists starting with ``program``."""
        return [args for _, args in self.calls if args and args[0] == program]

    def shell_commands(self) -> list[str]:
        return [args[2] for _, args in self.calls if args[:2] == ["bash", "-c"]]

    # ── simulation ────────────────────────────────────────────────

    def _exec(self, args: list[str], input: str | None = None) -> tuple[int, str]:
        user = None
        if args[0] == "su":
            user, args = args[2], ["bash", "-c", args[4]]
        self.calls.append((user, args))

        line = " ".join(args)
        for pattern, returncode in self.failures.items():
            if pattern in line:
                return returncode, f"simulated failure ({pattern})\n"

        if args[:2] == ["bash", "-c"]:
            return self._shell(args[2], user, input)
        handler = getattr(self, "_" + args[0].replace("-", "_"), None)
        if handler is None:
            return 0, ""
        return handler(args[1:])

    def _shell(self, cmd: str, user: str | None, input: str | None) -> tuple[int, str]:
        if cmd.startswith("command -v "):
            return (0, "") if cmd.split()[-1].strip("'") in self.binaries else (1, "")
        if cmd.startswith("crontab -l"):
            return 0, self.crontabs.get(user, "")
        if cmd == "crontab -":
            self.crontabs[user] = input or ""
            return 0, ""
        return 0, ""

    def _apt_get(self, args: list[str]) -> tuple[int, str]:
        if "-s" in args:
            return 0, f"{self.upgradable} upgraded, 0 newly installed, 0 to remove and 0 not upgraded.\n"
        if "upgrade" in args:
            self.upgradable = 0
        if "install" in args:
            skip_next = False
            for a in args:
                if skip_next:
                    skip_next = False
                elif a == "-o":
                    skip_next = True
                elif a != "install" and not a.startswith("-"):
                    self.packages.add(a)
                    self.binaries.update(PACKAGE_BINARIES.get(a, []))
        return 0, ""

    def _dpkg(self, args: list[str]) -> tuple[int, str]:
        missing = [p for p in args[1:] if p not in self.packages]
        if missing:
            return 1, f"dpkg-query: package '{missing[0]}' is not installed\n"
        return 0, ""

    def _id(self, args: list[str]) -> tuple[int, str]:
        name = args[-1]
        if name not in self.users:
            return 1, f"id: '{name}': no such user\n"
        if "-nG" in args:
            return 0, " ".join([name, *sorted(self.groups[name])]) + "\n"
        return 0, "1000\n"

    def _useradd(self, args: list[str]) -> tuple[int, str]:
        name = args[-1]
        if name in self.users:
            return 9, f"useradd: user '{name}' already exists\n"
        self.users.add(name)
        self.groups[name] = set()
        home = self.path(f"/home/{name}")
        home.mkdir(parents=True)
        (home / ".bashrc").write_text("# ~/.bashrc\n")
        (home / ".profile").write_text("# ~/.profile\n")
        return 0, ""

    def _usermod(self, args: list[str]) -> tuple[int, str]:
        group, name = args[-2], args[-1]
        self.groups.setdefault(name, set()).add(group)
        return 0, ""

    def _systemctl(self, args: list[str]) -> tuple[int, str]:
        action, unit = args[0], args[-1]
        if action == "is-active":
            return (0, "") if unit in self.active else (3, "")
        if action == "is-enabled":
            return (0, "") if unit in self.enabled else (1, "")
        if action == "enable":
            self.enabled.add(unit)
            if "--now" in args:
                self.active.add(unit)
        if action in ("start", "restart"):
            self.active.add(unit)
        return 0, ""

    def _ufw(self, args: list[str]) -> tuple[int, str]:
        if args[0] == "default":
            self.ufw_defaults[args[2]] = args[1]
        elif args[0] == "allow":
            if args[1] in self.ufw_rules:
                return 0, "Skipping adding existing rule\n"
            self.ufw_rules.append(args[1])
        elif args[-1] == "enable":
            self.ufw_active = True
        elif args[0] == "status":
            return 0, self._ufw_status()
        return 0, ""

    def _ufw_status(self) -> str:
        if not self.ufw_active:
            return "Status: inactive\n"
        lines = [
            "Status: active",
            "Logging: on (low)",
            f"Default: {self.ufw_defaults['incoming']} (incoming), "
            f"{self.ufw_defaults['outgoing']} (outgoing), disabled (routed)",
            "New profiles: skip",
            "",
            "To                         Action      From",
            "--                         ------      ----",
        ]
        lines += [f"{rule:<27}ALLOW IN    Anywhere" for rule in self.ufw_rules]
        return "\n".join(lines) + "\n"

    def _fallocate(self, args: list[str]) -> tuple[int, str]:
        size, target = args[1], args[2]
        self.path(target).write_text("")
        self.swap_sizes[target] = size
        return 0, ""

    def _swapon(self, args: list[str]) -> tuple[int, str]:
        if args == ["--show"]:
            if not self.swaps:
                return 0, ""
            rows = [f"{s} file {self.swap_sizes.get(s, '?')} 0B -2" for s in self.swaps]
            return 0, "NAME TYPE SIZE USED PRIO\n" + "\n".join(rows) + "\n"
        if args[0] not in self.swaps:
            self.swaps.append(args[0])
        return 0, ""


@pytest.fixture
def run_log(tmp_path):
    with RunLog(tmp_path / "setup.log") as log:
        yield log


@pytest.fixture
def make_host(run_log, tmp_path):
    counter = itertools.count()

    def make(**kwargs) -> FakeHost:
        return FakeHost(run_log, tmp_path / f"host{next(counter)}", **kwargs)

    return make


@pytest.fixture
def host(make_host):
    return make_host()


@pytest.fixture
def baseline_config():
    """Configuration with every optional tool switched off."""
    return Configuration(
        user="dev",
        install_homebrew=False,
        install_node=False,
        install_bun=False,
        install_claude_code=False,
        install_codex=False,
        install_gemini_cli=False,
        install_opencode=False,
        install_docker=False,
        install_tailscale=False,
    )


# ── integration ───────────────────────────────────────────────────


def pytest_addoption(parser):
    parser.addoption(
        "--location",
        default="nbg1",
        help="Hetzner location for integration tests (default: nbg1)",
    )


@pytest.fixture(scope="session")
def location(request):
    return request.config.getoption("--location")


@pytest.fixture(scope="session")
def live_server(location, tmp_path_factory):
    """Create a real server, run the baseline setup, yield it, delete on teardown.

    Yields ``(instance, key, config)``.
    """
    token = os.environ.get("HETZNER_TOKEN")
    if not token:
        pytest.skip("HETZNER_TOKEN not set")

    config = Configuration(
        hetzner_token=token,
        server_type="cpx11",
        location=location,
        user="dev",
        install_homebrew=False,
        install_node=False,
        install_bun=False,
        install_claude_code=False,
        install_codex=False,
        install_gemini_cli=False,
        install_opencode=False,
        install_docker=False,
        install_tailscale=False,
    )
    key = generate_key(tmp_path_factory.mktemp("ssh") / "agentvps_test_ed25519")
    provider = HetznerProvider(token)
    credential = provider.register_key(key)
    instance = provider.create_instance(config, credential)

    try:
        wait_for_ssh(instance.ip, key.private_path)
        with connect(instance.ip, key.private_path) as c:
            ship_package(c)
            bootstrap_runtime(c)
            returncode = run_remote_setup(c, config)
        if returncode != 0:
            pytest.fail(f"Server setup exited with {returncode}")
        yield instance, key, config
    finally:
        httpx.delete(
            f"{API_URL}/servers/{instance.id}",
            headers={"Authorization": f"Bearer {token}"},
            timeout=30,
        )
