"""The fixed setup pipeline for a fresh Ubuntu host.

Each step probes live host state before acting, so running the pipeline
again on a finished host leaves it untouched.
"""

import json
import re
import shlex
from functools import partial
from importlib import resources
from textwrap import dedent

from rich import print

from .config import Configuration
from .exceptions import CommandError, ConfigurationError, MissingDependencyError
from .host import LocalHost
from .steps import Policy, Step

BASE_PACKAGES = [
    "curl", "wget", "git", "vim", "htop", "tmux", "ufw", "fail2ban", "unzip", "jq",
    "software-properties-common", "apt-transport-https", "ca-certificates", "gnupg",
    "lsb-release", "build-essential", "python3", "python3-pip", "python3-venv",
]

APT_OPTIONS = ["-o", "Dpkg::Options::=--force-confdef", "-o", "Dpkg::Options::=--force-confold"]
UPGRADE_COUNT_RE = re.compile(r"^(\d+) upgraded,", re.M)

SSHD_HARDENING_PATH = "/etc/ssh/sshd_config.d/99-agentvps-hardening.conf"
SSHD_HARDENING = dedent("""\
    # Security hardening applied by agentvps
    PermitRootLogin no
    PasswordAuthentication no
    PubkeyAuthentication yes
    MaxAuthTries 3
    ClientAliveInterval 300
    ClientAliveCountMax 2
""")

FAIL2BAN_JAIL_PATH = "/etc/fail2ban/jail.local"

UNATTENDED_PATH = "/etc/apt/apt.conf.d/50unattended-upgrades"
UNATTENDED_CONFIG = dedent("""\
    Unattended-Upgrade::Allowed-Origins {
        "${distro_id}:${distro_codename}-security";
    };
    Unattended-Upgrade::Automatic-Reboot "false";
    Unattended-Upgrade::Remove-Unused-Dependencies "true";
""")

SWAP_FILE = "/swapfile.img"
SWAP_MAX_MB = 16384
SWAPPINESS = 10

BREW = "/home/linuxbrew/.linuxbrew/bin/brew"
BREW_SHELLENV = f'eval "$({BREW} shellenv)"'

BREW_INSTALLER = "https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh"
NODESOURCE_SETUP = "https://deb.nodesource.com/setup_22.x"
BUN_INSTALLER = "https://bun.sh/install"
CLAUDE_INSTALLER = "https://claude.ai/install.sh"
DOCKER_GPG = "https://download.docker.com/linux/ubuntu/gpg"
TAILSCALE_INSTALLER = "https://tailscale.com/install.sh"

NPM_PATH = "$HOME/.npm-global/bin"
BUN_PATH = "$HOME/.bun/bin"
LOCAL_BIN_PATH = "$HOME/.local/bin"

# step name -> (npm package, installed binary)
NPM_AGENTS = {
    "codex": ("@openai/codex", "codex"),
    "gemini-cli": ("@google/gemini-cli", "gemini"),
    "opencode": ("opencode-ai@latest", "opencode"),
}

ALIASES = dedent("""\
    # Coding agent aliases, managed by agentvps

    # Claude Code with auto-accept permissions (for autonomous agent loops)
    alias cc='claude --dangerously-skip-permissions'

    # Background agent in a tmux session
    alias agent='tmux new-session -d -s agent "claude --dangerously-skip-permissions" && tmux attach -t agent'

    # Codex with full auto-approval
    alias cx='codex --full-auto'

    # Server shortcuts
    alias ports='ss -tlnp'
    alias logs='journalctl -f'
    alias disk='df -h'
    alias mem='free -h'
""")

ALIASES_SOURCE = dedent("""\

    # Load custom aliases
    if [ -f ~/.bash_aliases ]; then
        . ~/.bash_aliases
    fi
""")

CLEANUP_SCHEDULE = "0 4 * * *"


def home(config: Configuration) -> str:
    return f"/home/{config.user}"


def data_file(name: str) -> str:
    return (resources.files("agentvps") / "data" / name).read_text()


def fail2ban_jail(config: Configuration) -> str:
    return dedent(f"""\
        [DEFAULT]
        bantime = 24h
        findtime = 10m
        maxretry = 3

        [sshd]
        enabled = true
        port = {config.ssh_port}
        filter = sshd
        logpath = /var/log/auth.log
        maxretry = 3
    """)


def path_line(fragment: str) -> str:
    return f'export PATH="{fragment}:$PATH"'


def shell_files(config: Configuration) -> list[str]:
    return [f"{home(config)}/.profile", f"{home(config)}/.bashrc"]


def has_shell_line(host: LocalHost, config: Configuration, marker: str) -> bool:
    return all(marker in (host.read_text(f) or "") for f in shell_files(config))


def add_shell_line(host: LocalHost, config: Configuration, line: str, *, marker: str | None = None) -> None:
    """Append ``line`` to the user's .profile and .bashrc unless already there."""
    for f in shell_files(config):
        if host.append_once(f, line, marker=marker):
            host.chown(f, config.user)


def add_user_path(host: LocalHost, config: Configuration, fragment: str) -> None:
    add_shell_line(host, config, path_line(fragment), marker=fragment)


def fetch_and_run(host: LocalHost, url: str, name: str, *, user: str | None = None, env: str = "") -> None:
    """Download an installer script and run it with bash, as ``user`` if given."""
    script = f"/tmp/agentvps-{name}.sh"
    host.download(url, script)
    try:
        host.run(f"{env}bash {script}".strip(), user=user)
    finally:
        host.remove(script)


# ── baseline ──────────────────────────────────────────────────────


def check_privileges(host: LocalHost) -> None:
    if not host.is_root():
        raise ConfigurationError("Server setup must run as root")


def update_package_lists(host: LocalHost) -> None:
    host.run(["apt-get", "update", "-qq"])


def packages_current(host: LocalHost) -> bool:
    match = UPGRADE_COUNT_RE.search(host.run(["apt-get", "-s", "upgrade"]))
    return match is not None and int(match.group(1)) == 0


def upgrade_packages(host: LocalHost) -> None:
    host.run(["apt-get", "upgrade", "-y", "-qq", *APT_OPTIONS])


def base_packages_installed(host: LocalHost) -> bool:
    return host.succeeds(["dpkg", "-s", *BASE_PACKAGES])


def install_base_packages(host: LocalHost) -> None:
    host.run(["apt-get", "install", "-y", "-qq", *APT_OPTIONS, *BASE_PACKAGES])


def sudoers_line(config: Configuration) -> str:
    return f"{config.user} ALL=(ALL) NOPASSWD:ALL\n"


def user_exists(host: LocalHost, config: Configuration) -> bool:
    return host.succeeds(["id", "-u", config.user])


def user_ready(host: LocalHost, config: Configuration) -> bool:
    return (
        user_exists(host, config)
        and host.read_text(f"/etc/sudoers.d/{config.user}") == sudoers_line(config)
    )


def create_user(host: LocalHost, config: Configuration) -> None:
    """Create the login user with passwordless sudo (key auth only, no password)."""
    if not user_exists(host, config):
        host.run(["useradd", "-m", "-s", "/bin/bash", config.user])
    host.run(["usermod", "-aG", "sudo", config.user])
    host.write_text(f"/etc/sudoers.d/{config.user}", sudoers_line(config), mode=0o440)


def keys_propagated(host: LocalHost, config: Configuration) -> bool:
    root_keys = host.read_text("/root/.ssh/authorized_keys")
    return bool(root_keys) and host.read_text(f"{home(config)}/.ssh/authorized_keys") == root_keys


def propagate_keys(host: LocalHost, config: Configuration) -> None:
    """Copy root's authorized keys to the new user before root login is disabled."""
    root_keys = host.read_text("/root/.ssh/authorized_keys")
    if not root_keys:
        raise ConfigurationError(
            "/root/.ssh/authorized_keys is missing; refusing to disable root login "
            f"without a key for {config.user}"
        )
    ssh_dir = f"{home(config)}/.ssh"
    host.make_dir(ssh_dir, mode=0o700)
    host.write_text(f"{ssh_dir}/authorized_keys", root_keys, mode=0o600)
    host.chown(ssh_dir, config.user, recursive=True)


def ssh_hardened(host: LocalHost) -> bool:
    return host.read_text(SSHD_HARDENING_PATH) == SSHD_HARDENING


def harden_ssh(host: LocalHost) -> None:
    host.write_text(SSHD_HARDENING_PATH, SSHD_HARDENING, mode=0o644)
    try:
        host.run(["sshd", "-t"])
    except CommandError:
        host.remove(SSHD_HARDENING_PATH)
        raise
    # Ubuntu 24.04 names the unit "ssh", older releases "sshd"
    host.run("systemctl restart ssh || systemctl restart sshd")


def firewall_ports(config: Configuration) -> list[str]:
    return [f"{config.ssh_port}/tcp", "80/tcp", "443/tcp"]


def firewall_ready(host: LocalHost, config: Configuration) -> bool:
    try:
        status = host.run(["ufw", "status", "verbose"])
    except CommandError:
        return False
    lines = status.splitlines()
    if "Status: active" not in lines or "deny (incoming)" not in status:
        return False
    return all(any(line.startswith(port) for line in lines) for port in firewall_ports(config))


def configure_firewall(host: LocalHost, config: Configuration) -> None:
    host.run(["ufw", "default", "deny", "incoming"])
    host.run(["ufw", "default", "allow", "outgoing"])
    for port in firewall_ports(config):
        host.run(["ufw", "allow", port])
    host.run(["ufw", "--force", "enable"])


def fail2ban_ready(host: LocalHost, config: Configuration) -> bool:
    return host.read_text(FAIL2BAN_JAIL_PATH) == fail2ban_jail(config) and host.succeeds(
        ["systemctl", "is-active", "--quiet", "fail2ban"]
    )


def configure_fail2ban(host: LocalHost, config: Configuration) -> None:
    host.write_text(FAIL2BAN_JAIL_PATH, fail2ban_jail(config), mode=0o644)
    host.run(["systemctl", "enable", "fail2ban"])
    host.run(["systemctl", "restart", "fail2ban"])


def swap_active(host: LocalHost) -> bool:
    return SWAP_FILE in host.run(["swapon", "--show"])


def setup_swap(host: LocalHost) -> None:
    """Swap file the size of RAM, capped at 16 GB."""
    size_mb = min(host.total_memory_mb(), SWAP_MAX_MB)
    if not host.exists(SWAP_FILE):
        host.run(["fallocate", "-l", f"{size_mb}M", SWAP_FILE])
    host.run(["chmod", "600", SWAP_FILE])
    host.run(["mkswap", SWAP_FILE])
    host.run(["swapon", SWAP_FILE])
    host.append_once("/etc/fstab", f"{SWAP_FILE} none swap sw 0 0", marker=SWAP_FILE)
    host.run(["sysctl", f"vm.swappiness={SWAPPINESS}"])
    host.append_once("/etc/sysctl.conf", f"vm.swappiness={SWAPPINESS}", marker="vm.swappiness")


def auto_updates_ready(host: LocalHost) -> bool:
    return (
        host.read_text(UNATTENDED_PATH) == UNATTENDED_CONFIG
        and host.succeeds(["dpkg", "-s", "unattended-upgrades"])
        and host.succeeds(["systemctl", "is-enabled", "--quiet", "unattended-upgrades"])
    )


def enable_auto_updates(host: LocalHost) -> None:
    host.run(["apt-get", "install", "-y", "-qq", *APT_OPTIONS, "unattended-upgrades"])
    host.write_text(UNATTENDED_PATH, UNATTENDED_CONFIG, mode=0o644)
    host.run(["systemctl", "enable", "unattended-upgrades"])
    host.run(["systemctl", "start", "unattended-upgrades"])


# ── toolchain ─────────────────────────────────────────────────────


def homebrew_ready(host: LocalHost, config: Configuration) -> bool:
    return host.exists(BREW) and has_shell_line(host, config, "linuxbrew")


def install_homebrew(host: LocalHost, config: Configuration) -> None:
    # Homebrew refuses to install as root
    if not host.exists(BREW):
        fetch_and_run(host, BREW_INSTALLER, "brew-install", user=config.user, env="NONINTERACTIVE=1 ")
    add_shell_line(host, config, BREW_SHELLENV, marker="linuxbrew")


def brew_gcc_ready(host: LocalHost, config: Configuration) -> bool:
    return host.exists(BREW) and host.succeeds(f"{BREW} list --versions gcc", user=config.user)


def install_brew_gcc(host: LocalHost, config: Configuration) -> None:
    if not host.exists(BREW):
        raise MissingDependencyError("Homebrew is not installed")
    host.run(f"{BREW} install gcc", user=config.user)


def node_ready(host: LocalHost, config: Configuration) -> bool:
    return (
        host.has_command("node")
        and host.exists(f"{home(config)}/.npm-global")
        and has_shell_line(host, config, NPM_PATH)
    )


def install_node(host: LocalHost, config: Configuration) -> None:
    if not host.has_command("node"):
        fetch_and_run(host, NODESOURCE_SETUP, "nodesource-setup")
        host.run(["apt-get", "install", "-y", "-qq", *APT_OPTIONS, "nodejs"])
    # user-level global prefix so `npm install -g` works without root
    host.run("mkdir -p ~/.npm-global && npm config set prefix ~/.npm-global", user=config.user)
    add_user_path(host, config, NPM_PATH)


def bun_ready(host: LocalHost, config: Configuration) -> bool:
    return host.exists(f"{home(config)}/.bun/bin/bun") and has_shell_line(host, config, BUN_PATH)


def install_bun(host: LocalHost, config: Configuration) -> None:
    if not host.exists(f"{home(config)}/.bun/bin/bun"):
        fetch_and_run(host, BUN_INSTALLER, "bun-install", user=config.user)
    add_user_path(host, config, BUN_PATH)


def claude_code_ready(host: LocalHost, config: Configuration) -> bool:
    return host.exists(f"{home(config)}/.local/bin/claude") and has_shell_line(
        host, config, LOCAL_BIN_PATH
    )


def install_claude_code(host: LocalHost, config: Configuration) -> None:
    if not host.exists(f"{home(config)}/.local/bin/claude"):
        fetch_and_run(host, CLAUDE_INSTALLER, "claude-install", user=config.user)
    add_user_path(host, config, LOCAL_BIN_PATH)


def npm_agent_ready(host: LocalHost, config: Configuration, binary: str) -> bool:
    return host.exists(f"{home(config)}/.npm-global/bin/{binary}")


def install_npm_agent(host: LocalHost, config: Configuration, package: str) -> None:
    if not host.has_command("npm"):
        raise MissingDependencyError("npm is not available; the Node.js step did not complete")
    host.run(
        f'export PATH="{NPM_PATH}:$PATH" && npm install -g {shlex.quote(package)}',
        user=config.user,
    )


def docker_ready(host: LocalHost, config: Configuration) -> bool:
    if not host.has_command("docker"):
        return False
    groups = host.run(["id", "-nG", config.user]).split()
    return "docker" in groups


def install_docker(host: LocalHost, config: Configuration) -> None:
    """Docker Engine from the official apt repository."""
    if not host.has_command("docker"):
        host.download(DOCKER_GPG, "/tmp/agentvps-docker.gpg")
        script = dedent("""
            set -e
            apt-get remove -y -qq docker.io docker-doc docker-compose podman-docker containerd runc || true
            install -m 0755 -d /etc/apt/keyrings
            gpg --batch --yes --dearmor -o /etc/apt/keyrings/docker.gpg /tmp/agentvps-docker.gpg
            chmod a+r /etc/apt/keyrings/docker.gpg
            echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] \\
                https://download.docker.com/linux/ubuntu $(. /etc/os-release && echo "$VERSION_CODENAME") stable" \\
                > /etc/apt/sources.list.d/docker.list
            apt-get update -qq
            apt-get install -y -qq docker-ce docker-ce-cli containerd.io docker-buildx-plugin docker-compose-plugin
        """).strip()
        try:
            host.run(script)
        finally:
            host.remove("/tmp/agentvps-docker.gpg")
    host.run(["usermod", "-aG", "docker", config.user])
    host.run(["systemctl", "enable", "--now", "docker"])


# ── user configuration ────────────────────────────────────────────


def claude_settings(config: Configuration) -> str:
    statusline = f"{home(config)}/.claude/statusline-command.sh"
    return json.dumps({"statusLine": {"type": "command", "command": statusline}}, indent=2) + "\n"


def claude_config_ready(host: LocalHost, config: Configuration) -> bool:
    claude_dir = f"{home(config)}/.claude"
    return (
        host.read_text(f"{claude_dir}/statusline-command.sh") == data_file("statusline-command.sh")
        and host.read_text(f"{claude_dir}/settings.json") == claude_settings(config)
    )


def write_claude_config(host: LocalHost, config: Configuration) -> None:
    claude_dir = f"{home(config)}/.claude"
    host.make_dir(claude_dir)
    host.write_text(f"{claude_dir}/statusline-command.sh", data_file("statusline-command.sh"), mode=0o755)
    host.write_text(f"{claude_dir}/settings.json", claude_settings(config), mode=0o644)
    host.chown(claude_dir, config.user, recursive=True)


def aliases_ready(host: LocalHost, config: Configuration) -> bool:
    return (
        host.read_text(f"{home(config)}/.bash_aliases") == ALIASES
        and ".bash_aliases" in (host.read_text(f"{home(config)}/.bashrc") or "")
    )


def write_aliases(host: LocalHost, config: Configuration) -> None:
    alias_file = f"{home(config)}/.bash_aliases"
    host.write_text(alias_file, ALIASES, mode=0o644)
    host.chown(alias_file, config.user)
    bashrc = f"{home(config)}/.bashrc"
    if host.append_once(bashrc, ALIASES_SOURCE, marker=".bash_aliases"):
        host.chown(bashrc, config.user)


def cleanup_helper_path(config: Configuration) -> str:
    return f"{home(config)}/.local/bin/tmp-cleanup"


def user_crontab(host: LocalHost, config: Configuration) -> str:
    return host.run("crontab -l 2>/dev/null || true", user=config.user)


def tmp_cleanup_ready(host: LocalHost, config: Configuration) -> bool:
    return (
        host.read_text(cleanup_helper_path(config)) == data_file("tmp-cleanup.sh")
        and has_shell_line(host, config, LOCAL_BIN_PATH)
        and "tmp-cleanup" in user_crontab(host, config)
    )


def install_tmp_cleanup(host: LocalHost, config: Configuration) -> None:
    helper = cleanup_helper_path(config)
    host.make_dir(f"{home(config)}/.local/bin")
    host.write_text(helper, data_file("tmp-cleanup.sh"), mode=0o755)
    host.chown(f"{home(config)}/.local", config.user, recursive=True)
    add_user_path(host, config, LOCAL_BIN_PATH)

    current = user_crontab(host, config)
    if "tmp-cleanup" not in current:
        lines = [line for line in current.splitlines() if line.strip()]
        lines.append(f"{CLEANUP_SCHEDULE} {helper} >/dev/null 2>&1")
        host.run("crontab -", user=config.user, input="\n".join(lines) + "\n")


def tailscale_ready(host: LocalHost) -> bool:
    return host.has_command("tailscale") and host.succeeds(["tailscale", "ip", "-4"])


def join_tailscale(host: LocalHost) -> None:
    if not host.has_command("tailscale"):
        fetch_and_run(host, TAILSCALE_INSTALLER, "tailscale-install")
    print()
    print("  [bold]Tailscale needs you to authenticate.[/bold]")
    print("  A login URL will appear below. Open it in your browser to connect this server.")
    print()
    host.run_interactive(["tailscale", "up"])


def build_pipeline(config: Configuration, host: LocalHost) -> list[Step]:
    """The ordered step list for hardening and provisioning a fresh host.

    Steps up to fail2ban are FATAL: later steps and the operator's access
    depend on them. Everything after is WARN. Installers run package manager
    first, then runtimes, then agent CLIs, then Docker.

    :param config: Resolved run configuration
    :param host: Host the steps act on
    :return: Steps in execution order
    """
    fatal, warn = Policy.FATAL, Policy.WARN
    steps = [
        Step("privileges", "Checking privileges", fatal, partial(check_privileges, host)),
        Step("apt-update", "Updating package lists", fatal, partial(update_package_lists, host)),
        Step(
            "apt-upgrade",
            "Upgrading installed packages",
            fatal,
            partial(upgrade_packages, host),
            satisfied=partial(packages_current, host),
        ),
        Step(
            "base-packages",
            "Installing base packages",
            fatal,
            partial(install_base_packages, host),
            satisfied=partial(base_packages_installed, host),
        ),
        Step(
            "user",
            f"Creating user {config.user}",
            fatal,
            partial(create_user, host, config),
            satisfied=partial(user_ready, host, config),
        ),
        Step(
            "ssh-keys",
            f"Setting up SSH access for {config.user}",
            fatal,
            partial(propagate_keys, host, config),
            satisfied=partial(keys_propagated, host, config),
        ),
        Step(
            "ssh-hardening",
            "Hardening SSH",
            fatal,
            partial(harden_ssh, host),
            satisfied=partial(ssh_hardened, host),
        ),
        Step(
            "firewall",
            "Configuring firewall",
            fatal,
            partial(configure_firewall, host, config),
            satisfied=partial(firewall_ready, host, config),
        ),
        Step(
            "fail2ban",
            "Configuring fail2ban",
            fatal,
            partial(configure_fail2ban, host, config),
            satisfied=partial(fail2ban_ready, host, config),
        ),
        Step(
            "swap",
            "Setting up swap",
            warn,
            partial(setup_swap, host),
            satisfied=partial(swap_active, host),
            note="the server will run without swap",
        ),
        Step(
            "auto-updates",
            "Enabling automatic security updates",
            warn,
            partial(enable_auto_updates, host),
            satisfied=partial(auto_updates_ready, host),
            note="enable unattended-upgrades manually",
        ),
        Step(
            "homebrew",
            "Installing Homebrew",
            warn,
            partial(install_homebrew, host, config),
            enabled=lambda c: c.install_homebrew,
            satisfied=partial(homebrew_ready, host, config),
            note="continuing without it",
        ),
        Step(
            "brew-gcc",
            "Installing compiler tools",
            warn,
            partial(install_brew_gcc, host, config),
            enabled=lambda c: c.install_homebrew,
            satisfied=partial(brew_gcc_ready, host, config),
        ),
        Step(
            "node",
            "Installing Node.js 22",
            warn,
            partial(install_node, host, config),
            enabled=lambda c: c.needs_node,
            satisfied=partial(node_ready, host, config),
            note="npm-based agents will be skipped",
        ),
        Step(
            "bun",
            "Installing Bun",
            warn,
            partial(install_bun, host, config),
            enabled=lambda c: c.install_bun,
            satisfied=partial(bun_ready, host, config),
            note="install manually later",
        ),
        Step(
            "claude-code",
            "Installing Claude Code",
            warn,
            partial(install_claude_code, host, config),
            enabled=lambda c: c.install_claude_code,
            satisfied=partial(claude_code_ready, host, config),
            note="install manually later",
        ),
    ]
    for name, label, field in [
        ("codex", "Installing Codex", "install_codex"),
        ("gemini-cli", "Installing Gemini CLI", "install_gemini_cli"),
        ("opencode", "Installing OpenCode", "install_opencode"),
    ]:
        package, binary = NPM_AGENTS[name]
        steps.append(
            Step(
                name,
                label,
                warn,
                partial(install_npm_agent, host, config, package),
                enabled=lambda c, field=field: getattr(c, field),
                satisfied=partial(npm_agent_ready, host, config, binary),
                note="install manually later",
            )
        )
    steps += [
        Step(
            "docker",
            "Installing Docker",
            warn,
            partial(install_docker, host, config),
            enabled=lambda c: c.install_docker,
            satisfied=partial(docker_ready, host, config),
        ),
        Step(
            "claude-config",
            "Configuring Claude Code statusline",
            warn,
            partial(write_claude_config, host, config),
            enabled=lambda c: c.install_claude_code,
            satisfied=partial(claude_config_ready, host, config),
        ),
        Step(
            "aliases",
            "Setting up shell aliases",
            warn,
            partial(write_aliases, host, config),
            satisfied=partial(aliases_ready, host, config),
        ),
        Step(
            "tmp-cleanup",
            "Installing /tmp cleanup cron",
            warn,
            partial(install_tmp_cleanup, host, config),
            satisfied=partial(tmp_cleanup_ready, host, config),
        ),
        Step(
            "tailscale",
            "Joining Tailscale",
            warn,
            partial(join_tailscale, host),
            enabled=lambda c: c.install_tailscale,
            satisfied=partial(tailscale_ready, host),
            note="run 'sudo tailscale up' to connect later",
            interactive=True,
        ),
    ]
    return steps
