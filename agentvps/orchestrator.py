"""Top-level control flow for both execution contexts.

The initiator runs on the operator's machine: it provisions the server,
ships this package there and re-invokes it in target mode. The target runs
on the server itself and executes the setup pipeline.
"""

import json
import os
import platform
import re
import shutil
import subprocess
import tempfile
from collections.abc import Callable
from pathlib import Path

import httpx
from rich import print
from rich.console import Console
from rich.prompt import Confirm, Prompt

from .config import Configuration
from .exceptions import ConfigurationError, StepFailure
from .host import DOWNLOAD_TIMEOUT, LocalHost
from .pipeline import build_pipeline
from .providers import ensure_local_key, get_provider
from .server import (
    SUMMARY_PATH,
    bootstrap_runtime,
    connect,
    fetch_tailscale_ip,
    read_summary,
    run_remote_setup,
    ship_package,
    wait_for_ssh,
)
from .steps import RUN_LOG_PATH, RunLog, StepRunner, Summary
from .types import Instance, KeyPair
from .utils import log, missing_tools, warn
from .wizard import run_wizard

LOCAL_TOOLS = ["ssh", "ssh-keygen"]
ALIAS_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
CONSOLE_URL = "https://console.hetzner.cloud/projects"
TAILSCALE_INSTALL_URL = "https://tailscale.com/install.sh"
TAILSCALE_DOWNLOAD_URL = "https://tailscale.com/download"


def check_local_tools() -> None:
    """:raises ConfigurationError: If a required local tool is not installed"""
    missing = missing_tools(LOCAL_TOOLS)
    if missing:
        raise ConfigurationError(
            f"Missing required tools: {', '.join(missing)}. Install OpenSSH and try again."
        )


def yes(question: str) -> bool:
    return Confirm.ask(f"  {question}", default=True)


def run_initiator(config: Configuration, *, interactive: bool = True) -> None:
    """Provision a server and run the setup pipeline on it.

    :param config: Starting configuration (environment values and defaults)
    :param interactive: Ask questions with the wizard and offer local conveniences
    :raises AgentVPSError: On any fatal error, before or during setup
    """
    check_local_tools()

    if interactive:
        config = run_wizard(config)
    elif not config.hetzner_token:
        raise ConfigurationError("HETZNER_TOKEN is required when the wizard is skipped")

    key = ensure_local_key(config.ssh_key_path or None, confirm=yes if interactive else None)
    provider = get_provider(config)
    credential = provider.register_key(key)
    instance = provider.create_instance(config, credential)
    wait_for_ssh(instance.ip, key.private_path)

    with connect(instance.ip, key.private_path) as c:
        ship_package(c)
        bootstrap_runtime(c)
        returncode = run_remote_setup(c, config)
        summary = read_summary(c)

    if returncode != 0:
        summary = summary or {}
        raise StepFailure(
            summary.get("failed") or "remote",
            summary.get("failed_label") or "Server setup",
            summary.get("log_path") or RUN_LOG_PATH,
            summary.get("error") or f"exit code {returncode}",
        )
    if summary and summary.get("warned"):
        warn(f"Finished with non-critical failures: {', '.join(summary['warned'])}")

    tailscale_ip = ""
    if config.install_tailscale:
        tailscale_ip = fetch_tailscale_ip(instance.ip, key.private_path, config.user)

    if interactive:
        if config.install_tailscale:
            setup_local_tailscale()
        offer_ssh_alias(instance, key, config.user, tailscale_ip or instance.ip)

    print_completion(instance, key, config, tailscale_ip)


def run_local(args: list[str], *, quiet: bool = False) -> int:
    """Run a command on this computer attached to the terminal.

    :return: Exit status
    """
    if quiet:
        return subprocess.run(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL).returncode
    return subprocess.run(args).returncode


def download_installer(url: str) -> Path:
    """:raises httpx.HTTPError: If the download fails"""
    response = httpx.get(url, follow_redirects=True, timeout=DOWNLOAD_TIMEOUT)
    response.raise_for_status()
    with tempfile.NamedTemporaryFile("wb", suffix=".sh", delete=False) as fh:
        fh.write(response.content)
    return Path(fh.name)


def wait_for_enter(message: str) -> None:
    Prompt.ask(f"  {message}", default="", show_default=False)


def setup_local_tailscale(
    system: str | None = None,
    run: Callable[..., int] = run_local,
) -> None:
    """Install or connect Tailscale on this computer so the server's
    Tailscale address is reachable from here.

    :param system: ``platform.system()`` value (default: this computer's)
    :param run: Runs a local command, returning its exit status
    """
    system = system or platform.system()
    print()
    print("[bold]  Tailscale on this computer[/bold]")

    if shutil.which("tailscale"):
        log("Tailscale is already installed on this computer")
        if run(["tailscale", "status"], quiet=True) == 0:
            log("Already connected to your Tailscale network")
            return
        print("  Tailscale is installed but not connected. Opening it now...")
        if system == "Darwin":
            run(["open", "-a", "Tailscale"])
        elif run(["sudo", "tailscale", "up"]) != 0:
            warn("'tailscale up' failed, connect manually later")
        return

    if system == "Darwin":
        if shutil.which("brew"):
            log("Installing Tailscale via Homebrew...")
            if run(["brew", "install", "--cask", "tailscale"]) != 0:
                warn(f"Tailscale install failed, install manually: {TAILSCALE_DOWNLOAD_URL}")
                return
            print("\n  [bold]Sign in with the same account you used on the server.[/bold]\n")
            run(["open", "-a", "Tailscale"])
            wait_for_enter("Press Enter once you've signed in")
        else:
            print("\n  Install Tailscale on this computer to connect to your VPS privately:")
            print(f"\n  [bold]Download:[/bold] [cyan]{TAILSCALE_DOWNLOAD_URL}/mac[/cyan]\n")
            print("  Sign in with the same account you used on the server.")
            wait_for_enter("Press Enter to continue")
        return

    log("Installing Tailscale...")
    try:
        script = download_installer(TAILSCALE_INSTALL_URL)
    except httpx.HTTPError as e:
        warn(f"Tailscale download failed ({e}), install manually: {TAILSCALE_DOWNLOAD_URL}")
        return
    try:
        returncode = run(["bash", str(script)])
    finally:
        script.unlink(missing_ok=True)
    if returncode != 0:
        warn(f"Tailscale install failed, install manually: {TAILSCALE_DOWNLOAD_URL}")
        return
    print("\n  [bold]Sign in with the same account you used on the server.[/bold]\n")
    if run(["sudo", "tailscale", "up"]) != 0:
        warn("'tailscale up' failed, connect manually later")
        return
    log("Your VPS and this computer are now on the same private network")


def shell_rc_path(shell: str | None = None) -> Path:
    shell = shell if shell is not None else os.environ.get("SHELL", "")
    name = ".zshrc" if shell.endswith("zsh") else ".bashrc"
    return Path.home() / name


def ssh_alias_line(name: str, key: KeyPair, user: str, address: str) -> str:
    return f"alias {name}='ssh -i {key.private_path} {user}@{address}'"


def add_ssh_alias(rc_path: Path, name: str, line: str) -> bool:
    """Append an alias to ``rc_path`` unless one with this name is defined.

    :return: True if the file changed
    """
    current = rc_path.read_text() if rc_path.exists() else ""
    if f"alias {name}=" in current:
        return False
    with rc_path.open("a") as fh:
        if current and not current.endswith("\n"):
            fh.write("\n")
        fh.write(f"\n# agentvps server\n{line}\n")
    return True


def ask_alias_name(
    default: str = "vps",
    ask: Callable[[str, str], str] | None = None,
    confirm: Callable[[str], bool] = yes,
) -> str:
    if ask is None:
        ask = lambda q, d: Prompt.ask(f"  {q}", default=d).strip()  # noqa: E731
    while True:
        name = ask("Alias name", default)
        if not ALIAS_RE.match(name):
            print("  Invalid alias name. Use letters, numbers, hyphens, or underscores.")
            continue
        existing = shutil.which(name)
        if existing and confirm(f"'{name}' is already a command ({existing}). Pick a different name?"):
            continue
        return name


def offer_ssh_alias(instance: Instance, key: KeyPair, user: str, address: str) -> None:
    if not yes("Create a shell alias to connect with one word (e.g. 'vps')?"):
        return
    name = ask_alias_name()
    rc_path = shell_rc_path()
    if add_ssh_alias(rc_path, name, ssh_alias_line(name, key, user, address)):
        log(f"Added alias '{name}' to {rc_path}. Run 'source {rc_path}' or open a new terminal.")
    else:
        warn(f"An alias named '{name}' already exists in {rc_path}, left unchanged")


def print_completion(instance: Instance, key: KeyPair, config: Configuration, tailscale_ip: str = "") -> None:
    print()
    print("[bold green]  You're all set![/bold green]")
    print()
    print(f"  IP address:   {instance.ip}")
    if tailscale_ip:
        print(f"  Tailscale IP: {tailscale_ip}")
    print(f"  Server name:  {instance.name}")
    print(f"  SSH key:      {key.private_path}")
    print()
    print(f"  Manage the server (start, stop, resize, delete): [cyan]{CONSOLE_URL}[/cyan]")
    print()
    print("  Connect:")
    if tailscale_ip:
        print(f"    [bold]ssh -i {key.private_path} {config.user}@{tailscale_ip}[/bold]  (via Tailscale)")
    print(f"    [bold]ssh -i {key.private_path} {config.user}@{instance.ip}[/bold]")
    print()
    print("  On the server, set your API keys and start an agent:")
    print("    export ANTHROPIC_API_KEY=...")
    print("    cc        # Claude Code, auto-accept permissions")
    print("    cx        # Codex, full auto")
    print("    agent     # Claude Code in a background tmux session")
    print()


def print_server_summary(config: Configuration, summary: Summary) -> None:
    print()
    print("[bold green]  Server setup complete![/bold green]")
    print()
    print(f"  Installed: {', '.join(config.enabled_features()) or 'baseline only'}")
    if summary.warned:
        print(f"  [yellow]Needs attention: {', '.join(summary.warned)}[/yellow]")
    print("  Security:  firewall, fail2ban, SSH hardening, auto-updates")
    print("  Aliases:   cc, cx, agent")
    print(f"  Full install log: {summary.log_path}")
    print()


def write_summary(host: LocalHost, summary: Summary, path: str = SUMMARY_PATH) -> None:
    host.write_text(path, json.dumps(summary.as_dict(), indent=2) + "\n", mode=0o644)


def run_target(
    config: Configuration,
    *,
    log_path: str = RUN_LOG_PATH,
    host_factory: Callable[[RunLog], LocalHost] = LocalHost,
    console: Console | None = None,
) -> Summary:
    """Run the setup pipeline on this machine.

    The summary file is written whether the run completes or aborts, so the
    initiator can report the failing step.

    :raises ConfigurationError: If not running as root
    :raises StepFailure: If a fatal step fails
    """
    if os.geteuid() != 0:
        raise ConfigurationError("On-server setup must run as root")

    with RunLog(log_path) as run_log:
        host = host_factory(run_log)
        runner = StepRunner(run_log, console)
        log(f"Full install log: {log_path}")
        try:
            summary = runner.run(build_pipeline(config, host), config)
        finally:
            if runner.summary is not None:
                write_summary(host, runner.summary)

        host.chown(log_path, config.user)
        host.chown(SUMMARY_PATH, config.user)

    print_server_summary(config, summary)
    return summary
