"""SSH operations against the new server: reachability, shipping, remote runs."""

import hashlib
import json
import logging
import shlex
import tarfile
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from textwrap import dedent

from fabric import Connection

from .config import Configuration
from .exceptions import CommandError, UnreachableError
from .utils import LogStream, log

SSH_ATTEMPTS = 60
SSH_INTERVAL = 5
SSH_CONNECT_TIMEOUT = 5

REMOTE_ROOT = "/opt/agentvps"
REMOTE_SRC = f"{REMOTE_ROOT}/src"
REMOTE_VENV = f"{REMOTE_ROOT}/venv"
REMOTE_HASH_FILE = f"{REMOTE_ROOT}/.source_hash"
SUMMARY_PATH = "/var/log/agentvps-summary.json"

# Installed into the server-side venv so the package can run there.
TARGET_REQUIREMENTS = ["cyclopts", "rich", "fabric", "httpx", "python-dotenv"]

PACKAGE_DIR = Path(__file__).resolve().parent


def connect(ip: str, key_path: str | Path, user: str = "root", timeout: int | None = None) -> Connection:
    connect_kwargs = {"key_filename": str(key_path), "look_for_keys": False}
    if timeout is not None:
        connect_kwargs.update(timeout=timeout, banner_timeout=timeout, auth_timeout=timeout)
    return Connection(ip, user=user, connect_kwargs=connect_kwargs)


def check_instance_reachable(
    ip: str, key_path: str | Path, user: str = "root", timeout: int = SSH_CONNECT_TIMEOUT
) -> bool:
    """Check if an authenticated SSH session to the server succeeds.

    :param ip: Server IP address
    :param key_path: Private key for authentication
    :param user: SSH user for connection
    :param timeout: Connection timeout in seconds
    :return: True if reachable, False otherwise
    """
    try:
        with connect(ip, key_path, user, timeout=timeout) as c:
            c.run("echo ok", hide=True, in_stream=False)
        return True
    except Exception:
        return False


def wait_for_ssh(
    ip: str,
    key_path: str | Path,
    *,
    user: str = "root",
    attempts: int = SSH_ATTEMPTS,
    interval: float = SSH_INTERVAL,
    connect_timeout: int = SSH_CONNECT_TIMEOUT,
    probe: Callable[[str, str | Path, str], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll until an authenticated SSH session succeeds.

    Makes exactly ``attempts`` tries, each bounded by its own connect
    timeout, sleeping ``interval`` seconds between them.

    :return: The attempt number that succeeded
    :raises UnreachableError: If no attempt succeeded
    """
    if probe is None:
        probe = lambda ip, key_path, user: check_instance_reachable(  # noqa: E731
            ip, key_path, user, timeout=connect_timeout
        )
    log(f"Waiting for {ip} to accept SSH connections...")
    for attempt in range(1, attempts + 1):
        if probe(ip, key_path, user):
            log("Server is ready!")
            return attempt
        log(f"Waiting... {attempt}/{attempts} ({int(attempt * interval)}s)")
        if attempt < attempts:
            sleep(interval)
    raise UnreachableError(
        f"Server {ip} did not accept SSH after {attempts} attempts. "
        "Check the Hetzner console."
    )


def ssh(c: Connection, cmd: str, show_output: bool = False) -> str:
    """Run a command non-interactively, routing its output to the log.

    Output is logged at INFO when ``show_output`` is set, otherwise at DEBUG.

    :raises CommandError: If the command exits non-zero
    """
    stream = LogStream(logging.INFO if show_output else logging.DEBUG)
    result = c.run(cmd, hide=True, warn=True, in_stream=False, out_stream=stream, err_stream=stream)
    stream.flush()
    if result.failed:
        raise CommandError(cmd, result.return_code)
    return result.stdout


def ssh_script(c: Connection, script: str, show_output: bool = False) -> str:
    escaped = script.replace("'", "'\\''")
    return ssh(c, f"bash -c '{escaped}'", show_output)


def compute_hash(source: Path, exclude: list[str] | None = None) -> str:
    if exclude is None:
        exclude = ["__pycache__"]

    hasher = hashlib.md5()
    for f in sorted(source.rglob("*")):
        if f.is_file() and not any(ex in f.parts for ex in exclude):
            hasher.update(str(f.relative_to(source)).encode())
            hasher.update(f.read_bytes())
    return hasher.hexdigest()


def _build_archive(tar_path: str) -> None:
    with tarfile.open(tar_path, "w:gz") as tar:
        tar.add(
            PACKAGE_DIR,
            arcname=PACKAGE_DIR.name,
            filter=lambda info: None if "__pycache__" in info.name else info,
        )


def ship_package(c: Connection) -> bool:
    """Copy this package to the server unless the same source is already there.

    :return: True if files were uploaded, False if the remote copy was current
    """
    local_hash = compute_hash(PACKAGE_DIR)
    remote_hash = c.run(
        f"cat {REMOTE_HASH_FILE} 2>/dev/null || true", hide=True, warn=True, in_stream=False
    ).stdout.strip()
    if remote_hash == local_hash:
        log("Setup code already on server")
        return False

    log("Uploading setup code to server...")
    with tempfile.NamedTemporaryFile(suffix=".tar.gz", delete=False) as tmp:
        tar_path = tmp.name
    try:
        _build_archive(tar_path)
        remote_tar = f"/tmp/agentvps_{int(time.time())}.tar.gz"
        c.put(tar_path, remote_tar)
    finally:
        Path(tar_path).unlink(missing_ok=True)

    ssh_script(
        c,
        dedent(f"""
            set -e
            rm -rf {REMOTE_SRC}
            mkdir -p {REMOTE_SRC}
            tar -xzf {remote_tar} -C {REMOTE_SRC}
            rm -f {remote_tar}
            echo "{local_hash}" > {REMOTE_HASH_FILE}
        """).strip(),
    )
    return True


def bootstrap_runtime(c: Connection) -> None:
    """Make a Python environment on the server able to run the package."""
    log("Preparing Python runtime on server (this takes a minute)...")
    requirements = " ".join(shlex.quote(r) for r in TARGET_REQUIREMENTS)
    script = dedent(f"""
        set -e
        cloud-init status --wait > /dev/null 2>&1 || true
        if [ ! -x {REMOTE_VENV}/bin/python ]; then
            export DEBIAN_FRONTEND=noninteractive
            apt-get update -qq
            apt-get install -y -qq python3-venv
            python3 -m venv {REMOTE_VENV}
        fi
        {REMOTE_VENV}/bin/pip install -q --disable-pip-version-check {requirements}
    """).strip()
    ssh_script(c, script, show_output=True)


def target_command(config: Configuration, *, sudo: bool = False) -> str:
    prefix = "sudo " if sudo else ""
    return (
        f"{prefix}PYTHONPATH={REMOTE_SRC} {REMOTE_VENV}/bin/python -m agentvps "
        f"--on-server --no-wizard --config-json {shlex.quote(config.to_json())}"
    )


def run_remote_setup(c: Connection, config: Configuration) -> int:
    """Run the pipeline on the server in target mode.

    The session gets a pseudo-terminal with local stdin attached, so steps
    that need the operator (e.g. a login URL) still work. Sessions as a
    non-root user run it through sudo.

    :return: Exit status of the remote run
    """
    log(f"Running server setup on {c.host}...")
    result = c.run(target_command(config, sudo=c.user != "root"), pty=True, warn=True)
    return result.return_code


def read_summary(c: Connection) -> dict | None:
    """Read the summary written by the target run.

    Uses the session the run was started on; sshd restarts during hardening
    keep established sessions, so this works even once root login is off.
    """
    result = c.run(f"cat {SUMMARY_PATH}", hide=True, warn=True, in_stream=False)
    if result.failed:
        return None
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        return None


def fetch_tailscale_ip(ip: str, key_path: str | Path, user: str) -> str:
    """Tailscale IPv4 of the server, or "" if it is not connected.

    Connects as ``user`` since root login is disabled by now.
    """
    try:
        with connect(ip, key_path, user, timeout=10) as c:
            result = c.run("sudo tailscale ip -4", hide=True, warn=True, in_stream=False)
    except Exception as e:
        log(f"Could not reach {user}@{ip}: {e}")
        return ""
    addresses = result.stdout.split()
    return addresses[0] if result.ok and addresses else ""
