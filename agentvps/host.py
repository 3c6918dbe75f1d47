"""Local host operations used by pipeline steps on the target server."""

import os
import shlex
import subprocess
from pathlib import Path

import httpx

from .exceptions import CommandError, DownloadError
from .steps import RunLog

DOWNLOAD_TIMEOUT = 120


class LocalHost:
    """Commands and files on the machine the pipeline runs on.

    Every command's output goes to the run log. File paths are absolute
    host paths, resolved under ``root`` (``/`` on a real server).
    """

    def __init__(self, run_log: RunLog, root: str | Path = "/"):
        self.run_log = run_log
        self.root = Path(root)
        self.env = {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}

    def path(self, host_path: str) -> Path:
        return self.root / host_path.lstrip("/")

    # ── commands ──────────────────────────────────────────────────

    def _exec(self, args: list[str], input: str | None = None) -> tuple[int, str]:
        result = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            input=input,
            env=self.env,
        )
        return result.returncode, result.stdout or ""

    def _args(self, cmd: str | list[str], user: str | None) -> list[str]:
        if user is not None:
            text = cmd if isinstance(cmd, str) else shlex.join(cmd)
            return ["su", "-", user, "-c", text]
        if isinstance(cmd, str):
            return ["bash", "-c", cmd]
        return list(cmd)

    def run(self, cmd: str | list[str], *, user: str | None = None, input: str | None = None) -> str:
        """Run a command, logging its output.

        :param cmd: Argument list, or a string run with ``bash -c``
        :param user: Run as this user through ``su -``
        :return: Combined stdout and stderr
        :raises CommandError: If the command exits non-zero
        """
        args = self._args(cmd, user)
        display = cmd if isinstance(cmd, str) else shlex.join(cmd)
        if user is not None:
            display = f"[{user}] {display}"
        self.run_log.write(f"$ {display}")
        returncode, output = self._exec(args, input=input)
        if output:
            self.run_log.write(output)
        if returncode != 0:
            raise CommandError(display, returncode)
        return output

    def succeeds(self, cmd: str | list[str], *, user: str | None = None) -> bool:
        try:
            self.run(cmd, user=user)
        except CommandError:
            return False
        return True

    def run_interactive(self, cmd: list[str]) -> None:
        """Run attached to the terminal so the operator can respond.

        :raises CommandError: If the command exits non-zero
        """
        self.run_log.write(f"$ {shlex.join(cmd)} (interactive)")
        returncode = subprocess.run(cmd, env=self.env).returncode
        if returncode != 0:
            raise CommandError(shlex.join(cmd), returncode)

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def has_command(self, name: str, *, user: str | None = None) -> bool:
        return self.succeeds(f"command -v {shlex.quote(name)}", user=user)

    def total_memory_mb(self) -> int:
        for line in (self.read_text("/proc/meminfo") or "").splitlines():
            if line.startswith("MemTotal:"):
                try:
                    return int(line.split()[1]) // 1024
                except (IndexError, ValueError):
                    break
        raise CommandError("read MemTotal from /proc/meminfo", 1)

    # ── files ─────────────────────────────────────────────────────

    def exists(self, host_path: str) -> bool:
        return self.path(host_path).exists()

    def read_text(self, host_path: str) -> str | None:
        p = self.path(host_path)
        if not p.exists():
            return None
        try:
            return p.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise CommandError(f"read {host_path} (not valid text)", 1)

    def write_text(self, host_path: str, content: str, *, mode: int | None = None) -> bool:
        """Write a file unless it already has exactly this content.

        :return: True if the file changed
        """
        p = self.path(host_path)
        if self.read_text(host_path) == content:
            return False
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content)
        if mode is not None:
            p.chmod(mode)
        self.run_log.write(f"wrote {host_path}")
        return True

    def append_once(self, host_path: str, text: str, *, marker: str | None = None) -> bool:
        """Append ``text`` unless ``marker`` (default: ``text``) is already in the file.

        :return: True if the file changed
        """
        p = self.path(host_path)
        current = self.read_text(host_path) or ""
        if (marker or text) in current:
            return False
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("a") as fh:
            if current and not current.endswith("\n"):
                fh.write("\n")
            fh.write(text if text.endswith("\n") else text + "\n")
        self.run_log.write(f"appended to {host_path}")
        return True

    def make_dir(self, host_path: str, *, mode: int | None = None) -> None:
        p = self.path(host_path)
        p.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            p.chmod(mode)

    def remove(self, host_path: str) -> None:
        self.path(host_path).unlink(missing_ok=True)

    def chown(self, host_path: str, owner: str, *, recursive: bool = False) -> None:
        args = ["chown"] + (["-R"] if recursive else []) + [f"{owner}:{owner}", host_path]
        self.run(args)

    def download(self, url: str, host_path: str) -> None:
        """Fetch an installer to a file.

        :raises DownloadError: On any network or HTTP error
        """
        self.run_log.write(f"downloading {url}")
        try:
            with httpx.stream("GET", url, follow_redirects=True, timeout=DOWNLOAD_TIMEOUT) as response:
                response.raise_for_status()
                p = self.path(host_path)
                p.parent.mkdir(parents=True, exist_ok=True)
                with p.open("wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
        except httpx.HTTPError as e:
            raise DownloadError(url, str(e))
        self.path(host_path).chmod(0o644)
