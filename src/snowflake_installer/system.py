"""Thin wrappers around external commands and system files."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from snowflake_installer.errors import CommandError, MissingToolError

logger = logging.getLogger(__name__)


def run_cmd(cmd: list[str], timeout: float | None = None, check: bool = True) -> str:
    """Run a command and return stdout.

    Raises:
        CommandError: If the command is missing, times out, or (with
            ``check``) exits non-zero.
    """
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise CommandError(cmd, f"Command timed out after {timeout}s ({' '.join(cmd)})") from exc
    except OSError as exc:
        raise CommandError(cmd, f"Cannot run {cmd[0]}: {exc}") from exc
    if check and proc.returncode != 0:
        stderr = proc.stderr.strip()
        raise CommandError(cmd, f"Command failed ({' '.join(cmd)}): {stderr}", proc.returncode)
    return proc.stdout


def try_cmd(cmd: list[str], timeout: float | None = None) -> str | None:
    """Run a command for inquiry; return ``None`` instead of raising."""
    try:
        return run_cmd(cmd, timeout=timeout)
    except CommandError as exc:
        logger.debug("%s", exc)
        return None


def read_text(path: Path) -> str | None:
    """Read a system file, returning ``None`` when it is missing or unreadable."""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


class CommandRunner:
    """Executes provisioning commands; swapped for a recorder in tests.

    ``sudo`` is prepended to privileged commands unless already running as root.
    """

    def __init__(self, use_sudo: bool = True):
        self.use_sudo = use_sudo

    def which(self, name: str) -> str | None:
        """Return the absolute path of ``name`` on ``PATH``, or ``None``."""
        return shutil.which(name)

    def require(self, name: str, hint: str = "") -> str:
        """Return the path of a mandatory tool or raise ``MissingToolError``."""
        path = self.which(name)
        if not path:
            raise MissingToolError(f"{name} command not found. {hint}".strip())
        return path

    def run(
        self,
        cmd: list[str],
        *,
        sudo: bool = False,
        timeout: float | None = None,
        check: bool = True,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``cmd`` streaming output to the terminal.

        Raises:
            CommandError: On timeout, missing binary, or (with ``check``) a
                non-zero exit.
        """
        full = ["sudo", "-H", *cmd] if sudo and self.use_sudo else list(cmd)
        logger.info("Running: %s", " ".join(full))
        try:
            proc = subprocess.run(full, text=True, check=False, timeout=timeout, cwd=cwd)
        except subprocess.TimeoutExpired as exc:
            raise CommandError(full, f"Command timed out after {timeout}s ({' '.join(full)})") from exc
        except OSError as exc:
            raise CommandError(full, f"Cannot run {full[0]}: {exc}") from exc
        if check and proc.returncode != 0:
            raise CommandError(
                full, f"Command failed with exit code {proc.returncode} ({' '.join(full)})", proc.returncode
            )
        return proc

    def succeeds(self, cmd: list[str], *, sudo: bool = False, timeout: float | None = None, cwd: Path | None = None) -> bool:
        """Run quietly and report whether the command exited zero."""
        full = ["sudo", "-H", *cmd] if sudo and self.use_sudo else list(cmd)
        logger.debug("Checking: %s", " ".join(full))
        try:
            proc = subprocess.run(full, capture_output=True, text=True, check=False, timeout=timeout, cwd=cwd)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0

    def output(self, cmd: list[str], *, sudo: bool = False, timeout: float | None = None, cwd: Path | None = None) -> str | None:
        """Run quietly and return stdout, or ``None`` on any failure."""
        full = ["sudo", "-H", *cmd] if sudo and self.use_sudo else list(cmd)
        try:
            proc = subprocess.run(full, capture_output=True, text=True, check=False, timeout=timeout, cwd=cwd)
        except (OSError, subprocess.TimeoutExpired):
            return None
        return proc.stdout if proc.returncode == 0 else None
