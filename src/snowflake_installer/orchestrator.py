"""Sequence probing, generation, flake patching, and the NixOS provisioning tools."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from snowflake_installer import prober, users
from snowflake_installer.artifacts import (
    ensure_placeholder_modules,
    host_dir,
    install_boot_overlay,
    plan_artifacts,
    write_artifacts,
)
from snowflake_installer.config import DEFAULT_USER, InstallerSettings
from snowflake_installer.errors import (
    AbortedByUser,
    CommandError,
    FlakeEvaluationError,
    FlakeHostsError,
    InstallerError,
    InsufficientResourcesError,
)
from snowflake_installer.models import (
    EnvironmentKind,
    HardwareFacts,
    HostProfile,
    MountInfo,
    PatchOutcome,
    WriteResult,
)
from snowflake_installer.patcher import HostsFile
from snowflake_installer.prompting import Confirm, make_confirm
from snowflake_installer.system import CommandRunner
from snowflake_installer.validation import validate_hostname

logger = logging.getLogger(__name__)

NIX_FLAKES = ["--extra-experimental-features", "nix-command flakes"]
DISKO_FLAKE = "github:nix-community/disko"
DISKO_TIMEOUT = 300
MIN_MEMORY_KB = 256_000
LOW_MEMORY_KB = 512_000
MIN_TARGET_SPACE_MB = 2048
LOW_ROOT_SPACE_MB = 1024
STALE_TMP_SECONDS = 300
SYSTEM_FLAKE_DIR = Path("/etc/nixos")
TARGET_ROOT = Path("/mnt")
RESTORE_HINT = "Restore hosts/default.nix (git checkout -- hosts/default.nix) and rerun."


@contextmanager
def cleanup_on_exit(tmp_dir: Path | None = None) -> Iterator[None]:
    """Remove stale temp files on every exit path; report memory on failure."""
    try:
        yield
    except BaseException:
        logger.error("Installation failed")
        available = prober.available_memory_kb()
        if available:
            logger.debug("Available memory: %dMB", available // 1024)
        raise
    finally:
        remove_stale_tmp_files(tmp_dir or Path(tempfile.gettempdir()))


def remove_stale_tmp_files(tmp_dir: Path, max_age: float = STALE_TMP_SECONDS) -> int:
    """Delete ``*.tmp`` files owned by this user and older than ``max_age`` seconds."""
    removed = 0
    cutoff = time.time() - max_age
    uid = os.getuid()
    try:
        candidates = list(tmp_dir.glob("*.tmp"))
    except OSError:
        return 0
    for candidate in candidates:
        try:
            info = candidate.stat()
            if candidate.is_file() and info.st_uid == uid and info.st_mtime < cutoff:
                candidate.unlink()
                removed += 1
        except OSError:
            continue
    return removed


class Installer:
    """One configurable install/rebuild flow.

    Args:
        settings: Feature switches for the run.
        runner: Executes external commands.
        confirm: Yes/no prompt; defaults to an interactive prompt honouring
            ``settings.skip_confirmation``.
        step: Progress callback receiving a human-readable step label.
    """

    def __init__(
        self,
        settings: InstallerSettings,
        runner: CommandRunner | None = None,
        confirm: Confirm | None = None,
        step: Callable[[str], None] | None = None,
    ):
        self.settings = settings
        self.runner = runner or CommandRunner()
        self.confirm = confirm or make_confirm(settings.skip_confirmation)
        self.step = step or (lambda message: logger.info("%s", message))
        self.hosts = HostsFile(settings.hosts_file)

    # -- checks ---------------------------------------------------------

    def check_not_root(self) -> None:
        if os.geteuid() == 0:
            raise InstallerError("This installer should not be run as root. Run as the nixos user.")

    def check_memory(self) -> None:
        total = prober.total_memory_kb()
        available = prober.available_memory_kb()
        if not available:
            logger.warning("Cannot read available memory from /proc/meminfo")
            return
        logger.info("System memory: Total %dMB, Available %dMB", total // 1024, available // 1024)
        if available < MIN_MEMORY_KB:
            raise InsufficientResourcesError("Insufficient memory for installation. Need at least 256MB available.")
        if available < LOW_MEMORY_KB:
            logger.warning("Low memory detected. Installation may be slow or fail.")

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites...")
        self.check_memory()

        if not Path("/etc/NIXOS").exists() and not self.settings.skip_nixos_check:
            logger.warning("Not running in NixOS installer environment (set SKIP_NIXOS_CHECK=1 to override)")

        flake_dir = self.settings.flake_dir
        if not flake_dir.is_dir():
            raise InstallerError(f"Flake directory not found: {flake_dir}")
        if not (flake_dir / "flake.nix").is_file():
            raise InstallerError(f"flake.nix not found in: {flake_dir}")
        logger.info("Using flake directory: %s", flake_dir)

        if not self.settings.skip_internet_check and not self.runner.succeeds(
            ["ping", "-c", "1", "nixos.org"], timeout=5
        ):
            logger.warning("No internet connection detected (set SKIP_INTERNET_CHECK=1 to override)")

        self.runner.require("nix", "Make sure you're running this in a NixOS environment.")
        logger.info("Prerequisites check passed")

    def ensure_home_ownership(self) -> None:
        home = Path.home()
        try:
            owner_uid = home.stat().st_uid
        except OSError:
            return
        if owner_uid == os.getuid():
            return
        user = os.environ.get("USER") or home.name
        logger.warning("Home directory %s is not owned by %s, changing ownership...", home, user)
        self.runner.run(["chown", "-R", f"{user}:{user}", str(home)], sudo=True)

    def sanity_check_hosts_file(self) -> None:
        """Refuse to continue while ``hosts/default.nix`` has ``KEY=VALUE`` host keys."""
        if not self.hosts.path.is_file():
            return
        if not self.hosts.invalid_keys():
            return
        if self.hosts.corrupt_entries():
            self.offer_repair()
        remaining = self.hosts.invalid_keys()
        if remaining:
            for entry in remaining:
                logger.error("  -> %d: %s", entry.line_no, entry.line)
            raise FlakeHostsError(
                f"Invalid attribute key detected in {self.hosts.path} (contains '=' before mkNixosSystem).\n"
                "This likely happened because a KEY=VALUE token was passed as a positional argument.\n"
                "Fix: restore the file (e.g., git checkout -- hosts/default.nix) or remove the broken stanza, "
                "then rerun using VAR=VALUE snowflake-install install [hostname] [disk]."
            )

    # -- recovery ---------------------------------------------------------

    def offer_repair(self) -> bool:
        if not self.hosts.path.is_file():
            return False
        entries = self.hosts.corrupt_entries()
        if not entries:
            return False
        logger.warning("Detected corrupted host entries in %s:", self.hosts.path)
        for entry in entries:
            logger.warning("  -> %d: %s", entry.line_no, entry.line)
        if not self.confirm("Attempt to auto-repair by removing these entries?"):
            return False
        self.hosts.repair([entry.line_no for entry in entries])
        return True

    def offer_reset(self) -> bool:
        if not self.hosts.path.is_file():
            return False
        logger.warning("Performing canonical reset of nixosConfigurations in %s", self.hosts.path)
        if not self.confirm("This will rewrite the nixosConfigurations block. Proceed?"):
            return False
        self.hosts.canonical_reset(self.settings.hosts_dir)
        return True

    def flake_evaluates(self, hostname: str) -> bool:
        return self.runner.succeeds(
            ["nix", *NIX_FLAKES, "flake", "show", f".#{hostname}"], cwd=self.settings.flake_dir
        )

    def ensure_flake_evaluates(self, hostname: str) -> None:
        """Evaluate the host, escalating through repair and canonical reset.

        Raises:
            FlakeEvaluationError: When every recovery step fails or is declined.
        """
        logger.info("Validating flake host '.#%s'...", hostname)
        if self.flake_evaluates(hostname):
            return

        logger.warning("Flake evaluation failed for host '%s'. Attempting auto-repair...", hostname)
        if self.offer_repair():
            logger.info("Retrying flake evaluation after repair...")
            if self.flake_evaluates(hostname):
                return
            logger.warning("Auto-repair failed. Attempting canonical reset of nixosConfigurations...")
        else:
            logger.warning("Auto-repair declined or not applicable. Offering canonical reset...")

        if not self.offer_reset():
            raise FlakeEvaluationError(
                f"Flake evaluation failed for host '{hostname}' and canonical reset was declined.\n{RESTORE_HINT}"
            )
        logger.info("Retrying flake evaluation after canonical reset...")
        if not self.flake_evaluates(hostname):
            raise FlakeEvaluationError(
                "Flake evaluation still failing after canonical reset.\n"
                "Run: nix --extra-experimental-features 'nix-command flakes' flake show . | cat\n"
                f"and ensure 'hosts/default.nix' is valid. {RESTORE_HINT}"
            )

    # -- generation -------------------------------------------------------

    def resolve_reinstall_mode(self) -> bool:
        if self.settings.reinstall_mode is not None:
            return self.settings.reinstall_mode
        if prober.detect_environment() is EnvironmentKind.INSTALLED:
            logger.info("Detected already installed NixOS system; enabling reinstall mode (REINSTALL_MODE=0 overrides)")
            return True
        logger.info("Detected NixOS live installer environment")
        return False

    def generate(
        self,
        profile: HostProfile,
        facts: HardwareFacts,
        *,
        disk: str,
        mounts: MountInfo | None = None,
        generated_at: datetime | None = None,
    ) -> list[WriteResult]:
        """Write the host's artifacts and placeholder modules, then register the host."""
        artifacts = plan_artifacts(
            self.settings.flake_dir,
            profile,
            facts,
            disk=disk,
            mounts=mounts,
            generated_at=generated_at,
        )
        results = write_artifacts(
            artifacts,
            force_disk_config=self.settings.force_disk_config,
            regenerate_hw_config=self.settings.regenerate_hw_config,
            regenerate_host=self.settings.regenerate_host,
        )
        ensure_placeholder_modules(host_dir(self.settings.flake_dir, profile.hostname))
        self.register_host(profile.hostname)
        return results

    def register_host(self, hostname: str) -> PatchOutcome | None:
        if not host_dir(self.settings.flake_dir, hostname).is_dir():
            logger.warning("Host directory hosts/%s does not exist; skipping flake update", hostname)
            return None
        if not self.hosts.path.is_file():
            logger.warning("%s not found; skipping flake update", self.hosts.path)
            return None
        return self.hosts.ensure_host_entry(hostname)

    # -- apply ------------------------------------------------------------

    def copy_flake(self, destination: Path) -> None:
        self.runner.run(["mkdir", "-p", str(destination)], sudo=True)
        self.runner.run(["cp", "-rT", str(self.settings.flake_dir), str(destination)], sudo=True)
        self.runner.run(["chown", "-R", "root:root", str(destination)], sudo=True)

    def setup_flake_integration(self, hostname: str) -> None:
        logger.info("Setting up flake integration for existing system...")
        existing = SYSTEM_FLAKE_DIR / "configuration.nix"
        if existing.exists():
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            logger.info("Backing up existing configuration.nix...")
            self.runner.run(["mv", str(existing), f"{existing}.backup.{stamp}"], sudo=True)

        self.copy_flake(SYSTEM_FLAKE_DIR)
        try:
            self.runner.run(["nix", *NIX_FLAKES, "flake", "lock"], sudo=True, cwd=SYSTEM_FLAKE_DIR)
        except CommandError as exc:
            raise InstallerError(f"Failed to initialize flake in {SYSTEM_FLAKE_DIR}") from exc

        shown = self.runner.output(["nix", *NIX_FLAKES, "flake", "show", "."], sudo=True, cwd=SYSTEM_FLAKE_DIR)
        if shown is None:
            logger.warning("Failed to evaluate flake in %s", SYSTEM_FLAKE_DIR)
        elif hostname in shown:
            logger.info("Flake contains %s configuration", hostname)
        else:
            logger.warning("%s configuration not found in flake", hostname)

    def rebuild(self, hostname: str) -> None:
        logger.info("Rebuilding NixOS configuration for %s...", hostname)
        free_mb = shutil.disk_usage("/").free // (1024 * 1024)
        if free_mb < LOW_ROOT_SPACE_MB:
            logger.warning("Low disk space detected: %dMB. Rebuild may fail.", free_mb)

        options = ["--option", "experimental-features", "nix-command flakes"]
        try:
            self.runner.run(
                ["nixos-rebuild", "switch", "--flake", f".#{hostname}", *options], sudo=True, cwd=SYSTEM_FLAKE_DIR
            )
        except CommandError:
            logger.warning("Flake rebuild failed, trying with explicit path...")
            try:
                self.runner.run(["nixos-rebuild", "switch", "--flake", f"{SYSTEM_FLAKE_DIR}#{hostname}", *options], sudo=True)
            except CommandError as exc:
                raise InstallerError(
                    "NixOS configuration rebuild failed with both methods. Check the above output for specific errors."
                ) from exc
        logger.info("NixOS configuration rebuild completed")

    def unmount_partitions(self, target_disk: str) -> None:
        """Unmount the disk node and every partition node sharing its name prefix."""
        disk = Path(target_disk)
        for node in sorted(disk.parent.glob(f"{disk.name}*")):
            self.runner.run(["umount", str(node)], sudo=True, check=False)

    def setup_disks(self, hostname: str, target_disk: str) -> None:
        logger.info("Setting up disks using disko...")
        available = prober.available_memory_kb()
        logger.info("Available memory before disk setup: %dMB", available // 1024)

        self.unmount_partitions(target_disk)
        self.runner.run(["wipefs", "-af", target_disk], sudo=True, check=False)
        self.runner.run(["partprobe", target_disk], sudo=True, check=False)

        self.ensure_flake_evaluates(hostname)

        logger.info("Partitioning and formatting %s...", target_disk)
        try:
            self.runner.run(
                ["nix", *NIX_FLAKES, "run", DISKO_FLAKE, "--", "--mode", "disko", "--flake", f".#{hostname}"],
                sudo=True,
                timeout=DISKO_TIMEOUT,
                cwd=self.settings.flake_dir,
            )
        except CommandError as exc:
            if exc.returncode is None:
                raise InstallerError(
                    "Disk setup timed out after 5 minutes. The disk might be too slow or the network connection is poor."
                ) from exc
            raise InstallerError(
                f"Disk setup failed with exit code {exc.returncode}. "
                f"Check that {target_disk} is not in use and that you have sufficient permissions."
            ) from exc

        if not self.runner.succeeds(["mountpoint", "-q", str(TARGET_ROOT)]):
            raise InstallerError(f"Target disk not mounted at {TARGET_ROOT} after disko setup. Check disko configuration.")
        if not self.runner.succeeds(["mountpoint", "-q", str(TARGET_ROOT / "boot")]):
            logger.warning("Boot partition not mounted at %s (this may be normal for some configurations)", TARGET_ROOT / "boot")
        logger.info("Disk setup completed")

    def install(self, hostname: str) -> None:
        logger.info("Installing NixOS configuration for %s...", hostname)
        if not self.runner.succeeds(["mountpoint", "-q", str(TARGET_ROOT)]):
            raise InstallerError(f"Target filesystem not mounted at {TARGET_ROOT}. Run disk setup first.")

        free_mb = shutil.disk_usage(TARGET_ROOT).free // (1024 * 1024)
        logger.info("Available space on target disk: %dMB", free_mb)
        if free_mb < MIN_TARGET_SPACE_MB:
            raise InsufficientResourcesError(
                f"Insufficient space on target disk. Need at least 2GB, found {free_mb}MB"
            )

        logger.info("Copying flake configuration to target system...")
        self.copy_flake(TARGET_ROOT / "etc" / "nixos")
        try:
            self.runner.run(
                ["nixos-install", "--root", str(TARGET_ROOT), "--flake", f".#{hostname}", "--no-root-passwd"],
                sudo=True,
                cwd=self.settings.flake_dir,
            )
        except CommandError as exc:
            raise InstallerError("NixOS installation failed. Check the above output for specific errors.") from exc
        logger.info("NixOS installation completed")

    def resolve_user(self, reinstall: bool) -> str:
        """Pick the account the flake is built for.

        An explicit setting wins. A rebuild targets the login user; a fresh
        install from the live ISO keeps the flake's own user.
        """
        if self.settings.user:
            return self.settings.user
        if reinstall:
            return users.detect_user()
        return DEFAULT_USER

    def adapt_flake_user(self, user: str) -> None:
        """Rewrite the home-manager and system user definitions for ``user``."""
        users.adapt_home_config(self.settings.flake_dir, user)
        users.adapt_system_user(self.settings.flake_dir, user)

    def setup_user(self, user: str) -> None:
        logger.info("Please set a password for the '%s' user:", user)
        self.runner.run(["nixos-enter", "--root", str(TARGET_ROOT), "-c", f"passwd {user}"], sudo=True)

    # -- flow -------------------------------------------------------------

    def run(self, hostname: str, target_disk: str | None = None) -> None:
        """Install onto a disk or rebuild the running system for ``hostname``."""
        self.step("Checking if running as root")
        self.check_not_root()
        self.ensure_home_ownership()

        self.step("Checking prerequisites")
        self.check_prerequisites()

        self.step("Checking flake host definitions integrity")
        self.sanity_check_hosts_file()

        self.step("Validating hostname")
        validate_hostname(hostname)
        reinstall = self.resolve_reinstall_mode()
        if reinstall:
            logger.info("Running in configuration rebuild mode (no disk partitioning)")
        else:
            logger.info("Running in fresh install mode (will partition target disk)")
        user = self.resolve_user(reinstall)
        logger.info("Target user: %s", user)

        self.step("Detecting hardware")
        facts = prober.probe(skip_drm=self.settings.skip_drm_detection, detect_disks=not reinstall)
        if reinstall:
            disk = target_disk or "/dev/sda"
            mounts = prober.probe_mounts()
        else:
            disk = prober.select_target_disk(facts.disks, target_disk)
            mounts = None

        logger.info("Hardware summary:")
        logger.info("  CPU: %s", facts.cpu_vendor)
        logger.info("  GPU: %s", " ".join(facts.gpu_vendors) or "none")
        if reinstall:
            logger.warning("This will rebuild the NixOS configuration and switch to it!")
        else:
            logger.info("  Target disk: %s", disk)
            logger.warning("This will COMPLETELY ERASE %s and install NixOS!", disk)
        if not self.confirm("Continue?"):
            raise AbortedByUser("Installation cancelled")

        if self.settings.adapt_user and user != DEFAULT_USER:
            self.step(f"Adapting flake for user {user}")
            self.adapt_flake_user(user)

        self.step("Generating configuration")
        profile = HostProfile(hostname=hostname, reinstall_mode=reinstall)
        self.generate(profile, facts, disk=disk, mounts=mounts)

        if reinstall:
            install_boot_overlay(host_dir(self.settings.flake_dir, hostname))
            self.step("Setting up flake integration for existing system")
            self.setup_flake_integration(hostname)
            self.step("Rebuilding NixOS configuration")
            self.rebuild(hostname)
            logger.info("Reboot to ensure all changes take effect.")
            return

        self.step("Setting up disks")
        self.setup_disks(hostname, disk)
        self.step("Installing NixOS")
        self.install(hostname)
        self.step("Setting up user")
        self.setup_user(user)
        logger.info("Installation completed successfully! Remove the installation media and reboot.")


def verify_installation(runner: CommandRunner, hostname: str | None = None) -> bool:
    """Post-install checks; every finding is a warning, never fatal."""
    ok = True
    if (SYSTEM_FLAKE_DIR / "flake.nix").is_file():
        logger.info("Found %s", SYSTEM_FLAKE_DIR / "flake.nix")
    else:
        ok = False
        logger.warning("%s not found (system may use legacy configuration)", SYSTEM_FLAKE_DIR / "flake.nix")

    kernel = os.uname().release
    logger.info("Kernel: %s", kernel)
    if "xanmod" in kernel.lower():
        logger.info("Xanmod kernel active")
    else:
        ok = False
        logger.warning("Xanmod kernel not active yet (may require reboot)")

    current = os.uname().nodename
    if hostname and current != hostname:
        ok = False
        logger.warning("Hostname mismatch. Current: '%s' Expected: '%s'", current, hostname)
    else:
        logger.info("Hostname is '%s'", current)

    if hostname and runner.which("nix"):
        shown = runner.output(["nix", *NIX_FLAKES, "flake", "show"], cwd=SYSTEM_FLAKE_DIR)
        if shown and hostname in shown:
            logger.info("Flake contains host '%s'", hostname)
        else:
            ok = False
            logger.warning("Flake does not list host '%s' (or evaluation failed)", hostname)
    return ok
