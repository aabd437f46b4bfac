"""Typer-based CLI for probing hardware, generating host configs, and installing NixOS."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import typer

from snowflake_installer import prober
from snowflake_installer.artifacts import host_dir
from snowflake_installer.config import DEFAULT_HOSTNAME, InstallerSettings
from snowflake_installer.errors import FlakeHostsError, InstallerError
from snowflake_installer.logs import configure_logging
from snowflake_installer.models import HostProfile
from snowflake_installer.orchestrator import Installer, cleanup_on_exit, verify_installation
from snowflake_installer.patcher import HostsFile
from snowflake_installer.prompting import make_confirm
from snowflake_installer.system import CommandRunner
from snowflake_installer.validation import check_hostname, validate_hostname

app = typer.Typer(add_completion=False, help="snowflake-install: hardware-aware NixOS installer for the Snowflake flake")
logger = logging.getLogger("snowflake_installer.cli")

REQUIRED_TOOLS = ("nix", "nixos-install", "nixos-rebuild", "lsblk", "lspci", "lscpu", "findmnt")


def _echo_step(step: int, total: int | None, message: str) -> None:
    """Print a normalized progress step line."""
    counter = f"{step}/{total}" if total else str(step)
    typer.echo(f"[{counter}] {message}")


def _step_counter(total: int | None = None) -> Callable[[str], None]:
    state = {"step": 0}

    def _step(message: str) -> None:
        state["step"] += 1
        _echo_step(state["step"], total, message)

    return _step


@contextmanager
def _fatal_errors() -> Iterator[None]:
    """Report any installer error as one line and exit with status 1."""
    try:
        yield
    except InstallerError as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1) from exc


FlakeDirOption = typer.Option(Path("."), "--flake-dir", envvar="FLAKE_DIR", help="Flake checkout to configure")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", envvar="DEBUG", help="Verbose logging"),
) -> None:
    configure_logging(debug)


@app.command("install")
def install(
    hostname: str = typer.Argument(DEFAULT_HOSTNAME, help="Hostname for the new system"),
    target_disk: str | None = typer.Argument(None, help="Target disk (auto-detected if omitted)"),
    flake_dir: Path = FlakeDirOption,
    skip_nixos_check: bool = typer.Option(False, envvar="SKIP_NIXOS_CHECK", help="Skip NixOS environment check"),
    skip_internet_check: bool = typer.Option(False, envvar="SKIP_INTERNET_CHECK", help="Skip connectivity check"),
    skip_confirmation: bool = typer.Option(False, "--yes", "-y", envvar="SKIP_CONFIRMATION", help="Answer yes to prompts"),
    skip_drm_detection: bool = typer.Option(False, envvar="SKIP_DRM_DETECTION", help="Skip DRM GPU detection"),
    reinstall_mode: bool | None = typer.Option(
        None, "--reinstall/--fresh", envvar="REINSTALL_MODE", help="Force rebuild or fresh install mode"
    ),
    force_disk_config: bool = typer.Option(False, envvar="FORCE_DISK_CONFIG", help="Overwrite disk-configuration.nix"),
    regenerate_hw_config: bool = typer.Option(
        False, envvar="REGENERATE_HW_CONFIG", help="Overwrite hardware-configuration.nix"
    ),
    regenerate_host: bool = typer.Option(False, envvar="REGENERATE_HOST", help="Overwrite hosts/<name>/default.nix"),
    user: str | None = typer.Option(
        None, "--user", envvar="SNOWFLAKE_USER", help="Account to configure (default: login user on rebuild, jager on fresh install)"
    ),
    adapt_user: bool = typer.Option(
        True, "--adapt-user/--no-adapt-user", envvar="ADAPT_USER", help="Rewrite home-manager and system user files for --user"
    ),
    debug: bool = typer.Option(False, "--debug", envvar="DEBUG", help="Verbose logging"),
) -> None:
    """Install NixOS onto a disk, or rebuild an installed system, for HOSTNAME."""
    settings = InstallerSettings(
        flake_dir=flake_dir,
        skip_nixos_check=skip_nixos_check,
        skip_internet_check=skip_internet_check,
        skip_confirmation=skip_confirmation,
        skip_drm_detection=skip_drm_detection,
        reinstall_mode=reinstall_mode,
        debug=debug,
        force_disk_config=force_disk_config,
        regenerate_hw_config=regenerate_hw_config,
        regenerate_host=regenerate_host,
        user=user,
        adapt_user=adapt_user,
    )
    if debug:
        configure_logging(True)
    logger.info("Starting Snowflake NixOS installation for host %s", hostname)
    with _fatal_errors(), cleanup_on_exit():
        Installer(settings, step=_step_counter()).run(hostname, target_disk)


@app.command("detect")
def detect(
    skip_drm_detection: bool = typer.Option(False, envvar="SKIP_DRM_DETECTION", help="Skip DRM GPU detection"),
) -> None:
    """Print detected CPU, GPU, PCI signatures, and disks."""
    facts = prober.probe(skip_drm=skip_drm_detection)
    typer.echo(f"CPU vendor: {facts.cpu_vendor}")
    typer.echo(f"GPU vendors: {' '.join(facts.gpu_vendors) or 'none'}")
    typer.echo(f"SATA controller: {facts.sata_controller}")
    typer.echo(f"Virtual machine: {facts.virtual_machine}")
    typer.echo("Disks:")
    for disk in facts.disks:
        typer.echo(f"  {disk.path} | {disk.size_bytes} bytes | {disk.kind}")
    if not facts.disks:
        typer.echo("  none")


@app.command("generate")
def generate(
    hostname: str = typer.Argument(..., help="Host to generate configuration for"),
    disk: str | None = typer.Option(None, "--disk", help="Target disk (largest disk if omitted)"),
    flake_dir: Path = FlakeDirOption,
    reinstall_mode: bool = typer.Option(False, "--reinstall/--fresh", envvar="REINSTALL_MODE"),
    skip_drm_detection: bool = typer.Option(False, envvar="SKIP_DRM_DETECTION"),
    force_disk_config: bool = typer.Option(False, envvar="FORCE_DISK_CONFIG"),
    regenerate_hw_config: bool = typer.Option(False, envvar="REGENERATE_HW_CONFIG"),
    regenerate_host: bool = typer.Option(False, envvar="REGENERATE_HOST"),
) -> None:
    """Write hosts/HOSTNAME/*.nix and register the host without installing."""
    settings = InstallerSettings(
        flake_dir=flake_dir,
        reinstall_mode=reinstall_mode,
        skip_drm_detection=skip_drm_detection,
        force_disk_config=force_disk_config,
        regenerate_hw_config=regenerate_hw_config,
        regenerate_host=regenerate_host,
    )
    step = _step_counter(total=3)
    with _fatal_errors():
        validate_hostname(hostname)

        step("Detecting hardware")
        facts = prober.probe(skip_drm=skip_drm_detection, detect_disks=not reinstall_mode)
        if reinstall_mode:
            target = disk or "/dev/sda"
            mounts = prober.probe_mounts()
        else:
            target = prober.select_target_disk(facts.disks, disk)
            mounts = None

        step("Writing configuration files")
        installer = Installer(settings, confirm=make_confirm(True))
        profile = HostProfile(hostname=hostname, reinstall_mode=reinstall_mode)
        results = installer.generate(profile, facts, disk=target, mounts=mounts)

        step("Summary")
        for result in results:
            status = "written" if result.written else "kept"
            typer.echo(f"    {status}: {result.artifact.path}")
    typer.echo(f"Generated host {hostname} ({profile.kind}) in {host_dir(settings.flake_dir, hostname)}")


@app.command("add-host")
def add_host(
    hostname: str = typer.Argument(..., help="Host key to add to nixosConfigurations"),
    flake_dir: Path = FlakeDirOption,
    system: str = typer.Option("x86_64-linux", help="System triple for the entry"),
) -> None:
    """Add HOSTNAME to hosts/default.nix unless it is already defined."""
    settings = InstallerSettings(flake_dir=flake_dir)
    with _fatal_errors():
        validate_hostname(hostname)
        outcome = HostsFile(settings.hosts_file).ensure_host_entry(hostname, system=system)
    typer.echo(f"{hostname}: {outcome.value}")


@app.command("repair-hosts")
def repair_hosts(
    flake_dir: Path = FlakeDirOption,
    yes: bool = typer.Option(False, "--yes", "-y", envvar="SKIP_CONFIRMATION", help="Do not ask for confirmation"),
) -> None:
    """Remove KEY=VALUE host entries from hosts/default.nix (backup first)."""
    settings = InstallerSettings(flake_dir=flake_dir, skip_confirmation=yes)
    with _fatal_errors():
        hosts = HostsFile(settings.hosts_file)
        entries = hosts.corrupt_entries()
        if not entries:
            typer.echo(f"No corrupted host entries in {hosts.path}")
            return
        for entry in entries:
            typer.echo(f"  -> {entry.line_no}: {entry.line}")
        if not make_confirm(yes)("Attempt to auto-repair by removing these entries?"):
            raise FlakeHostsError("Repair declined")
        result = hosts.repair([entry.line_no for entry in entries])
    typer.echo(f"{result.outcome.value}: removed lines {result.removed_line_numbers} (backup {result.backup_path})")


@app.command("reset-hosts")
def reset_hosts(
    flake_dir: Path = FlakeDirOption,
    yes: bool = typer.Option(False, "--yes", "-y", envvar="SKIP_CONFIRMATION", help="Do not ask for confirmation"),
) -> None:
    """Rewrite nixosConfigurations with the known-good hosts (backup first)."""
    settings = InstallerSettings(flake_dir=flake_dir, skip_confirmation=yes)
    with _fatal_errors():
        if not make_confirm(yes)("This will rewrite the nixosConfigurations block. Proceed?"):
            raise FlakeHostsError("Canonical reset declined")
        result = HostsFile(settings.hosts_file).canonical_reset(settings.hosts_dir)
    typer.echo(f"{result.outcome.value}: backup {result.backup_path}")


@app.command("check-hostname")
def check_hostname_command(hostname: str = typer.Argument(..., help="Hostname to validate")) -> None:
    """Validate HOSTNAME and print the violated rule, if any."""
    issue = check_hostname(hostname)
    if issue is None:
        typer.echo(f"ok: {hostname}")
        return
    typer.echo(issue.value)
    with _fatal_errors():
        validate_hostname(hostname)


@app.command("verify")
def verify(hostname: str | None = typer.Argument(None, help="Expected hostname")) -> None:
    """Run post-install checks against the running system."""
    ok = verify_installation(CommandRunner(), hostname)
    typer.echo("Verification completed" if ok else "Verification completed with warnings")


@app.command("doctor")
def doctor(flake_dir: Path = FlakeDirOption) -> None:
    """Print local environment diagnostics used by the installer."""
    settings = InstallerSettings(flake_dir=flake_dir)
    runner = CommandRunner()
    for tool in REQUIRED_TOOLS:
        typer.echo(f"{tool}: {runner.which(tool) or 'missing'}")
    typer.echo(f"flake.nix exists: {(settings.flake_dir / 'flake.nix').is_file()} ({settings.flake_dir})")
    hosts = HostsFile(settings.hosts_file)
    if hosts.path.is_file():
        typer.echo(f"invalid host keys: {len(hosts.invalid_keys())} ({hosts.path})")
    else:
        typer.echo(f"hosts file missing: {hosts.path}")
    typer.echo(f"available memory: {prober.available_memory_kb() // 1024}MB")


if __name__ == "__main__":
    app()
