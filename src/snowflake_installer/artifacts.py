"""Write rendered configuration files under ``hosts/<hostname>/``.

Existing files are left alone unless the matching force switch is set, so a
re-run never clobbers a hand-edited disk layout or host module.
"""

from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime
from pathlib import Path

from snowflake_installer.errors import ArtifactWriteError
from snowflake_installer.models import (
    ArtifactKind,
    GeneratedArtifact,
    HardwareFacts,
    HostProfile,
    MountInfo,
    WriteResult,
)
from snowflake_installer.renderer import (
    PLACEHOLDER_MODULES,
    bootloader_disable_lines,
    render,
    render_boot_overlay,
)

logger = logging.getLogger(__name__)

BOOT_OVERLAY_NAME = "_reinstall-disable-boot.nix"
IMPORTS_RE = re.compile(r"^\s*imports\s*=\s*\[")

FORCE_HINTS = {
    ArtifactKind.DISK: "FORCE_DISK_CONFIG=1",
    ArtifactKind.HARDWARE: "REGENERATE_HW_CONFIG=1",
    ArtifactKind.HOST: "REGENERATE_HOST=1",
}


def host_dir(flake_dir: Path, hostname: str) -> Path:
    return flake_dir / "hosts" / hostname


def plan_artifacts(
    flake_dir: Path,
    profile: HostProfile,
    facts: HardwareFacts,
    *,
    disk: str,
    mounts: MountInfo | None = None,
    generated_at: datetime | None = None,
) -> list[GeneratedArtifact]:
    """Render all three artifacts for ``profile`` without touching the disk."""
    target_dir = host_dir(flake_dir, profile.hostname)
    return [
        GeneratedArtifact(
            kind=kind,
            path=target_dir / kind.filename,
            text=render(kind, profile, facts, disk=disk, mounts=mounts, generated_at=generated_at),
        )
        for kind in (ArtifactKind.DISK, ArtifactKind.HARDWARE, ArtifactKind.HOST)
    ]


def write_artifact(artifact: GeneratedArtifact, force: bool = False) -> WriteResult:
    """Write ``artifact`` unless its file already exists and ``force`` is off.

    Raises:
        ArtifactWriteError: If the directory or file cannot be written.
    """
    if artifact.path.exists() and not force:
        logger.info(
            "Existing %s found, skipping generation (set %s to overwrite)",
            artifact.path,
            FORCE_HINTS[artifact.kind],
        )
        return WriteResult(artifact=artifact, written=False)

    try:
        artifact.path.parent.mkdir(parents=True, exist_ok=True)
        artifact.path.write_text(artifact.text, encoding="utf-8")
    except OSError as exc:
        raise ArtifactWriteError(f"Cannot write {artifact.path}: {exc}") from exc
    logger.info("Generated %s configuration: %s", artifact.kind.value, artifact.path)
    return WriteResult(artifact=artifact, written=True)


def write_artifacts(
    artifacts: list[GeneratedArtifact],
    *,
    force_disk_config: bool = False,
    regenerate_hw_config: bool = False,
    regenerate_host: bool = False,
) -> list[WriteResult]:
    force_by_kind = {
        ArtifactKind.DISK: force_disk_config,
        ArtifactKind.HARDWARE: regenerate_hw_config,
        ArtifactKind.HOST: regenerate_host,
    }
    return [write_artifact(artifact, force=force_by_kind[artifact.kind]) for artifact in artifacts]


def ensure_placeholder_modules(target_dir: Path) -> list[Path]:
    """Create empty ``{}`` modules for per-host imports that do not exist yet."""
    created: list[Path] = []
    for module in PLACEHOLDER_MODULES:
        module_path = target_dir / module
        if module_path.exists():
            continue
        try:
            module_path.parent.mkdir(parents=True, exist_ok=True)
            module_path.write_text("{}\n", encoding="utf-8")
        except OSError as exc:
            raise ArtifactWriteError(f"Cannot write {module_path}: {exc}") from exc
        created.append(module_path)
    if created:
        logger.info("Created %d placeholder service modules in %s", len(created), target_dir)
    return created


def install_boot_overlay(target_dir: Path, now: datetime | None = None) -> bool:
    """Import a module that force-disables bootloader installation.

    Used on rebuilds of curated hosts whose ``default.nix`` was not generated
    in reinstall mode. Returns ``True`` when the host module was changed.
    """
    host_module = target_dir / ArtifactKind.HOST.filename
    if not host_module.is_file():
        return False

    with open(host_module, encoding="utf-8", newline="") as handle:
        lines = handle.readlines()
    text = "".join(lines)
    if BOOT_OVERLAY_NAME in text:
        return False
    if all(disable.strip() in text for disable in bootloader_disable_lines()):
        logger.debug("%s already disables every bootloader", host_module)
        return False

    for index, line in enumerate(lines):
        if IMPORTS_RE.match(line):
            break
    else:
        logger.warning("No imports list found in %s; boot overlay not imported", host_module)
        return False

    overlay = target_dir / BOOT_OVERLAY_NAME
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    lines.insert(index + 1, f"    ./{BOOT_OVERLAY_NAME}\n")
    try:
        if not overlay.exists():
            overlay.write_text(render_boot_overlay(), encoding="utf-8")
        shutil.copy2(host_module, host_module.with_name(f"{host_module.name}.backup.{stamp}"))
        with open(host_module, "w", encoding="utf-8", newline="") as handle:
            handle.writelines(lines)
    except OSError as exc:
        raise ArtifactWriteError(f"Cannot import boot overlay into {host_module}: {exc}") from exc
    logger.info("Imported %s into %s", BOOT_OVERLAY_NAME, host_module)
    return True
