"""Read-only hardware and environment detection for the host being installed."""

from __future__ import annotations

import getpass
import logging
import os
import re
import socket
import stat
from pathlib import Path

from snowflake_installer.errors import DiskNotFoundError
from snowflake_installer.models import (
    CpuVendor,
    Disk,
    EnvironmentKind,
    GpuVendor,
    HardwareFacts,
    MountInfo,
)
from snowflake_installer.system import read_text, try_cmd

logger = logging.getLogger(__name__)

PROC_CPUINFO = Path("/proc/cpuinfo")
PROC_MEMINFO = Path("/proc/meminfo")
NVIDIA_DRIVER_DIR = Path("/proc/driver/nvidia")
DRM_CLASS_DIR = Path("/sys/class/drm")

DEFAULT_DISK = "/dev/nvme0n1"
LSPCI_TIMEOUT = 10
DRM_SCAN_LIMIT = 3
LIVE_ROOT_FSTYPES = {"overlay", "squashfs", "tmpfs"}

DISPLAY_CLASS_RE = re.compile(r"\b(vga|3d|display)\b", re.IGNORECASE)
GPU_SIGNATURES: tuple[tuple[GpuVendor, re.Pattern[str]], ...] = (
    ("nvidia", re.compile(r"\bnvidia\b", re.IGNORECASE)),
    ("amd", re.compile(r"\b(amd|ati|radeon)\b", re.IGNORECASE)),
    ("intel", re.compile(r"\bintel\b", re.IGNORECASE)),
)
DRM_VENDOR_IDS: dict[str, GpuVendor] = {
    "0x10de": "nvidia",
    "0x1002": "amd",
    "0x8086": "intel",
}
SATA_RE = re.compile(r"\b(sata|ahci)\b", re.IGNORECASE)
VIRTIO_RE = re.compile(r"virtio|qemu", re.IGNORECASE)
HYPERVISOR_RE = re.compile(r"virtio|qemu|vmware|virtualbox", re.IGNORECASE)
DRM_CARD_RE = re.compile(r"^card\d+$")


def _vendor_from_text(text: str) -> CpuVendor:
    lowered = text.lower()
    if "intel" in lowered:
        return "intel"
    if "amd" in lowered:
        return "amd"
    return "unknown"


def detect_cpu_vendor(cpuinfo_path: Path = PROC_CPUINFO) -> CpuVendor:
    """Detect the CPU vendor from ``lscpu``, then ``/proc/cpuinfo``."""
    output = try_cmd(["lscpu"])
    if output:
        vendor_lines = [line for line in output.splitlines() if line.startswith("Vendor ID")]
        vendor = _vendor_from_text("\n".join(vendor_lines) or output)
        if vendor != "unknown":
            logger.info("Detected %s CPU", vendor)
            return vendor

    cpuinfo = read_text(cpuinfo_path)
    if cpuinfo:
        vendor_lines = [line for line in cpuinfo.splitlines() if line.startswith("vendor_id")]
        vendor = _vendor_from_text("\n".join(vendor_lines[:1]) or cpuinfo)
        if vendor != "unknown":
            logger.info("Detected %s CPU (from %s)", vendor, cpuinfo_path)
            return vendor
        logger.warning("Unknown CPU vendor, using generic configuration")
        return "unknown"

    logger.warning("Cannot detect CPU vendor, using generic configuration")
    return "unknown"


def read_pci_listing() -> str | None:
    """Return ``lspci`` output, or ``None`` when unavailable or timed out."""
    output = try_cmd(["lspci"], timeout=LSPCI_TIMEOUT)
    if output is None:
        logger.warning("lspci unavailable, timed out, or failed; trying alternative methods")
    return output


def gpus_from_pci_listing(listing: str) -> list[GpuVendor]:
    """Match display-class devices against the vendor signatures."""
    display_lines = "\n".join(line for line in listing.splitlines() if DISPLAY_CLASS_RE.search(line))
    return [vendor for vendor, pattern in GPU_SIGNATURES if pattern.search(display_lines)]


def gpus_from_drm(drm_dir: Path = DRM_CLASS_DIR, limit: int = DRM_SCAN_LIMIT) -> list[GpuVendor]:
    """Read PCI vendor IDs of at most ``limit`` DRM cards."""
    try:
        cards = sorted(entry for entry in drm_dir.iterdir() if DRM_CARD_RE.match(entry.name))
    except OSError:
        return []

    vendors: list[GpuVendor] = []
    for card in cards[:limit]:
        raw = read_text(card / "device" / "vendor")
        if raw is None:
            continue
        vendor = DRM_VENDOR_IDS.get(raw.strip().lower())
        if vendor:
            logger.info("Detected %s GPU (via DRM)", vendor)
            vendors.append(vendor)
    return vendors


def detect_gpu_vendors(
    pci_listing: str | None,
    *,
    skip_drm: bool = False,
    nvidia_driver_dir: Path = NVIDIA_DRIVER_DIR,
    drm_dir: Path = DRM_CLASS_DIR,
) -> tuple[GpuVendor, ...]:
    """Return detected GPU vendors, stopping at the first method that finds any."""
    vendors: list[GpuVendor] = []

    if pci_listing:
        vendors = gpus_from_pci_listing(pci_listing)
        if vendors:
            logger.info("GPU detection completed via lspci: %s", " ".join(vendors))

    if not vendors and nvidia_driver_dir.is_dir():
        logger.info("Detected NVIDIA GPU (driver present)")
        vendors = ["nvidia"]

    if not vendors and not skip_drm and drm_dir.is_dir():
        logger.info("Attempting safe DRM detection (set SKIP_DRM_DETECTION=1 to skip)")
        vendors = gpus_from_drm(drm_dir)

    result = tuple(dict.fromkeys(vendors))
    if not result:
        logger.warning("No supported GPU detected (common in VMs)")
    return result


def parse_lsblk(output: str) -> list[Disk]:
    """Parse ``lsblk -d -n -b -o NAME,SIZE,TYPE`` into disks, largest first."""
    disks: list[Disk] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) != 3:
            continue
        name, size, dev_type = parts
        if dev_type != "disk" or name.startswith("zram") or not size.isdigit():
            continue
        kind = "nvme" if name.startswith("nvme") else "disk"
        disks.append(Disk(name=name, size_bytes=int(size), kind=kind))
    return sorted(disks, key=lambda disk: disk.size_bytes, reverse=True)


def list_disks() -> list[Disk]:
    """List whole disks from ``lsblk``, largest first; empty when ``lsblk`` cannot run."""
    output = try_cmd(["lsblk", "-d", "-n", "-b", "-o", "NAME,SIZE,TYPE"])
    if output is None:
        logger.warning("lsblk unavailable; no disks listed")
        return []
    disks = parse_lsblk(output)
    for disk in disks[:10]:
        logger.info("  %s (%d GB)", disk.path, disk.size_bytes // 1_000_000_000)
    return disks


def is_block_device(path: str) -> bool:
    """Return ``True`` when ``path`` exists and is a block special file."""
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def select_target_disk(disks: list[Disk] | tuple[Disk, ...], requested: str | None = None) -> str:
    """Pick the install target: explicit argument, else the largest disk.

    Raises:
        DiskNotFoundError: If the chosen path is not a block device.
    """
    if requested:
        target = requested
        logger.info("Using specified disk: %s", target)
    elif disks:
        target = max(disks, key=lambda disk: disk.size_bytes).path
        logger.info("Auto-detected largest disk: %s", target)
    else:
        target = DEFAULT_DISK
        logger.warning("No suitable disk found, using default: %s", target)

    if not is_block_device(target):
        raise DiskNotFoundError(f"Disk {target} does not exist or is not a block device")
    return target


def probe(*, skip_drm: bool = False, detect_disks: bool = True) -> HardwareFacts:
    """Collect hardware facts. Individual detection failures degrade to defaults."""
    logger.info("Detecting CPU...")
    cpu_vendor = detect_cpu_vendor()

    logger.info("Detecting GPU...")
    pci_listing = read_pci_listing()
    gpu_vendors = detect_gpu_vendors(pci_listing, skip_drm=skip_drm)

    disks: list[Disk] = []
    if detect_disks:
        logger.info("Detecting storage devices...")
        disks = list_disks()

    listing = pci_listing or ""
    facts = HardwareFacts(
        cpu_vendor=cpu_vendor,
        gpu_vendors=gpu_vendors,
        disks=tuple(disks),
        sata_controller=bool(SATA_RE.search(listing)),
        virtio_devices=bool(VIRTIO_RE.search(listing)),
        virtual_machine=bool(HYPERVISOR_RE.search(listing)),
    )
    if facts.virtio_devices:
        logger.info("Detected virtualized environment, adding virtio modules")
    return facts


def _findmnt(target: str, column: str) -> str | None:
    output = try_cmd(["findmnt", "-n", "-o", column, target])
    value = (output or "").strip()
    return value or None


def probe_mounts() -> MountInfo:
    """Read the current root and boot mounts for rebuild-mode filesystem blocks."""
    defaults = MountInfo()
    boot_device = _findmnt("/boot", "SOURCE")
    return MountInfo(
        root_device=_findmnt("/", "SOURCE") or defaults.root_device,
        root_fstype=_findmnt("/", "FSTYPE") or defaults.root_fstype,
        boot_device=boot_device,
        boot_fstype=(_findmnt("/boot", "FSTYPE") or "vfat") if boot_device else None,
    )


def detect_environment() -> EnvironmentKind:
    """Distinguish the live installer ISO from an already installed system."""
    fs_type = _findmnt("/", "FSTYPE") or "unknown"
    root_src = _findmnt("/", "SOURCE") or "unknown"
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    host = socket.gethostname() or "unknown"

    logger.info("Environment probe: root.fs=%s root.src=%s user=%s host=%s", fs_type, root_src, user, host)
    if fs_type in LIVE_ROOT_FSTYPES:
        return EnvironmentKind.LIVE
    if user == "nixos" or host == "nixos":
        return EnvironmentKind.LIVE
    return EnvironmentKind.INSTALLED


def available_memory_kb(meminfo_path: Path = PROC_MEMINFO) -> int:
    return _meminfo_field("MemAvailable", meminfo_path)


def total_memory_kb(meminfo_path: Path = PROC_MEMINFO) -> int:
    return _meminfo_field("MemTotal", meminfo_path)


def _meminfo_field(field: str, meminfo_path: Path) -> int:
    text = read_text(meminfo_path) or ""
    for line in text.splitlines():
        if line.startswith(f"{field}:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1])
    return 0
