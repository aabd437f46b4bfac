from __future__ import annotations

from pathlib import Path

import pytest

from snowflake_installer import prober, system
from snowflake_installer.errors import DiskNotFoundError
from snowflake_installer.models import Disk, EnvironmentKind

PCI_LISTING = """\
00:00.0 Host bridge: Intel Corporation 8th Gen Core Processor Host Bridge/DRAM Registers (rev 07)
00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 630 (Desktop)
00:17.0 SATA controller: Intel Corporation Cannon Lake PCH SATA AHCI Controller (rev 10)
01:00.0 VGA compatible controller: NVIDIA Corporation TU104 [GeForce RTX 2080 SUPER] (rev a1)
01:00.1 Audio device: NVIDIA Corporation TU104 HD Audio Controller (rev a1)
"""

LSBLK_OUTPUT = """\
sda 1000204886016 disk
nvme0n1 512110190592 disk
zram0 8589934592 disk
sr0 1073741312 rom
"""


def test_gpus_from_pci_listing_given_nvidia_and_amd_when_parsed_then_fixed_probe_order() -> None:
    # Given
    listing = (
        "03:00.0 VGA compatible controller: Advanced Micro Devices, Inc. [AMD/ATI] Navi 21\n"
        "01:00.0 3D controller: NVIDIA Corporation GA107M\n"
    )

    # When
    vendors = prober.gpus_from_pci_listing(listing)

    # Then
    assert vendors == ["nvidia", "amd"]


def test_gpus_from_pci_listing_given_vendor_only_on_non_display_lines_when_parsed_then_ignored() -> None:
    # Given
    listing = "00:1f.3 Audio device: NVIDIA Corporation HD Audio\n00:02.0 Host bridge: Intel Corporation\n"

    # When
    vendors = prober.gpus_from_pci_listing(listing)

    # Then
    assert vendors == []


def test_detect_gpu_vendors_given_lspci_hit_when_detected_then_later_methods_are_skipped(tmp_path: Path) -> None:
    # Given
    nvidia_dir = tmp_path / "nvidia"
    nvidia_dir.mkdir()
    drm_dir = tmp_path / "drm"

    # When
    vendors = prober.detect_gpu_vendors(
        "00:02.0 VGA compatible controller: Intel Corporation UHD Graphics\n",
        nvidia_driver_dir=nvidia_dir,
        drm_dir=drm_dir,
    )

    # Then
    assert vendors == ("intel",)


def test_detect_gpu_vendors_given_no_listing_when_driver_dir_exists_then_nvidia(tmp_path: Path) -> None:
    # Given
    nvidia_dir = tmp_path / "nvidia"
    nvidia_dir.mkdir()

    # When
    vendors = prober.detect_gpu_vendors(None, nvidia_driver_dir=nvidia_dir, drm_dir=tmp_path / "missing")

    # Then
    assert vendors == ("nvidia",)


def _make_drm_card(drm_dir: Path, name: str, vendor_id: str) -> None:
    device = drm_dir / name / "device"
    device.mkdir(parents=True)
    (device / "vendor").write_text(f"{vendor_id}\n", encoding="utf-8")


def test_detect_gpu_vendors_given_drm_cards_when_scanned_then_vendor_ids_are_mapped_and_deduplicated(
    tmp_path: Path,
) -> None:
    # Given
    drm_dir = tmp_path / "drm"
    _make_drm_card(drm_dir, "card0", "0x8086")
    _make_drm_card(drm_dir, "card1", "0x10de")
    _make_drm_card(drm_dir, "card2", "0x8086")
    (drm_dir / "card0-HDMI-A-1").mkdir()

    # When
    vendors = prober.detect_gpu_vendors(None, nvidia_driver_dir=tmp_path / "none", drm_dir=drm_dir)

    # Then
    assert vendors == ("intel", "nvidia")


def test_detect_gpu_vendors_given_skip_drm_when_nothing_else_found_then_empty(tmp_path: Path) -> None:
    # Given
    drm_dir = tmp_path / "drm"
    _make_drm_card(drm_dir, "card0", "0x1002")

    # When
    vendors = prober.detect_gpu_vendors(None, skip_drm=True, nvidia_driver_dir=tmp_path / "none", drm_dir=drm_dir)

    # Then
    assert vendors == ()


def test_gpus_from_drm_given_more_cards_than_limit_when_scanned_then_scan_is_bounded(tmp_path: Path) -> None:
    # Given
    drm_dir = tmp_path / "drm"
    for index, vendor_id in enumerate(["0x8086", "0x8086", "0x8086", "0x10de"]):
        _make_drm_card(drm_dir, f"card{index}", vendor_id)

    # When
    vendors = prober.gpus_from_drm(drm_dir, limit=3)

    # Then
    assert "nvidia" not in vendors


def test_parse_lsblk_given_mixed_devices_when_parsed_then_disks_only_sorted_largest_first() -> None:
    # Given / When
    disks = prober.parse_lsblk(LSBLK_OUTPUT)

    # Then
    assert [disk.name for disk in disks] == ["sda", "nvme0n1"]
    assert [disk.kind for disk in disks] == ["disk", "nvme"]


def test_select_target_disk_given_no_request_when_selected_then_largest_disk_wins(monkeypatch) -> None:
    # Given
    monkeypatch.setattr(prober, "is_block_device", lambda path: True)
    disks = [
        Disk(name="nvme0n1", size_bytes=512_000_000_000, kind="nvme"),
        Disk(name="sda", size_bytes=1_000_000_000_000),
    ]

    # When
    target = prober.select_target_disk(disks)

    # Then
    assert target == "/dev/sda"


def test_select_target_disk_given_explicit_disk_when_selected_then_request_wins(monkeypatch) -> None:
    # Given
    monkeypatch.setattr(prober, "is_block_device", lambda path: True)

    # When
    target = prober.select_target_disk([Disk(name="sda", size_bytes=10)], "/dev/vdb")

    # Then
    assert target == "/dev/vdb"


def test_select_target_disk_given_no_disks_when_default_missing_then_disk_not_found(monkeypatch) -> None:
    # Given
    monkeypatch.setattr(prober, "is_block_device", lambda path: False)

    # When / Then
    with pytest.raises(DiskNotFoundError, match="/dev/nvme0n1"):
        prober.select_target_disk([])


def test_detect_cpu_vendor_given_lscpu_output_when_detected_then_vendor_id_line_is_used(monkeypatch, tmp_path) -> None:
    # Given
    monkeypatch.setattr(
        prober, "try_cmd", lambda cmd, timeout=None: "Architecture: x86_64\nVendor ID: AuthenticAMD\n"
    )

    # When
    vendor = prober.detect_cpu_vendor(tmp_path / "cpuinfo")

    # Then
    assert vendor == "amd"


def test_detect_cpu_vendor_given_no_lscpu_when_cpuinfo_present_then_fallback_is_used(monkeypatch, tmp_path) -> None:
    # Given
    monkeypatch.setattr(prober, "try_cmd", lambda cmd, timeout=None: None)
    cpuinfo = tmp_path / "cpuinfo"
    cpuinfo.write_text("processor\t: 0\nvendor_id\t: GenuineIntel\n", encoding="utf-8")

    # When
    vendor = prober.detect_cpu_vendor(cpuinfo)

    # Then
    assert vendor == "intel"


def test_detect_cpu_vendor_given_nothing_readable_when_detected_then_unknown(monkeypatch, tmp_path) -> None:
    # Given
    monkeypatch.setattr(prober, "try_cmd", lambda cmd, timeout=None: None)

    # When
    vendor = prober.detect_cpu_vendor(tmp_path / "missing")

    # Then
    assert vendor == "unknown"


def test_probe_given_stubbed_commands_when_probed_then_facts_combine_every_source(monkeypatch) -> None:
    # Given
    outputs = {
        "lscpu": "Vendor ID: GenuineIntel\n",
        "lspci": PCI_LISTING,
        "lsblk": LSBLK_OUTPUT,
    }
    monkeypatch.setattr(prober, "try_cmd", lambda cmd, timeout=None: outputs.get(cmd[0]))

    # When
    facts = prober.probe()

    # Then
    assert facts.cpu_vendor == "intel"
    assert facts.gpu_vendors == ("nvidia", "intel")
    assert facts.disks[0].path == "/dev/sda"
    assert facts.sata_controller is True
    assert facts.virtio_devices is False
    assert facts.virtual_machine is False


def test_probe_mounts_given_no_boot_mount_when_probed_then_boot_is_absent(monkeypatch) -> None:
    # Given
    values = {("/", "SOURCE"): "/dev/vda2\n", ("/", "FSTYPE"): "btrfs\n"}
    monkeypatch.setattr(prober, "try_cmd", lambda cmd, timeout=None: values.get((cmd[-1], cmd[-2])))

    # When
    mounts = prober.probe_mounts()

    # Then
    assert mounts.root_device == "/dev/vda2"
    assert mounts.root_fstype == "btrfs"
    assert mounts.boot_device is None
    assert mounts.boot_fstype is None


def test_detect_environment_given_overlay_root_when_detected_then_live(monkeypatch) -> None:
    # Given
    monkeypatch.setattr(prober, "try_cmd", lambda cmd, timeout=None: "overlay\n" if "FSTYPE" in cmd else "none\n")
    monkeypatch.setattr(prober.getpass, "getuser", lambda: "jager")
    monkeypatch.setattr(prober.socket, "gethostname", lambda: "yuki")

    # When
    environment = prober.detect_environment()

    # Then
    assert environment is EnvironmentKind.LIVE


def test_detect_environment_given_btrfs_root_and_regular_user_when_detected_then_installed(monkeypatch) -> None:
    # Given
    monkeypatch.setattr(prober, "try_cmd", lambda cmd, timeout=None: "btrfs\n" if "FSTYPE" in cmd else "/dev/sda2\n")
    monkeypatch.setattr(prober.getpass, "getuser", lambda: "jager")
    monkeypatch.setattr(prober.socket, "gethostname", lambda: "yuki")

    # When
    environment = prober.detect_environment()

    # Then
    assert environment is EnvironmentKind.INSTALLED


def test_available_memory_kb_given_meminfo_when_read_then_field_is_parsed(tmp_path) -> None:
    # Given
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemTotal:       16314828 kB\nMemAvailable:    9876543 kB\n", encoding="utf-8")

    # When / Then
    assert prober.available_memory_kb(meminfo) == 9_876_543
    assert prober.total_memory_kb(meminfo) == 16_314_828
    assert prober.available_memory_kb(tmp_path / "missing") == 0


def test_detect_cpu_vendor_given_unrunnable_lscpu_when_detected_then_falls_back_softly(monkeypatch, tmp_path) -> None:
    # Given
    def _denied(cmd, **kwargs):
        raise PermissionError(13, "Permission denied", cmd[0])

    monkeypatch.setattr(system.subprocess, "run", _denied)

    # When
    vendor = prober.detect_cpu_vendor(tmp_path / "missing")

    # Then
    assert vendor == "unknown"
