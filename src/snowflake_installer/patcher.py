"""Add, repair, and reset host entries in the flake's ``hosts/default.nix``.

Only lines inside the ``nixosConfigurations = { ... };`` attribute set are
ever changed. Files are read and written with newline translation disabled
so everything outside that block stays byte-for-byte identical.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

from snowflake_installer.errors import FlakeHostsError
from snowflake_installer.models import CorruptEntry, PatchOutcome, PatchResult

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM = "x86_64-linux"
DEFAULT_MODULES = "nixosModules homeModules"

# Known-good entries restored by a canonical reset, keyed by host directory.
CANONICAL_HOSTS = {
    "yuki": "nixosModules homeModules",
    "minimal": "nixosModules",
}

BLOCK_HEADER_RE = re.compile(r"(^|[^A-Za-z0-9_])nixosConfigurations\s*=\s*\{")
CORRUPT_ENTRY_RE = re.compile(r"^\s*[A-Za-z_][A-Za-z0-9_]*=[0-9]+\s*=\s*mkNixosSystem\s*\{")
INVALID_KEY_RE = re.compile(r"^\s*[A-Za-z_][A-Za-z0-9_'-]*=\S*\s*=\s*mkNixosSystem\b")
BLOCK_CLOSE_RE = re.compile(r"^\s*};\s*$")


def brace_delta(line: str) -> int:
    """Count ``{`` minus ``}`` outside double-quoted strings and ``#`` comments."""
    delta = 0
    in_string = False
    escaped = False
    for ch in line:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "#":
            break
        elif ch == "{":
            delta += 1
        elif ch == "}":
            delta -= 1
    return delta


def find_configurations_block(lines: list[str]) -> tuple[int, int]:
    """Return ``(header_index, closing_index)`` of the ``nixosConfigurations`` set.

    Raises:
        FlakeHostsError: If the block is missing, unterminated, or on one line.
    """
    for start, line in enumerate(lines):
        if line.lstrip().startswith("#"):
            continue
        match = BLOCK_HEADER_RE.search(line)
        if not match:
            continue
        depth = 1 + brace_delta(line[match.end():])
        if depth <= 0:
            raise FlakeHostsError("nixosConfigurations block opens and closes on one line; cannot patch it")
        for index in range(start + 1, len(lines)):
            depth += brace_delta(lines[index])
            if depth <= 0:
                return start, index
        raise FlakeHostsError("nixosConfigurations block is not closed")
    raise FlakeHostsError("No nixosConfigurations block found")


def has_host_entry(text: str, host_key: str) -> bool:
    """Return ``True`` when ``host_key`` is defined, quoted or bare, anywhere in ``text``."""
    key = re.escape(host_key)
    bare = re.compile(rf"(^|[^A-Za-z0-9_'\"-]){key}\s*=\s*mkNixosSystem", re.MULTILINE)
    quoted = re.compile(rf'"{key}"\s*=\s*mkNixosSystem')
    return bool(bare.search(text) or quoted.search(text))


def find_corrupt_entries(text: str) -> list[CorruptEntry]:
    """Find entries keyed by an ``IDENT=NUMBER`` token, e.g. ``SKIP_DRM_DETECTION=1``."""
    return [
        CorruptEntry(line_no=index, line=line.rstrip("\r\n"))
        for index, line in enumerate(text.splitlines(), start=1)
        if CORRUPT_ENTRY_RE.match(line)
    ]


def find_invalid_keys(text: str) -> list[CorruptEntry]:
    """Find any unquoted attribute key containing ``=`` before ``= mkNixosSystem``."""
    return [
        CorruptEntry(line_no=index, line=line.rstrip("\r\n"))
        for index, line in enumerate(text.splitlines(), start=1)
        if INVALID_KEY_RE.match(line)
    ]


def render_host_entry(
    host_key: str,
    *,
    indent: str = "    ",
    system: str = DEFAULT_SYSTEM,
    modules: str = DEFAULT_MODULES,
    quoted: bool = True,
    newline: str = "\n",
) -> list[str]:
    """Render one ``mkNixosSystem`` entry as newline-terminated lines."""
    key = f'"{host_key}"' if quoted else host_key
    return [
        f"{indent}{key} = mkNixosSystem {{{newline}",
        f'{indent}  hostname = "{host_key}";{newline}',
        f'{indent}  system = "{system}";{newline}',
        f"{indent}  modules = [{modules}];{newline}",
        f"{indent}}};{newline}",
    ]


def _indent_of(line: str) -> str:
    return line[: len(line) - len(line.lstrip(" \t"))]


def _newline_of(line: str) -> str:
    return "\r\n" if line.endswith("\r\n") else "\n"


class HostsFile:
    """The shared file that declares every named system configuration."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> str:
        """Return the file text with its original line endings."""
        try:
            with open(self.path, encoding="utf-8", newline="") as handle:
                return handle.read()
        except OSError as exc:
            raise FlakeHostsError(f"Cannot read {self.path}: {exc}") from exc

    def _lines(self) -> list[str]:
        return self.read().splitlines(keepends=True)

    def _write_lines(self, lines: list[str]) -> None:
        """Replace the file via a temporary sibling so a failed write leaves it intact."""
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                    handle.writelines(lines)
                shutil.copymode(self.path, tmp_name)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise FlakeHostsError(f"Failed to update {self.path}: {exc}") from exc

    def backup(self, label: str = "backup", now: datetime | None = None) -> Path:
        """Copy the file to ``<name>.<label>.YYYYmmdd_HHMMSS`` and return that path."""
        stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        target = self.path.with_name(f"{self.path.name}.{label}.{stamp}")
        try:
            shutil.copy2(self.path, target)
        except OSError as exc:
            raise FlakeHostsError(f"Cannot back up {self.path}: {exc}") from exc
        logger.info("Backup written: %s", target)
        return target

    def has_host(self, host_key: str) -> bool:
        return has_host_entry(self.read(), host_key)

    def corrupt_entries(self) -> list[CorruptEntry]:
        return find_corrupt_entries(self.read())

    def invalid_keys(self) -> list[CorruptEntry]:
        return find_invalid_keys(self.read())

    def ensure_host_entry(
        self,
        host_key: str,
        *,
        system: str = DEFAULT_SYSTEM,
        modules: str = DEFAULT_MODULES,
    ) -> PatchOutcome:
        """Insert ``host_key`` before the closing line of the block unless present."""
        text = self.read()
        if has_host_entry(text, host_key):
            logger.info("Host %s already exists in flake configuration", host_key)
            return PatchOutcome.ALREADY_PRESENT

        lines = text.splitlines(keepends=True)
        _, end = find_configurations_block(lines)
        closing = lines[end]
        entry = render_host_entry(
            host_key,
            indent=_indent_of(closing) + "  ",
            system=system,
            modules=modules,
            newline=_newline_of(closing),
        )
        lines[end:end] = entry
        self._write_lines(lines)
        logger.info("Updated flake configuration to include host: %s", host_key)
        return PatchOutcome.INSERTED

    def repair(self, line_numbers: list[int] | None = None, *, now: datetime | None = None) -> PatchResult:
        """Remove corrupt entries, backing the file up first.

        An entry runs from its start line to the first later line that is
        exactly ``};``. Deeply nested bodies containing such a line end early;
        an entry whose braces balance on its start line is removed alone.

        Raises:
            FlakeHostsError: If there is nothing to repair.
        """
        if line_numbers is None:
            line_numbers = [entry.line_no for entry in self.corrupt_entries()]
        starts = set(line_numbers)
        if not starts:
            raise FlakeHostsError(f"No corrupted host entries found in {self.path}")

        lines = self._lines()
        backup_path = self.backup(now=now)

        kept: list[str] = []
        removed: list[int] = []
        skipping = False
        for line_no, line in enumerate(lines, start=1):
            if skipping:
                removed.append(line_no)
                if BLOCK_CLOSE_RE.match(line):
                    skipping = False
                continue
            if line_no in starts:
                removed.append(line_no)
                skipping = brace_delta(line) > 0
                continue
            kept.append(line)

        self._write_lines(kept)
        logger.info("Auto-repair applied to %s (removed %d lines)", self.path, len(removed))
        return PatchResult(outcome=PatchOutcome.REPAIRED, backup_path=backup_path, removed_line_numbers=removed)

    def canonical_reset(self, hosts_dir: Path, *, now: datetime | None = None) -> PatchResult:
        """Rewrite the block body with the known-good entries whose host directories exist.

        Raises:
            FlakeHostsError: If an entry shares the header line, since rewriting
                the body would leave it behind.
        """
        lines = self._lines()
        start, end = find_configurations_block(lines)
        header = lines[start]
        match = BLOCK_HEADER_RE.search(header)
        trailing = header[match.end():].split("#", 1)[0].strip()
        if trailing:
            raise FlakeHostsError(
                f"nixosConfigurations header in {self.path} carries inline content ({trailing}); cannot reset it"
            )
        backup_path = self.backup(label="backup.reset", now=now)

        closing = lines[end]
        indent = _indent_of(closing) + "  "
        newline = _newline_of(closing)
        body: list[str] = []
        for host, modules in CANONICAL_HOSTS.items():
            if (hosts_dir / host).is_dir():
                body.extend(
                    render_host_entry(host, indent=indent, modules=modules, quoted=False, newline=newline)
                )

        removed = list(range(start + 2, end + 1))
        self._write_lines([*lines[: start + 1], *body, *lines[end:]])
        logger.info("nixosConfigurations block reset in %s", self.path)
        return PatchResult(outcome=PatchOutcome.RESET, backup_path=backup_path, removed_line_numbers=removed)
