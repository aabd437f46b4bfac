"""Point the flake's home-manager and system user definitions at the login user."""

from __future__ import annotations

import getpass
import logging
import os
import re
import shutil
from pathlib import Path

from snowflake_installer.config import DEFAULT_USER
from snowflake_installer.errors import UserConfigError

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r'username = ".*"')
HOME_DIRECTORY_RE = re.compile(r'homeDirectory = "/home/.*"')
USERS_SET_RE = re.compile(r"users = \{")


def detect_user() -> str:
    """Return the login name of the invoking user, falling back to the effective user.

    Raises:
        UserConfigError: If neither lookup yields a name.
    """
    try:
        user = os.getlogin()
    except OSError:
        user = ""
    if not user:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = ""
    if not user:
        raise UserConfigError("Unable to detect current user")
    return user


def _read(path: Path) -> str:
    try:
        with open(path, encoding="utf-8", newline="") as handle:
            return handle.read()
    except OSError as exc:
        raise UserConfigError(f"Cannot read {path}: {exc}") from exc


def _write(path: Path, text: str) -> None:
    try:
        with open(path, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
    except OSError as exc:
        raise UserConfigError(f"Cannot write {path}: {exc}") from exc


def adapt_home_config(flake_dir: Path, user: str, template_user: str = DEFAULT_USER) -> None:
    """Give ``user`` a home-manager configuration and register it in ``home/default.nix``.

    A missing ``home/<user>`` is copied from ``home/<template_user>``; its
    ``home.nix`` then gets the new ``username`` and ``homeDirectory``.
    """
    logger.info("Updating user configuration for: %s", user)
    home_root = flake_dir / "home"
    user_dir = home_root / user
    if not user_dir.is_dir():
        template = home_root / template_user
        if not template.is_dir():
            raise UserConfigError(f"Home configuration template not found: {template}")
        logger.info("Creating home-manager configuration for user: %s", user)
        try:
            shutil.copytree(template, user_dir, symlinks=True)
        except OSError as exc:
            raise UserConfigError(f"Cannot copy {template} to {user_dir}: {exc}") from exc

    home_nix = user_dir / "home.nix"
    if home_nix.is_file():
        text = _read(home_nix)
        text = USERNAME_RE.sub(f'username = "{user}"', text)
        text = HOME_DIRECTORY_RE.sub(f'homeDirectory = "/home/{user}"', text)
        _write(home_nix, text)
        logger.info("Updated home.nix for user: %s", user)

    home_default = home_root / "default.nix"
    if not home_default.is_file():
        return
    text = _read(home_default)
    if f"{user} = import" in text:
        return
    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if USERS_SET_RE.search(line):
            newline = "\r\n" if line.endswith("\r\n") else "\n"
            lines.insert(index + 1, f"      {user} = import ./{user};{newline}")
            _write(home_default, "".join(lines))
            logger.info("Added user %s to home-manager users configuration", user)
            return
    logger.warning("No 'users = {' set in %s; %s not registered", home_default, user)


def adapt_system_user(flake_dir: Path, user: str, template_user: str = DEFAULT_USER) -> None:
    """Rename ``users.users.<template_user>`` to ``users.users.<user>`` in the system users module."""
    users_nix = flake_dir / "hosts" / "config" / "system" / "users.nix"
    if not users_nix.is_file():
        logger.debug("%s not found; system user left unchanged", users_nix)
        return
    logger.info("Updating system user configuration for: %s", user)
    pattern = re.compile(rf"users\.users\.{re.escape(template_user)}\b")
    text = _read(users_nix)
    _write(users_nix, pattern.sub(f"users.users.{user}", text))
    logger.info("Updated system users.nix for user: %s", user)
