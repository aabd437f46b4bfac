from __future__ import annotations

import logging
from collections.abc import Callable

import typer

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


def make_confirm(skip_confirmation: bool) -> Confirm:
    """Build a yes/no prompt; with ``skip_confirmation`` every question is answered yes."""

    def _confirm(question: str) -> bool:
        if skip_confirmation:
            logger.info("%s yes (SKIP_CONFIRMATION=1)", question)
            return True
        try:
            return typer.confirm(question, default=False)
        except typer.Abort:
            return False

    return _confirm
