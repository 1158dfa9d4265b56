from __future__ import annotations

import logging
from collections.abc import Callable

from .errors import UserDeclined

LOGGER = logging.getLogger(__name__)

ConfirmFn = Callable[[str], bool]
"""Asks the operator a yes/no question; True means confirmed."""


def always_yes(question: str) -> bool:
    LOGGER.info("Auto-confirmed: %s", question)
    return True


def require_confirmation(confirm: ConfirmFn, question: str) -> None:
    """Raise :class:`UserDeclined` unless the operator confirms *question*."""
    if not confirm(question):
        raise UserDeclined(f"Declined: {question}")
