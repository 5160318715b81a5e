from __future__ import annotations

from .models import DesiredState

BAD_EXIT_CODES = frozenset({1, 255})
# 137 is what a live container reports here; it must never trigger a restart
OK_EXIT_CODES = frozenset({0, 137})


def needs_restart(expected: DesiredState, actual: int) -> bool:
    if expected != DesiredState.RUNNING:
        return False
    return actual in BAD_EXIT_CODES or actual not in OK_EXIT_CODES
