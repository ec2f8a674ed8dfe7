"""Round rules that are independent from HTTP, DB and chain access.

Rule of thumb:
- OK: constants, status transitions, summary math, input normalisation.
- Not OK: touching DB sessions, Redis, FastAPI, web3, datetime.now(), etc.
"""

import math
import re
from enum import Enum

from bomb_round.domain.errors import RoundConflictError, RoundValidationError

MIN_TILE_OPTION = 2
MAX_TILE_OPTION = 7
DEFAULT_ROW_COUNT = 20
MAX_GENERATED_ROWS = 200
HOUSE_EDGE = 0.05
BOMBS_PER_ROW = 1
MAX_TOTAL_MULTIPLIER = 1000
ROW_SAFETY_MARGIN = 5

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class SessionStatus(str, Enum):
    pending = "pending"
    active = "active"
    cashout = "cashout"
    completed = "completed"
    lost = "lost"
    revealed = "revealed"
    submitted = "submitted"


# Statuses reached once the player can no longer act on the rows.
FINAL_STATUSES = frozenset(
    {
        SessionStatus.lost,
        SessionStatus.cashout,
        SessionStatus.completed,
        SessionStatus.revealed,
    }
)
TERMINAL_STATUSES = FINAL_STATUSES | {SessionStatus.submitted}
# Only these may be deleted by expiry; everything else is kept for audit.
PRUNABLE_STATUSES = frozenset({SessionStatus.pending, SessionStatus.active})

STATUS_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.pending: frozenset({SessionStatus.active}),
    SessionStatus.active: frozenset(
        {
            SessionStatus.active,
            SessionStatus.completed,
            SessionStatus.lost,
            SessionStatus.cashout,
        }
    ),
    # lost keeps its status on reveal; the bomb position already happened.
    SessionStatus.lost: frozenset({SessionStatus.lost, SessionStatus.submitted}),
    SessionStatus.cashout: frozenset({SessionStatus.revealed, SessionStatus.submitted}),
    SessionStatus.completed: frozenset({SessionStatus.revealed, SessionStatus.submitted}),
    SessionStatus.revealed: frozenset({SessionStatus.revealed, SessionStatus.submitted}),
    SessionStatus.submitted: frozenset(),
}


def ensure_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Raise a conflict unless ``current -> target`` is a defined transition."""
    allowed = STATUS_TRANSITIONS[SessionStatus(current)]
    if SessionStatus(target) not in allowed:
        raise RoundConflictError(
            "INVALID_TRANSITION",
            f"Cannot move session from {SessionStatus(current).value} to {SessionStatus(target).value}",
        )


def reveal_status(current: SessionStatus) -> SessionStatus:
    """Status a session takes when its seeds are disclosed."""
    current = SessionStatus(current)
    if current not in TERMINAL_STATUSES:
        raise RoundConflictError("SESSION_NOT_FINAL")
    if current in (SessionStatus.lost, SessionStatus.submitted):
        return current
    return SessionStatus.revealed


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def build_round_summary(completed_rows: int, multiplier: float) -> dict:
    """Derive the round summary from persisted progress only.

    Returns a dict compatible with RoundSummarySchema.
    """
    safe_multiplier = multiplier if math.isfinite(multiplier) and multiplier > 0 else 1.0
    completed_rows = max(0, int(completed_rows))
    return {
        "xp": max(10, completed_rows * 100),
        "kills": completed_rows,
        "time_alive": max(1, completed_rows * 30),
        "score": max(1, round_half_up(safe_multiplier * 1000)),
        "multiplier": safe_multiplier,
        "completed_rows": completed_rows,
    }


def clamp_tile(value: int) -> int:
    return min(max(int(value), MIN_TILE_OPTION), MAX_TILE_OPTION)


def normalize_tile_range(minimum: int | None, maximum: int | None) -> tuple[int, int]:
    """Clamp a requested tile range to the supported options."""
    low = clamp_tile(MIN_TILE_OPTION if minimum is None else minimum)
    high = clamp_tile(MAX_TILE_OPTION if maximum is None else maximum)
    if high < low:
        high = low
    return low, high


def normalize_address(address: str | None) -> str:
    if not isinstance(address, str) or not ADDRESS_PATTERN.match(address):
        raise RoundValidationError("ADDRESS_REQUIRED")
    return address.lower()


def parse_wager(wager_wei) -> int:
    """Parse a wager given in wei. Must be a positive integer."""
    if isinstance(wager_wei, bool):
        raise RoundValidationError("INVALID_WAGER")
    try:
        value = int(str(wager_wei).strip())
    except (TypeError, ValueError):
        raise RoundValidationError("INVALID_WAGER")
    if value <= 0:
        raise RoundValidationError("INVALID_WAGER")
    return value
