"""
Priority policy.

Maps a request source to a fixed score (higher is more urgent) and defines
the total orders used everywhere else. Ties on score are always broken by
request creation time, then by row id, so ordering never depends on how a
query happened to return rows.
"""

from datetime import datetime
from typing import Tuple, Union

from ..models.token import TokenSource

PRIORITY_LEVELS = {
    TokenSource.EMERGENCY: 100,
    TokenSource.PAID_PRIORITY: 80,
    TokenSource.FOLLOW_UP: 60,
    TokenSource.ONLINE: 40,
    TokenSource.WALK_IN: 20,
}

EMERGENCY_SCORE = PRIORITY_LEVELS[TokenSource.EMERGENCY]


def score(source: Union[TokenSource, str]) -> int:
    """Return the priority score for a source; unknown sources score 0."""
    try:
        return PRIORITY_LEVELS[TokenSource(source)]
    except ValueError:
        return 0


def rank_key(priority_score: int, created_at: datetime, row_id: int = 0) -> Tuple:
    """Ascending sort key for "who goes first": higher score, then earlier arrival."""
    return (-priority_score, created_at, row_id or 0)


def displacement_key(priority_score: int, created_at: datetime, row_id: int = 0) -> Tuple:
    """Ascending sort key for "who is displaced first": lower score, then later arrival."""
    return (priority_score, _negate(created_at), -(row_id or 0))


def outranks(priority_score: int, other_score: int) -> bool:
    """A requester may only displace occupants strictly below its own score."""
    return priority_score > other_score


def _negate(moment: datetime):
    return datetime.max - moment
