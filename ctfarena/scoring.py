"""
Challenge point values.

Dynamic challenges follow the CTFd decay curve:

    value = ((minimum - initial) / decay ** 2) * solves ** 2 + initial

floored to an integer and clamped to [minimum, initial]. The value drops
slowly for the first solves, then faster, and sits at ``minimum`` once
``decay`` users have solved the challenge.
"""

import math
from typing import Optional

from .models import Challenge

DEFAULT_DECAY = 50
DEFAULT_MINIMUM_RATIO = 0.25


def decay_value(
    solves: int,
    initial: int,
    minimum: int,
    decay: int,
) -> int:
    """
    Point value of a dynamic challenge after ``solves`` solves.

    @param solves: Number of users who solved the challenge so far
    @param initial: Value before the first solve
    @param minimum: Floor reached after ``decay`` solves
    @param decay: Number of solves needed to reach the floor
    @return: Integer point value
    """
    if solves <= 0:
        return initial
    if solves >= decay:
        return minimum

    value = math.floor(((minimum - initial) / (decay ** 2)) * (solves ** 2) + initial)
    return max(minimum, min(initial, value))


def current_value(
    challenge: Challenge,
    solves: Optional[int] = None,
    default_decay: int = DEFAULT_DECAY,
    minimum_ratio: float = DEFAULT_MINIMUM_RATIO,
) -> int:
    """
    Points a solve of ``challenge`` is worth right now.

    @param challenge: Loaded challenge
    @param solves: Solve count to price against (defaults to challenge.solve_count)
    @param default_decay: Decay used when the challenge does not set one
    @param minimum_ratio: Share of the base points used when no minimum is set
    @return: Integer point value
    """
    dynamic = challenge.dynamic_scoring
    if not dynamic.enabled:
        return challenge.points

    if solves is None:
        solves = challenge.solve_count

    initial = dynamic.initial or challenge.points
    minimum = dynamic.minimum or math.floor(challenge.points * minimum_ratio)
    decay = dynamic.decay or default_decay

    return decay_value(solves, initial, minimum, decay)
