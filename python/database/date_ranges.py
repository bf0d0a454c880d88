"""
Enrollment date range merging.

Overlapping or touching [start, end] intervals collapse into one. Intervals
that reach the calendar bounds keep them: if any input starts at
MIN_PERIOD_DATE the first output does too, and if any input reaches
MAX_PERIOD_DATE so does the last output.
"""

from datetime import datetime
from typing import List, Sequence

from database.models import MIN_PERIOD_DATE, MAX_PERIOD_DATE
from errors import BadRequestError


class OutOfRangeError(BadRequestError):
    """An endpoint lies outside [MIN_PERIOD_DATE, MAX_PERIOD_DATE]"""


def _check_range(value: datetime) -> None:
    if value < MIN_PERIOD_DATE or value > MAX_PERIOD_DATE:
        raise OutOfRangeError(
            f"date {value.isoformat()} is out of bounds "
            f"[{MIN_PERIOD_DATE.isoformat()}, {MAX_PERIOD_DATE.isoformat()}]"
        )


def merge_date_ranges(ranges: Sequence[Sequence[datetime]]) -> List[List[datetime]]:
    """
    Merge overlapping date ranges.

    Args:
        ranges: [start, end] pairs, in any order; reversed pairs are swapped

    Returns:
        Sorted, non-overlapping [start, end] pairs

    Raises:
        BadRequestError: If a pair does not have exactly 2 elements
        OutOfRangeError: If an endpoint is outside the period bounds
    """
    for pair in ranges:
        if len(pair) != 2:
            raise BadRequestError("pair doesn't have exactly 2 elements")
    if not ranges:
        return []

    dates = sorted(
        [min(pair[0], pair[1]), max(pair[0], pair[1])] for pair in ranges
    )

    merged: List[List[datetime]] = []
    saved = list(dates[0])
    for st, en in dates:
        _check_range(st)
        _check_range(en)
        if st <= saved[1]:
            if saved[0] == MIN_PERIOD_DATE:
                saved[0] = st
            # clip instead of extending an open-ended period
            if MAX_PERIOD_DATE in (en, saved[1]):
                saved[1] = min(saved[1], en)
            else:
                saved[1] = max(saved[1], en)
        else:
            merged.append(saved)
            saved = [st, en]
    merged.append(saved)

    if any(MIN_PERIOD_DATE in pair for pair in dates):
        merged[0][0] = MIN_PERIOD_DATE
    if any(MAX_PERIOD_DATE in pair for pair in dates):
        merged[-1][1] = MAX_PERIOD_DATE
    return merged
