from datetime import datetime, timedelta

from services.exceptions import ValidationError

DEFAULT_RUN_HOUR = 3

_DAY_OFFSETS = {
    "daily": 1,
    "weekly": 7,
}


def calculate_next_run(frequency: str, reference: datetime, run_hour: int = DEFAULT_RUN_HOUR) -> datetime:
    """
    Next execution instant for a schedule frequency.

    Runs are placed at `run_hour`:00 in the reference time frame (low-traffic
    hours), always strictly after `reference`:
    - daily   -> reference + 1 day
    - weekly  -> reference + 7 days
    - monthly -> first day of the next calendar month

    Raises:
        ValidationError: unknown frequency or run hour outside 0-23
    """
    if not 0 <= run_hour <= 23:
        raise ValidationError(f"run_hour must be between 0 and 23, got {run_hour}")

    if frequency in _DAY_OFFSETS:
        next_day = reference + timedelta(days=_DAY_OFFSETS[frequency])
    elif frequency == "monthly":
        if reference.month == 12:
            next_day = reference.replace(year=reference.year + 1, month=1, day=1)
        else:
            next_day = reference.replace(month=reference.month + 1, day=1)
    else:
        raise ValidationError(f"Unknown schedule frequency: {frequency!r}")

    return next_day.replace(hour=run_hour, minute=0, second=0, microsecond=0)
