import math
from datetime import datetime, timedelta, timezone

MSK = timezone(timedelta(hours=3))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def fmt_dt_msk(dt: datetime | None) -> str:
    if not dt:
        return "—"
    return ensure_aware(dt).astimezone(MSK).strftime("%d.%m.%Y %H:%M МСК")


def days_left(end_at: datetime | None, now: datetime | None = None) -> int:
    """Whole days remaining, rounded up; 0 once the end has passed."""
    if not end_at:
        return 0
    delta = ensure_aware(end_at) - (now or utcnow())
    return max(0, math.ceil(delta.total_seconds() / 86400))


def to_epoch_seconds(dt: datetime) -> int:
    return int(ensure_aware(dt).timestamp())
