from datetime import datetime
from zoneinfo import ZoneInfo

from appointd.core import config


def local_now() -> datetime:
    """Current clinic-local wall-clock time as a naive datetime."""
    if config.CLINIC_TIMEZONE:
        return datetime.now(ZoneInfo(config.CLINIC_TIMEZONE)).replace(tzinfo=None)
    return datetime.now()


def minute_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute
