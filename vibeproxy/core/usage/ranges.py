from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

_RANGE_ALIASES = {
    "24h": "24h",
    "day": "24h",
    "1d": "24h",
    "7d": "7d",
    "week": "7d",
    "30d": "30d",
    "month": "30d",
    "all": "all",
    "all-time": "all",
    "all_time": "all",
}


class BucketGranularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"

    def floor(self, value: datetime) -> datetime:
        if self is BucketGranularity.HOUR:
            return value.replace(minute=0, second=0, microsecond=0)
        if self is BucketGranularity.DAY:
            return value.replace(hour=0, minute=0, second=0, microsecond=0)
        return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    def next(self, bucket_start: datetime) -> datetime:
        if self is BucketGranularity.HOUR:
            return bucket_start + timedelta(hours=1)
        if self is BucketGranularity.DAY:
            return bucket_start + timedelta(days=1)
        if bucket_start.month == 12:
            return bucket_start.replace(year=bucket_start.year + 1, month=1)
        return bucket_start.replace(month=bucket_start.month + 1)

    def label(self, bucket_start: datetime) -> str:
        if self is BucketGranularity.HOUR:
            return bucket_start.strftime("%Y-%m-%d %H:00")
        if self is BucketGranularity.DAY:
            return bucket_start.strftime("%Y-%m-%d")
        return bucket_start.strftime("%Y-%m")


class UsageRange(str, Enum):
    LAST_24_HOURS = "24h"
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    ALL = "all"

    @classmethod
    def parse(cls, value: str | UsageRange | None) -> UsageRange:
        if isinstance(value, UsageRange):
            return value
        key = _RANGE_ALIASES.get((value or "").strip().lower())
        if key is None:
            return cls.LAST_7_DAYS
        return cls(key)

    @property
    def duration(self) -> timedelta | None:
        if self is UsageRange.LAST_24_HOURS:
            return timedelta(hours=24)
        if self is UsageRange.LAST_7_DAYS:
            return timedelta(days=7)
        if self is UsageRange.LAST_30_DAYS:
            return timedelta(days=30)
        return None

    @property
    def granularity(self) -> BucketGranularity:
        if self is UsageRange.LAST_24_HOURS:
            return BucketGranularity.HOUR
        if self is UsageRange.ALL:
            return BucketGranularity.MONTH
        return BucketGranularity.DAY

    def since(self, now: datetime) -> datetime | None:
        duration = self.duration
        if duration is None:
            return None
        return now - duration
