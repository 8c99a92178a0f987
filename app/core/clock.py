from datetime import datetime, timezone


def utcnow() -> datetime:
    """当前 UTC 时间（naive），与数据库中存储的时间戳保持一致"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """带时区的时间转换为 naive UTC，naive 时间视为已是 UTC"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
