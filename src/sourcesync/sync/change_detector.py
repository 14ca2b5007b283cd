"""
Change detection for remote items.

Timestamps from upstream arrive as epoch seconds (Scrapbox), epoch
milliseconds (Gmail) or datetimes read back from the DB. All of them are
normalized to naive UTC at millisecond precision before comparison, so an
item stored on one run compares equal to the same item fetched on the next.
"""
import enum
from datetime import datetime, timezone
from typing import Optional, Union

from sourcesync.models.item import SyncableItem


class ChangeKind(enum.Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


def normalize_timestamp(value: datetime) -> datetime:
    """Convert to naive UTC and truncate to milliseconds."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def from_epoch_seconds(value: Union[int, float, str]) -> datetime:
    return normalize_timestamp(datetime.fromtimestamp(float(value), tz=timezone.utc))


def from_epoch_millis(value: Union[int, float, str]) -> datetime:
    millis = int(value)
    seconds, rem = divmod(millis, 1000)
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=rem * 1000)


def decide(
    remote_id: str,
    remote_updated_at: datetime,
    local: Optional[SyncableItem],
) -> ChangeKind:
    """
    Classify a remote item against its stored projection.

    NEW when nothing is stored, CHANGED only when the remote timestamp is
    strictly newer than the stored one, UNCHANGED otherwise (including a
    remote timestamp that went backwards).
    """
    if local is None:
        return ChangeKind.NEW
    if local.remote_id != remote_id:
        raise ValueError(
            f"Stored item {local.remote_id!r} does not match remote id {remote_id!r}"
        )
    if normalize_timestamp(local.remote_updated_at) < normalize_timestamp(remote_updated_at):
        return ChangeKind.CHANGED
    return ChangeKind.UNCHANGED
