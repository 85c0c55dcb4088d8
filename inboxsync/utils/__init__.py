"""Utility modules."""

from inboxsync.utils.datetime_parsing import as_utc, from_epoch_millis, now_utc
from inboxsync.utils.normalization import normalize_email, parse_history_id

__all__ = [
    # Datetime
    "as_utc",
    "from_epoch_millis",
    "now_utc",
    # Normalization
    "normalize_email",
    "parse_history_id",
]
