"""Data model types for bucketsync reconciliation.

These dataclasses describe one side of a reconciliation pass each (local
files, remote objects) and the classification produced by comparing them.
All of them are immutable snapshots built fresh for every pass.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

# Custom metadata names (sent as ``x-amz-meta-<name>``)
METADATA_HASH = "md5-hash"
METADATA_LOCAL_FILE_DATE = "local-file-date"

ISO8601_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


@dataclass(frozen=True)
class FileEntry:
    """A file or directory in the local tree.

    Attributes:
        relative_key: ``/``-delimited key relative to the scanned root, with
            the key prefix prepended.
        absolute_path: Absolute path of the file or directory.
        is_directory: Whether the entry is a directory.
        size_bytes: File size (0 for directories).
        mtime_epoch: Modification time as epoch seconds.
    """

    relative_key: str
    absolute_path: Path
    is_directory: bool = False
    size_bytes: int = 0
    mtime_epoch: float = 0.0


@dataclass(frozen=True)
class ObjectEntry:
    """Full metadata for one remote object.

    Attributes:
        key: The full object key in the bucket.
        relative_key: Key relative to the reconciled prefix ("" until the
            remote map assigns it).
        content_hash: Explicitly stored content hash (hex MD5), if any.
        etag: Transport-level entity tag, quotes stripped.
        size_bytes: Object size in bytes.
        last_modified: Server-side last-modified time (timezone-aware).
        local_file_date: Origin file's modification time recorded at upload.
        content_type: MIME type.
        metadata: Custom metadata, names without the ``x-amz-meta-`` prefix.
    """

    key: str
    relative_key: str = ""
    content_hash: str | None = None
    etag: str = ""
    size_bytes: int = 0
    last_modified: datetime | None = None
    local_file_date: datetime | None = None
    content_type: str = "application/octet-stream"
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def effective_hash(self) -> str:
        """The stored hash, falling back to the entity tag.

        The entity tag is only a content hash for single-part uploads, so
        the fallback is a weak equality check.
        """
        return (self.content_hash or self.etag).strip('"').lower()

    @property
    def effective_timestamp(self) -> datetime | None:
        """The uploader's file date when recorded, else last-modified."""
        return self.local_file_date or self.last_modified


@dataclass(frozen=True)
class DiscrepancyResult:
    """Classification of every key in the local/remote key union.

    The five sets are disjoint and together cover the union exactly.
    """

    only_on_server: frozenset[str] = frozenset()
    only_on_client: frozenset[str] = frozenset()
    updated_on_server: frozenset[str] = frozenset()
    updated_on_client: frozenset[str] = frozenset()
    synchronized: frozenset[str] = frozenset()

    OUTCOMES = (
        "only_on_server",
        "only_on_client",
        "updated_on_server",
        "updated_on_client",
        "synchronized",
    )

    def __iter__(self) -> Iterator[tuple[str, frozenset[str]]]:
        for outcome in self.OUTCOMES:
            yield outcome, getattr(self, outcome)

    @property
    def all_keys(self) -> frozenset[str]:
        return frozenset().union(*(keys for _, keys in self))

    @property
    def in_sync(self) -> bool:
        """True when every key is synchronized."""
        return all(not keys for outcome, keys in self if outcome != "synchronized")


def format_iso8601(dt: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with millisecond precision.

    Example: ``2024-01-01T00:00:00.000Z``.
    """
    dt = dt.astimezone(timezone.utc)
    return dt.strftime(ISO8601_FORMAT)[:-4] + "Z"


def parse_iso8601(value: str) -> datetime | None:
    """Parse an ISO 8601 UTC timestamp, with or without fractional seconds.

    Returns:
        A timezone-aware datetime, or None if the value cannot be parsed.
    """
    for fmt in (ISO8601_FORMAT, "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(value.strip(), fmt).replace(tzinfo=timezone.utc)
        except (ValueError, TypeError, AttributeError):
            continue
    return None
