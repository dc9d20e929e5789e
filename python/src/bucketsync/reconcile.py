"""Local/remote reconciliation for bucketsync.

Compares a snapshot of a local directory tree with the objects under a
remote key prefix and classifies every key into exactly one of five sets:
only on the server, only on the client, updated on the server, updated on
the client, or synchronized.

Comparison rules for a key present on both sides:
    - A local directory is synchronized as long as it exists remotely;
      directory timestamps are ignored.
    - Equal content hashes mean synchronized, whatever the timestamps.
    - Otherwise the newer timestamp wins. The remote side uses the
      ``local-file-date`` metadata recorded at upload time when present,
      since it is immune to client/server clock skew, and falls back to
      the server's last-modified time.
    - Equal timestamps with different hashes cannot be ordered and raise
      InconsistentStateError.
"""

import dataclasses
import functools
import hashlib
import logging
import os
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from bucketsync import metrics
from bucketsync.auth import METADATA_HEADER_PREFIX
from bucketsync.errors import InconsistentStateError, LocalIOError, RemoteMetadataError
from bucketsync.executor import (
    BatchExecutor,
    BatchListener,
    BatchProgress,
    CancellationToken,
    Operation,
)
from bucketsync.models import (
    METADATA_HASH,
    METADATA_LOCAL_FILE_DATE,
    DiscrepancyResult,
    FileEntry,
    ObjectEntry,
    format_iso8601,
)

logger = logging.getLogger(__name__)

KEY_DELIMITER = "/"

# Hashing chunk size: 64 KB
_CHUNK_SIZE = 64 * 1024

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


class RemoteSource(Protocol):
    """What the reconciler needs from the remote side."""

    def list_objects(self, prefix: str) -> list[str]:
        """Return every object key starting with ``prefix``."""
        ...

    def fetch_metadata(self, key: str) -> ObjectEntry:
        """Return full metadata (hash, timestamps, custom metadata) for a key."""
        ...


class Reconciler:
    """Builds local and remote key maps and diffs them.

    Maps are built fresh for every call and never cached.

    Attributes:
        executor: Runs the per-key remote metadata fetches.
    """

    def __init__(
        self,
        executor: BatchExecutor | None = None,
        hasher: Callable[[Path], str] | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            executor: BatchExecutor for remote metadata; a default one is
                created when omitted.
            hasher: ``Path -> hex digest`` used for local files; defaults to
                compute_file_md5().
        """
        self.executor = executor or BatchExecutor()
        self._hash_file = hasher or compute_file_md5

    # -- Local side ----------------------------------------------------------------

    def build_local_map(self, root: str | Path, key_prefix: str = "") -> dict[str, FileEntry]:
        """Snapshot a local directory tree as a key -> FileEntry map.

        Every file and directory below ``root`` (not ``root`` itself) gets an
        entry keyed by its ``/``-delimited path relative to ``root``. A
        non-empty ``key_prefix`` is prepended followed by ``/``. The tree is
        walked depth-first in name order; symlinked directories are listed
        but not descended into. Never touches the network.

        Args:
            root: Directory to scan.
            key_prefix: Optional prefix for every key.

        Returns:
            The key -> FileEntry map.

        Raises:
            LocalIOError: If ``root`` or anything below it cannot be read.
        """
        root_path = Path(root)
        if not root_path.is_dir():
            raise LocalIOError(str(root_path), f"Local root is not a readable directory: {root}")

        prefix = key_prefix.strip(KEY_DELIMITER)
        if prefix:
            prefix += KEY_DELIMITER

        entries: dict[str, FileEntry] = {}
        try:
            self._walk(root_path, prefix, entries)
        except OSError as exc:
            raise LocalIOError(
                str(exc.filename or root_path), f"Unable to read local tree under {root}: {exc}"
            ) from exc

        logger.debug("Built local map of %d entries under %s", len(entries), root_path)
        return entries

    def _walk(self, directory: Path, current: str, entries: dict[str, FileEntry]) -> None:
        with os.scandir(directory) as it:
            children = sorted(it, key=lambda e: e.name)
        for child in children:
            key = current + child.name
            is_directory = child.is_dir()
            stat = child.stat()
            entries[key] = FileEntry(
                relative_key=key,
                absolute_path=Path(child.path).absolute(),
                is_directory=is_directory,
                size_bytes=0 if is_directory else stat.st_size,
                mtime_epoch=stat.st_mtime,
            )
            if is_directory and not child.is_symlink():
                self._walk(Path(child.path), key + KEY_DELIMITER, entries)

    # -- Remote side ---------------------------------------------------------------

    def build_remote_map(
        self,
        source: RemoteSource,
        key_prefix: str = "",
        listener: BatchListener | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, ObjectEntry]:
        """Build a relative key -> ObjectEntry map for a remote prefix.

        Keys are listed under the prefix, placeholders are skipped, then full
        metadata for every remaining key is fetched in parallel through the
        executor. The map is either complete or not returned at all.

        Args:
            source: Lists keys and fetches per-key metadata.
            key_prefix: Remote prefix to reconcile (trailing ``/`` optional).
            listener: Optional listener receiving the metadata batch events.
            cancel_token: Token that cancels the metadata batch.

        Returns:
            The relative key -> ObjectEntry map.

        Raises:
            RemoteMetadataError: If metadata for any key could not be fetched,
                or the batch was cancelled before every key was fetched.
        """
        prefix = key_prefix.rstrip(KEY_DELIMITER)
        listed = source.list_objects(prefix)
        keys = [key for key in listed if relative_remote_key(key, prefix)]
        logger.debug(
            "Listed %d remote keys under prefix '%s' (%d placeholders skipped)",
            len(keys),
            prefix,
            len(listed) - len(keys),
        )

        collector = _MetadataCollector(listener)
        operations = [Operation(key, functools.partial(source.fetch_metadata, key)) for key in keys]
        progress = self.executor.run(operations, collector, cancel_token)

        if progress.errors:
            first_cause = next(iter(progress.errors.values()))
            raise RemoteMetadataError(dict(progress.errors)) from first_cause
        if len(collector.objects) < len(keys):
            raise RemoteMetadataError(cancelled=progress.cancelled)

        return populate_remote_map(prefix, collector.objects)

    # -- Comparison ----------------------------------------------------------------

    def diff(
        self, local_map: Mapping[str, FileEntry], remote_map: Mapping[str, ObjectEntry]
    ) -> DiscrepancyResult:
        """Classify every key of the local/remote union.

        Args:
            local_map: Map built by build_local_map().
            remote_map: Map built by build_remote_map().

        Returns:
            The five disjoint outcome sets.

        Raises:
            InconsistentStateError: If a key has different hashes but the
                same timestamp on both sides.
            LocalIOError: If a local file cannot be hashed.
        """
        only_on_server: set[str] = set()
        updated_on_server: set[str] = set()
        updated_on_client: set[str] = set()
        synchronized: set[str] = set()

        for key, remote in remote_map.items():
            local = local_map.get(key)
            if local is None:
                only_on_server.add(key)
                continue

            if local.is_directory:
                synchronized.add(key)
                continue

            if self._local_hash(local) == _remote_hash(remote):
                synchronized.add(key)
                continue

            remote_ms = _remote_time_ms(remote)
            local_ms = epoch_to_ms(local.mtime_epoch)
            if remote_ms is None:
                raise InconsistentStateError(
                    key, f"Remote object '{remote.key}' differs from '{key}' and has no timestamp."
                )
            if remote_ms > local_ms:
                updated_on_server.add(key)
            elif remote_ms < local_ms:
                updated_on_client.add(key)
            else:
                raise InconsistentStateError(
                    key,
                    f"Remote object '{remote.key}' and local file '{local.absolute_path}' "
                    "have the same date but different hash values.",
                )

        classified = synchronized | updated_on_server | updated_on_client
        only_on_client = {key for key in local_map if key not in classified}

        result = DiscrepancyResult(
            only_on_server=frozenset(only_on_server),
            only_on_client=frozenset(only_on_client),
            updated_on_server=frozenset(updated_on_server),
            updated_on_client=frozenset(updated_on_client),
            synchronized=frozenset(synchronized),
        )
        _record_outcomes(result)
        return result

    def reconcile(
        self,
        root: str | Path,
        source: RemoteSource,
        remote_prefix: str = "",
        local_prefix: str = "",
        listener: BatchListener | None = None,
    ) -> DiscrepancyResult:
        """Build both maps and diff them in one pass."""
        local_map = self.build_local_map(root, local_prefix)
        remote_map = self.build_remote_map(source, remote_prefix, listener)
        return self.diff(local_map, remote_map)

    def _local_hash(self, entry: FileEntry) -> str:
        try:
            return self._hash_file(entry.absolute_path).lower()
        except OSError as exc:
            raise LocalIOError(
                str(entry.absolute_path), f"Unable to hash local file {entry.absolute_path}: {exc}"
            ) from exc


class _MetadataCollector(BatchListener):
    """Gathers fetched ObjectEntry values from in-progress events."""

    def __init__(self, forward: BatchListener | None = None) -> None:
        self.objects: list[ObjectEntry] = []
        self._forward = forward

    def on_progress(self, progress: BatchProgress) -> None:
        self.objects.extend(entry for _key, entry in progress.batch)
        if self._forward is not None:
            self._forward.on_progress(progress)

    def on_complete(self, progress: BatchProgress) -> None:
        if self._forward is not None:
            self._forward.on_complete(progress)


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def relative_remote_key(key: str, prefix: str) -> str:
    """Strip ``prefix`` from a listed key.

    Only keys inside the prefix "folder" (``prefix/...``) map to an
    addressable relative key. Anything else matched by the prefix search,
    including the prefix itself and sibling keys such as ``prefixX/..``, is
    a placeholder and yields "".
    """
    prefix = prefix.rstrip(KEY_DELIMITER)
    if not prefix:
        return key
    if not key.startswith(prefix + KEY_DELIMITER):
        return ""
    return key[len(prefix) + 1 :]


def populate_remote_map(prefix: str, objects: list[ObjectEntry]) -> dict[str, ObjectEntry]:
    """Key objects by their relative key, dropping prefix placeholders."""
    remote_map: dict[str, ObjectEntry] = {}
    for obj in objects:
        relative_key = relative_remote_key(obj.key, prefix)
        if relative_key:
            remote_map[relative_key] = dataclasses.replace(obj, relative_key=relative_key)
    return remote_map


def compute_file_md5(path: str | Path) -> str:
    """Return the hex MD5 digest of a file, read in 64 KB chunks."""
    md5 = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            md5.update(chunk)
    return md5.hexdigest()


def epoch_to_ms(epoch: float) -> int:
    """Epoch seconds to whole milliseconds, the resolution of all comparisons."""
    return round(epoch * 1000)


def datetime_to_ms(dt: datetime) -> int:
    """Timezone-aware datetime to whole epoch milliseconds (exact)."""
    return (dt - _EPOCH) // _ONE_MS


def upload_metadata(entry: FileEntry, content_hash: str | None = None) -> dict[str, str]:
    """Custom metadata headers to attach when uploading ``entry``.

    Recording the hash and the file's own modification time lets later
    diffs compare against authoritative values instead of the entity tag
    and the server clock.

    Args:
        entry: The local file being uploaded.
        content_hash: Precomputed hex MD5; computed from the file when None.

    Returns:
        ``x-amz-meta-*`` headers.
    """
    if content_hash is None:
        content_hash = compute_file_md5(entry.absolute_path)
    file_date = _EPOCH + timedelta(milliseconds=epoch_to_ms(entry.mtime_epoch))
    return {
        METADATA_HEADER_PREFIX + METADATA_HASH: content_hash,
        METADATA_HEADER_PREFIX + METADATA_LOCAL_FILE_DATE: format_iso8601(file_date),
    }


def _remote_hash(remote: ObjectEntry) -> str:
    if not remote.content_hash:
        logger.warning(
            "Using the entity tag as the content hash for '%s'; it is missing the '%s' metadata",
            remote.key,
            METADATA_HASH,
            extra={"key": remote.key},
        )
    return remote.effective_hash


def _remote_time_ms(remote: ObjectEntry) -> int | None:
    if remote.local_file_date is None:
        logger.warning(
            "Using the server's last-modified date for '%s'; it may not match local clock time. "
            "Record the '%s' metadata at upload to avoid this",
            remote.key,
            METADATA_LOCAL_FILE_DATE,
            extra={"key": remote.key},
        )
    timestamp = remote.effective_timestamp
    if timestamp is None:
        return None
    return datetime_to_ms(timestamp)


def _record_outcomes(result: DiscrepancyResult) -> None:
    counts = {outcome: len(keys) for outcome, keys in result}
    logger.info(
        "Reconciliation: %d only on server, %d only on client, %d updated on server, "
        "%d updated on client, %d synchronized",
        counts["only_on_server"],
        counts["only_on_client"],
        counts["updated_on_server"],
        counts["updated_on_client"],
        counts["synchronized"],
    )
    if metrics.reconcile_keys_total is not None:
        for outcome, count in counts.items():
            if count:
                metrics.reconcile_keys_total.labels(outcome=outcome).inc(count)
