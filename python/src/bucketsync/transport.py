"""Signed single-request HTTP transport for bucketsync.

Sends one header-authenticated request at a time over an ``httpx.Client``
and maps failures onto the bucketsync error taxonomy:

    - network errors, timeouts and 5xx responses -> TransientTransportError
    - 401 / 403 responses                       -> AuthenticationError
    - any other 4xx response                    -> RemoteError

Per-request timeouts are enforced here; batch-level concerns (retries,
parallelism) belong to BatchExecutor.
"""

import email.utils
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from bucketsync.auth import (
    METADATA_HEADER_PREFIX,
    Credential,
    Signer,
    object_resource_path,
    url_escape,
)
from bucketsync.errors import AuthenticationError, RemoteError, TransientTransportError
from bucketsync.models import METADATA_HASH, METADATA_LOCAL_FILE_DATE, ObjectEntry, parse_iso8601
from bucketsync.xml_utils import parse_error, parse_list_objects

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_PAGE_SIZE = 1000


@dataclass(frozen=True)
class TransportResponse:
    """Status, headers and body of one completed request."""

    status: int
    headers: Mapping[str, str]
    body: bytes


class HttpTransport:
    """Executes signed requests against one bucket of an S3-compatible service.

    Attributes:
        endpoint: Base URL of the service (no trailing slash).
        bucket: The bucket all object operations address.
        credential: Credential used to sign every request.
    """

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        credential: Credential,
        signer: Signer | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        """Initialize the transport.

        Args:
            endpoint: Base URL, e.g. ``https://s3.amazonaws.com``.
            bucket: Bucket name.
            credential: Signing credential.
            signer: Signer instance; a new one is created when omitted.
            timeout: Per-request timeout in seconds.
            client: Preconfigured httpx client (tests pass one with a
                MockTransport); owned by the caller when given.
            page_size: ``max-keys`` for listing requests.
        """
        self.endpoint = endpoint.rstrip("/")
        self.bucket = bucket
        self.credential = credential
        self.signer = signer or Signer()
        self.page_size = page_size
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Close the underlying HTTP client if this transport created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- Single request ------------------------------------------------------------

    def execute_signed(
        self,
        verb: str,
        resource_path: str,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> TransportResponse:
        """Sign and send one request.

        Args:
            verb: HTTP method.
            resource_path: URI-encoded path and query, e.g. ``/bucket/key``.
            headers: Extra request headers (participating ones are signed).
            body: Request body, if any.

        Returns:
            The response of a 2xx/3xx request.

        Raises:
            TransientTransportError: On network failure or a 5xx response.
            AuthenticationError: On a 401 or 403 response.
            RemoteError: On any other 4xx response.
        """
        signed = self.signer.sign_headers(verb, resource_path, headers, self.credential)
        url = f"{self.endpoint}{resource_path}"

        start = time.monotonic()
        try:
            response = self._client.request(verb, url, headers=signed, content=body)
        except httpx.TransportError as exc:
            raise TransientTransportError(f"{verb} {resource_path} failed: {exc}") from exc
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        logger.debug(
            "%s %s -> %d",
            verb,
            resource_path,
            response.status_code,
            extra={"status": response.status_code, "duration_ms": duration_ms},
        )
        _raise_for_status(verb, resource_path, response)
        return TransportResponse(
            status=response.status_code, headers=response.headers, body=response.content
        )

    # -- Object operations ---------------------------------------------------------

    def fetch_metadata(self, key: str) -> ObjectEntry:
        """HEAD one object and return its full metadata."""
        response = self.execute_signed("HEAD", object_resource_path(self.bucket, key))
        return object_entry_from_headers(key, response.headers)

    def list_objects(self, prefix: str) -> list[str]:
        """Return every key in the bucket starting with ``prefix``, across pages."""
        keys: list[str] = []
        marker = ""
        while True:
            query = f"max-keys={self.page_size}&prefix={url_escape(prefix)}"
            if marker:
                query += f"&marker={url_escape(marker)}"
            response = self.execute_signed("GET", f"{object_resource_path(self.bucket)}?{query}")
            page = parse_list_objects(response.body)
            keys.extend(page.keys)
            if not page.is_truncated or not page.next_marker:
                break
            marker = page.next_marker
        return keys


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def object_entry_from_headers(key: str, headers: Mapping[str, str]) -> ObjectEntry:
    """Build an ObjectEntry from HEAD/GET response headers.

    Args:
        key: The object key.
        headers: Response headers (case-insensitive mapping expected).

    Returns:
        The ObjectEntry; ``relative_key`` is left empty.
    """
    metadata = {
        name.lower()[len(METADATA_HEADER_PREFIX) :]: value
        for name, value in headers.items()
        if name.lower().startswith(METADATA_HEADER_PREFIX)
    }
    local_file_date = None
    if METADATA_LOCAL_FILE_DATE in metadata:
        local_file_date = parse_iso8601(metadata[METADATA_LOCAL_FILE_DATE])

    try:
        size = int(headers.get("content-length", "0") or 0)
    except ValueError:
        size = 0

    return ObjectEntry(
        key=key,
        content_hash=metadata.get(METADATA_HASH) or None,
        etag=_strip_etag(headers.get("etag", "")),
        size_bytes=size,
        last_modified=_parse_http_date(headers.get("last-modified", "")),
        local_file_date=local_file_date,
        content_type=headers.get("content-type", "application/octet-stream"),
        metadata=metadata,
    )


def _raise_for_status(verb: str, resource_path: str, response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return

    error = parse_error(response.content)
    detail = error.message or response.reason_phrase
    message = f"{verb} {resource_path} returned {status}: {detail}"

    if status >= 500:
        raise TransientTransportError(message, status=status)
    if status in (401, 403):
        raise AuthenticationError(message, remote_code=error.code)
    raise RemoteError(message, status=status, remote_code=error.code)


def _strip_etag(etag: str) -> str:
    """Strip weak-validator prefix and surrounding quotes from an ETag."""
    etag = etag.strip()
    if etag.startswith("W/"):
        etag = etag[2:]
    if etag.startswith('"') and etag.endswith('"'):
        etag = etag[1:-1]
    return etag


def _parse_http_date(date_str: str) -> datetime | None:
    """Parse an HTTP date string into a timezone-aware datetime.

    Args:
        date_str: An HTTP date string (RFC 1123, RFC 850, or asctime).

    Returns:
        A timezone-aware datetime in UTC, or None if parsing fails.
    """
    if not date_str:
        return None
    try:
        dt = email.utils.parsedate_to_datetime(date_str)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
