"""Delegated (pre-signed) URLs for bucketsync.

A delegated URL grants time-bounded, credential-free access to exactly one
operation on one resource. The signature covers the verb, the resource path,
the expiry epoch and, for uploads, the content type and every custom header
present when the URL was minted. The server rebuilds the same string from
the request it receives, so changing any of these invalidates the URL; no
local enforcement is involved.

URL layout (path-style)::

    {endpoint}/{bucket}/{key}?AWSAccessKeyId=..&Expires=..&Signature=..
"""

import logging
import time
import urllib.parse
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

from bucketsync import metrics
from bucketsync.auth import (
    AMZ_HEADER_PREFIX,
    METADATA_HEADER_PREFIX,
    Credential,
    Signer,
    url_escape,
)
from bucketsync.errors import InvalidRequestError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://s3.amazonaws.com"

# Query-string auth parameter names
ACCESS_ID_PARAM = "AWSAccessKeyId"
EXPIRES_PARAM = "Expires"
SIGNATURE_PARAM = "Signature"
_AUTH_PARAMS = frozenset({ACCESS_ID_PARAM, EXPIRES_PARAM, SIGNATURE_PARAM})


@dataclass(frozen=True)
class BoundMetadata:
    """Content metadata a PUT URL is cryptographically bound to.

    Attributes:
        content_type: The Content-Type the upload must carry.
        headers: Normalized (lower-case name, value) pairs, sorted by name.
    """

    content_type: str
    headers: tuple[tuple[str, str], ...] = ()

    def as_request_headers(self) -> dict[str, str]:
        """Headers an uploader must send for the URL to authenticate."""
        result = {"Content-Type": self.content_type}
        result.update(self.headers)
        return result


@dataclass(frozen=True)
class DelegatedUrl:
    """A minted delegated URL and the inputs its signature covers.

    Attributes:
        target_url: Endpoint plus resource path, without auth parameters.
        verb: The HTTP method the URL authorizes.
        resource_path: The signed resource path (``/bucket/key``).
        access_id: Access identifier of the minting credential.
        expiry_epoch_seconds: Absolute expiry as a Unix epoch.
        signature: URL-escaped base64 signature.
        bound_metadata: Content metadata bound into a PUT URL, if any.
    """

    target_url: str
    verb: str
    resource_path: str
    access_id: str
    expiry_epoch_seconds: int
    signature: str
    bound_metadata: BoundMetadata | None = None

    @property
    def url(self) -> str:
        """The full URL including the query-string auth parameters."""
        separator = "&" if "?" in self.target_url else "?"
        return (
            f"{self.target_url}{separator}"
            f"{ACCESS_ID_PARAM}={url_escape(self.access_id)}"
            f"&{EXPIRES_PARAM}={self.expiry_epoch_seconds}"
            f"&{SIGNATURE_PARAM}={self.signature}"
        )

    def is_expired(self, now_epoch: float) -> bool:
        return is_expired(self, now_epoch)


class DelegatedUrlFactory:
    """Mints and checks delegated URLs.

    Attributes:
        endpoint: Base URL of the storage service (no trailing slash).
        signer: The Signer used to build and sign canonical strings.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        signer: Signer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the factory.

        Args:
            endpoint: Base URL of the storage service.
            signer: Signer instance; a new one is created when omitted.
            clock: Returns the current epoch; only used for diagnostics.
        """
        self.endpoint = endpoint.rstrip("/")
        self.signer = signer or Signer()
        self._clock = clock

    def create_get_url(
        self, resource_path: str, expiry: int | float | datetime, credential: Credential
    ) -> DelegatedUrl:
        """Mint a URL granting GET access to ``resource_path`` until ``expiry``."""
        return self.create_signed_url("GET", resource_path, expiry, credential)

    def create_head_url(
        self, resource_path: str, expiry: int | float | datetime, credential: Credential
    ) -> DelegatedUrl:
        """Mint a URL granting HEAD access to ``resource_path`` until ``expiry``."""
        return self.create_signed_url("HEAD", resource_path, expiry, credential)

    def create_delete_url(
        self, resource_path: str, expiry: int | float | datetime, credential: Credential
    ) -> DelegatedUrl:
        """Mint a URL granting DELETE access to ``resource_path`` until ``expiry``."""
        return self.create_signed_url("DELETE", resource_path, expiry, credential)

    def create_put_url(
        self,
        resource_path: str,
        expiry: int | float | datetime,
        credential: Credential,
        content_type: str,
        custom_headers: Mapping[str, str] | None = None,
    ) -> DelegatedUrl:
        """Mint an upload URL bound to a content type and custom headers.

        Custom header names outside the ``x-amz-`` namespace are placed under
        ``x-amz-meta-`` so every one of them is covered by the signature.

        Args:
            resource_path: Target resource, e.g. ``/bucket/key``.
            expiry: Absolute expiry epoch (or timezone-aware datetime).
            credential: Credential signing the URL.
            content_type: Content-Type the upload must send.
            custom_headers: Metadata headers the upload must send.

        Returns:
            The delegated URL with its bound metadata.

        Raises:
            InvalidRequestError: If a header name is empty, or two names bind the
                same signed header (e.g. ``foo`` and ``x-amz-meta-foo``).
        """
        return self.create_signed_url(
            "PUT",
            resource_path,
            expiry,
            credential,
            content_type=content_type,
            custom_headers=custom_headers or {},
        )

    def create_signed_url(
        self,
        verb: str,
        resource_path: str,
        expiry: int | float | datetime,
        credential: Credential,
        content_type: str | None = None,
        custom_headers: Mapping[str, str] | None = None,
    ) -> DelegatedUrl:
        """Mint a delegated URL for any verb.

        An expiry in the past is accepted; rejecting it is up to the
        endpoint that receives the request.

        Raises:
            InvalidRequestError: On a malformed resource path or expiry.
        """
        expiry_epoch = _to_epoch(expiry)
        bound = None
        if content_type is not None or custom_headers is not None:
            bound = BoundMetadata(
                content_type=content_type or "",
                headers=_bind_headers(custom_headers or {}),
            )

        canonical = self._canonical(verb, resource_path, expiry_epoch, bound)
        signature = url_escape(self.signer.sign(canonical, credential))

        if expiry_epoch <= self._clock():
            logger.debug("Minted already-expired %s URL for %s", verb.upper(), resource_path)

        if metrics.urls_signed_total is not None:
            metrics.urls_signed_total.labels(verb=verb.upper()).inc()

        return DelegatedUrl(
            target_url=f"{self.endpoint}{resource_path}",
            verb=verb.upper(),
            resource_path=resource_path,
            access_id=credential.access_id,
            expiry_epoch_seconds=expiry_epoch,
            signature=signature,
            bound_metadata=bound,
        )

    def verify(
        self,
        delegated_url: DelegatedUrl,
        credential: Credential,
        *,
        verb: str | None = None,
        resource_path: str | None = None,
        content_type: str | None = None,
        custom_headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Check a delegated URL's signature against the values presented.

        Rebuilds the canonical string the way the receiving endpoint would,
        from the verb, resource, content type and custom headers actually
        presented with the request. Arguments left as None default to what
        was bound at minting time. Expiry is not checked; use is_expired().

        Returns:
            True if the signature covers exactly the presented values.
        """
        if delegated_url.access_id != credential.access_id:
            return False

        bound = delegated_url.bound_metadata
        presented = bound.headers if bound else ()
        if custom_headers is not None:
            try:
                presented = _bind_headers(custom_headers)
            except InvalidRequestError:
                return False
        if content_type is not None or custom_headers is not None:
            bound = BoundMetadata(
                content_type=(
                    content_type
                    if content_type is not None
                    else (bound.content_type if bound else "")
                ),
                headers=presented,
            )

        canonical = self._canonical(
            verb or delegated_url.verb,
            resource_path or delegated_url.resource_path,
            delegated_url.expiry_epoch_seconds,
            bound,
        )
        return self.signer.verify(canonical, credential, delegated_url.signature)

    def _canonical(
        self,
        verb: str,
        resource_path: str,
        expiry_epoch: int,
        bound: BoundMetadata | None,
    ) -> str:
        if bound is None:
            return self.signer.build_canonical_request(
                verb, resource_path, content_hash="", content_type="", timestamp=expiry_epoch
            )
        return self.signer.build_canonical_request(
            verb,
            resource_path,
            headers=bound.headers,
            content_hash="",
            content_type=bound.content_type,
            timestamp=expiry_epoch,
        )


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def is_expired(delegated_url: DelegatedUrl, now_epoch: float) -> bool:
    """Return True once ``now_epoch`` has reached the URL's expiry."""
    return now_epoch >= delegated_url.expiry_epoch_seconds


def parse_delegated_url(url: str, verb: str = "GET") -> DelegatedUrl:
    """Rebuild a DelegatedUrl from a path-style URL string.

    Bound metadata is not recoverable from the URL; the result is useful for
    expiry checks and for verify() with explicitly presented metadata.

    Args:
        url: A URL minted by DelegatedUrlFactory.
        verb: The HTTP method the URL is expected to authorize.

    Returns:
        The parsed DelegatedUrl.

    Raises:
        InvalidRequestError: If an auth parameter is missing or malformed.
    """
    parts = urllib.parse.urlsplit(url)
    auth: dict[str, str] = {}
    kept: list[str] = []
    for pair in parts.query.split("&"):
        if not pair:
            continue
        name, _, value = pair.partition("=")
        if name in _AUTH_PARAMS:
            auth[name] = value
        else:
            kept.append(pair)

    missing = _AUTH_PARAMS - auth.keys()
    if missing:
        raise InvalidRequestError(
            f"Delegated URL is missing parameters: {', '.join(sorted(missing))}"
        )
    try:
        expiry = int(auth[EXPIRES_PARAM])
    except ValueError:
        raise InvalidRequestError(
            f"Invalid {EXPIRES_PARAM} value: {auth[EXPIRES_PARAM]!r}"
        ) from None

    resource_path = parts.path or "/"
    if kept:
        resource_path = f"{resource_path}?{'&'.join(kept)}"

    return DelegatedUrl(
        target_url=f"{parts.scheme}://{parts.netloc}{resource_path}",
        verb=verb.upper(),
        resource_path=resource_path,
        access_id=urllib.parse.unquote(auth[ACCESS_ID_PARAM]),
        expiry_epoch_seconds=expiry,
        signature=auth[SIGNATURE_PARAM],
    )


def _bind_headers(custom_headers: Mapping[str, str]) -> tuple[tuple[str, str], ...]:
    """Normalize custom headers into signed ``x-amz-`` pairs, sorted by name."""
    bound: dict[str, str] = {}
    for name, value in custom_headers.items():
        lower_name = name.strip().lower()
        if not lower_name:
            raise InvalidRequestError("Custom header names must not be empty.")
        if not lower_name.startswith(AMZ_HEADER_PREFIX):
            lower_name = METADATA_HEADER_PREFIX + lower_name
        if lower_name in bound:
            raise InvalidRequestError(f"Custom header {name!r} duplicates {lower_name!r}.")
        bound[lower_name] = str(value)
    return tuple(sorted(bound.items()))


def _to_epoch(expiry: int | float | datetime) -> int:
    """Convert an expiry to whole epoch seconds."""
    if isinstance(expiry, datetime):
        if expiry.tzinfo is None:
            raise InvalidRequestError("Expiry datetime must be timezone-aware.")
        return int(expiry.timestamp())
    if isinstance(expiry, bool) or not isinstance(expiry, (int, float)):
        raise InvalidRequestError(f"Invalid expiry: {expiry!r}")
    return int(expiry)
