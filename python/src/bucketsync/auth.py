"""S3 REST request signing for bucketsync.

Implements the HMAC-SHA1 "AWS" signing scheme used by the S3 REST dialect,
for both header-based auth (Authorization header) and query-string auth
(delegated URLs, see ``bucketsync.presign``).

The string to sign is::

    VERB\\n
    Content-MD5\\n
    Content-Type\\n
    Date (or the expiry epoch for query-string auth)\\n
    x-amz-header:value\\n ...
    /bucket/key?sub-resource

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/userguide/RESTAuthentication.html
"""

import base64
import email.utils
import hashlib
import hmac
import logging
import re
import urllib.parse
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from bucketsync.errors import InvalidRequestError

logger = logging.getLogger(__name__)

# Constants
AUTH_SCHEME = "AWS"
AMZ_HEADER_PREFIX = "x-amz-"
METADATA_HEADER_PREFIX = "x-amz-meta-"
AMZ_DATE_HEADER = "x-amz-date"
RESERVED_HEADERS = frozenset({"content-md5", "content-type", "date"})

# Query parameters that identify a sub-resource and therefore take part in
# the canonical resource. Every other query parameter is ignored.
SIGNED_SUBRESOURCES = frozenset(
    {
        "acl",
        "location",
        "logging",
        "torrent",
        "versioning",
        "uploads",
        "uploadId",
        "partNumber",
        "versionId",
    }
)
RESPONSE_OVERRIDE_PREFIX = "response-"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_FOLD_RE = re.compile(r"[ \t]*(?:\r\n|\r|\n)[ \t]*")

HeaderInput = Mapping[str, str] | Iterable[tuple[str, str]]


@dataclass(frozen=True)
class Credential:
    """An access identifier and its secret key.

    The secret key is stored as bytes and never appears in ``repr()``.

    Attributes:
        access_id: The public access key identifier.
        secret_key: The secret key used to key the HMAC.
    """

    access_id: str
    secret_key: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if not self.access_id:
            raise InvalidRequestError("Credential access id must not be empty.")
        if isinstance(self.secret_key, str):
            object.__setattr__(self, "secret_key", self.secret_key.encode("utf-8"))


class Signer:
    """Builds canonical strings and computes or checks request signatures.

    The signer holds no state; a single instance may be shared freely
    between threads.
    """

    # -- Canonical request construction ----------------------------------------

    def build_canonical_request(
        self,
        verb: str,
        resource_path: str,
        headers: HeaderInput | None = None,
        content_hash: str | None = None,
        content_type: str | None = None,
        timestamp: str | int = "",
    ) -> str:
        """Build the canonical string to sign.

        Only ``Content-MD5``, ``Content-Type``, ``Date`` and headers in the
        ``x-amz-`` namespace take part; every other header is ignored. Header
        names are compared case-insensitively and repeated headers are joined
        with commas in the order supplied.

        Args:
            verb: HTTP method.
            resource_path: Request path and query, e.g. ``/bucket/key?acl``.
            headers: Request headers as a mapping or a sequence of pairs.
            content_hash: Content-MD5 value; overrides the header when given.
            content_type: Content type; overrides the header when given.
            timestamp: An HTTP date string, or an integer expiry epoch for
                query-string auth.

        Returns:
            The canonical string.

        Raises:
            InvalidRequestError: If the verb or resource path is malformed.
        """
        if not verb or _CONTROL_CHARS_RE.search(verb):
            raise InvalidRequestError(f"Invalid HTTP verb: {verb!r}")

        interesting: dict[str, list[str]] = {}
        for name, value in _iter_headers(headers):
            lower_name = name.strip().lower()
            if lower_name in RESERVED_HEADERS or lower_name.startswith(AMZ_HEADER_PREFIX):
                interesting.setdefault(lower_name, []).append(_trim_header_value(value))

        header_hash = ",".join(interesting.pop("content-md5", []))
        header_type = ",".join(interesting.pop("content-type", []))
        header_date = ",".join(interesting.pop("date", []))

        if content_hash is None:
            content_hash = header_hash
        if content_type is None:
            content_type = header_type

        if _is_expiry(timestamp):
            date_line = str(timestamp)
        elif AMZ_DATE_HEADER in interesting:
            # x-amz-date is signed in the header block instead
            date_line = ""
        else:
            date_line = str(timestamp) if timestamp else header_date

        parts = [
            verb.upper(),
            "\n",
            content_hash.strip(),
            "\n",
            content_type.strip(),
            "\n",
            date_line,
            "\n",
        ]
        for name in sorted(interesting):
            parts.append(f"{name}:{','.join(interesting[name])}\n")
        parts.append(canonical_resource(resource_path))
        return "".join(parts)

    # -- Signature computation -------------------------------------------------

    def sign(self, canonical_request: str, credential: Credential) -> str:
        """Compute the base64 HMAC-SHA1 signature of a canonical string.

        Args:
            canonical_request: The string built by build_canonical_request().
            credential: The credential whose secret key keys the HMAC.

        Returns:
            The base64-encoded signature (not URL-escaped).
        """
        digest = hmac.new(
            credential.secret_key, canonical_request.encode("utf-8"), hashlib.sha1
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify(self, canonical_request: str, credential: Credential, signature: str) -> bool:
        """Check a signature against a canonical string in constant time.

        Args:
            canonical_request: The rebuilt canonical string.
            credential: The credential expected to have produced the signature.
            signature: The presented signature, raw or URL-escaped.

        Returns:
            True if the signature matches.
        """
        if "%" in signature:
            signature = urllib.parse.unquote(signature)
        expected = self.sign(canonical_request, credential)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            logger.debug("Signature mismatch for access id %s", credential.access_id)
            return False
        return True

    # -- Header auth -------------------------------------------------------------

    def authorization_header(self, credential: Credential, signature: str) -> str:
        """Render the Authorization header value for a signature."""
        return f"{AUTH_SCHEME} {credential.access_id}:{signature}"

    def sign_headers(
        self,
        verb: str,
        resource_path: str,
        headers: Mapping[str, str] | None,
        credential: Credential,
        now: float | None = None,
    ) -> dict[str, str]:
        """Return a copy of ``headers`` with Date and Authorization set.

        A ``Date`` header is added unless ``Date`` or ``x-amz-date`` is
        already present.

        Args:
            verb: HTTP method.
            resource_path: Request path and query.
            headers: Request headers to send.
            credential: Signing credential.
            now: Epoch seconds used for the Date header; defaults to now.

        Returns:
            The headers to send, including ``Authorization``.
        """
        signed = dict(headers or {})
        present = {name.lower() for name in signed}
        if "date" not in present and AMZ_DATE_HEADER not in present:
            signed["Date"] = email.utils.formatdate(now, usegmt=True)

        canonical = self.build_canonical_request(verb, resource_path, signed)
        signed["Authorization"] = self.authorization_header(
            credential, self.sign(canonical, credential)
        )
        return signed


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def canonical_resource(resource_path: str) -> str:
    """Build the canonical resource from a request path and query.

    The path is kept as supplied (already URI-encoded). Of the query, only
    sub-resource parameters are kept, sorted by name.

    Args:
        resource_path: e.g. ``/bucket/key?uploadId=abc&max-parts=10``.

    Returns:
        e.g. ``/bucket/key?uploadId=abc``.

    Raises:
        InvalidRequestError: On an empty or relative path, or one containing
            control characters.
    """
    if not resource_path:
        raise InvalidRequestError("Resource path must not be empty.")
    if _CONTROL_CHARS_RE.search(resource_path):
        raise InvalidRequestError(
            f"Resource path contains unescaped control characters: {resource_path!r}"
        )

    path, _, query = resource_path.partition("?")
    if not path.startswith("/"):
        raise InvalidRequestError(f"Resource path must start with '/': {resource_path!r}")

    params: list[tuple[str, str | None]] = []
    for pair in query.split("&"):
        if not pair:
            continue
        name, sep, value = pair.partition("=")
        name = urllib.parse.unquote(name)
        if name in SIGNED_SUBRESOURCES or name.startswith(RESPONSE_OVERRIDE_PREFIX):
            params.append((name, urllib.parse.unquote(value) if sep else None))

    if not params:
        return path

    params.sort(key=lambda p: (p[0], p[1] or ""))
    rendered = [name if value is None else f"{name}={value}" for name, value in params]
    return f"{path}?{'&'.join(rendered)}"


def object_resource_path(bucket: str, key: str = "") -> str:
    """Return the URI-encoded resource path for a bucket and optional key."""
    if not key:
        return f"/{bucket}"
    return f"/{bucket}/{_uri_encode(key, encode_slash=False)}"


def url_escape(value: str) -> str:
    """URL-escape a value for use inside a query string (``/``, ``+``, ``=`` included)."""
    return _uri_encode(value, encode_slash=True)


def _iter_headers(headers: HeaderInput | None) -> Iterable[tuple[str, str]]:
    """Yield (name, value) pairs from a mapping or a sequence of pairs."""
    if headers is None:
        return ()
    if isinstance(headers, Mapping):
        return headers.items()
    return headers


def _is_expiry(timestamp: str | int) -> bool:
    """True for an integer expiry epoch (bool excluded)."""
    return isinstance(timestamp, int) and not isinstance(timestamp, bool)


def _uri_encode(s: str, encode_slash: bool = True) -> str:
    """S3-compatible URI encoding.

    Characters A-Z, a-z, 0-9, '-', '_', '.', '~' are not encoded.
    All other characters are percent-encoded with uppercase hex.
    Spaces become %20 (not +).

    Args:
        s: The string to encode.
        encode_slash: If True (default), '/' is encoded as %2F.
                     If False, '/' is left as-is.

    Returns:
        The URI-encoded string.
    """
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def _trim_header_value(value: str) -> str:
    """Trim, unfold and normalize a header value for the canonical string.

    Folded continuation lines are joined with a single space, leading and
    trailing whitespace is stripped and runs of spaces collapse to one.

    Args:
        value: The raw header value.

    Returns:
        The normalized value.
    """
    value = _FOLD_RE.sub(" ", str(value))
    value = value.strip()
    return re.sub(r" +", " ", value)
