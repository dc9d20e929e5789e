"""XML parsing helpers for S3 REST responses."""

from dataclasses import dataclass, field
from xml.etree import ElementTree

from bucketsync.errors import RemoteError

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


@dataclass
class ListPage:
    """One page of a ListObjects (v1) response.

    Attributes:
        keys: Object keys on this page, in listing order.
        is_truncated: Whether more keys are available.
        next_marker: Marker for the next page (NextMarker, else last key).
    """

    keys: list[str] = field(default_factory=list)
    is_truncated: bool = False
    next_marker: str = ""


@dataclass
class ErrorDocument:
    """The code and message of an S3 XML error response."""

    code: str = ""
    message: str = ""


def _find(parent: ElementTree.Element, name: str) -> ElementTree.Element | None:
    """Find a direct child by name, with or without the S3 namespace."""
    child = parent.find(f"{{{S3_NAMESPACE}}}{name}")
    if child is None:
        child = parent.find(name)
    return child


def _findall(parent: ElementTree.Element, name: str) -> list[ElementTree.Element]:
    return parent.findall(f"{{{S3_NAMESPACE}}}{name}") or parent.findall(name)


def _text(parent: ElementTree.Element, name: str) -> str:
    child = _find(parent, name)
    if child is None or child.text is None:
        return ""
    return child.text


def parse_list_objects(body: bytes) -> ListPage:
    """Parse a ListBucketResult document.

    Args:
        body: The raw response body.

    Returns:
        The parsed page.

    Raises:
        RemoteError: If the body is not a well-formed ListBucketResult.
    """
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as exc:
        raise RemoteError(f"Malformed ListBucketResult: {exc}", status=200) from exc

    if not root.tag.endswith("ListBucketResult"):
        raise RemoteError(f"Unexpected listing document root: {root.tag}", status=200)

    page = ListPage()
    for contents in _findall(root, "Contents"):
        key = _text(contents, "Key")
        if key:
            page.keys.append(key)

    page.is_truncated = _text(root, "IsTruncated").strip().lower() == "true"
    page.next_marker = _text(root, "NextMarker") or (page.keys[-1] if page.keys else "")
    return page


def parse_error(body: bytes) -> ErrorDocument:
    """Parse an S3 ``<Error>`` document; unparseable bodies yield empty fields."""
    if not body:
        return ErrorDocument()
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError:
        return ErrorDocument()
    return ErrorDocument(code=_text(root, "Code"), message=_text(root, "Message"))
