"""Error definitions for bucketsync."""


class SyncError(Exception):
    """A bucketsync error with a short code and a human-readable message.

    Attributes:
        code: Stable error code string (e.g. "InvalidRequest", "LocalIO").
        message: Human-readable error description.
        retryable: Whether the failed call may succeed if simply repeated.
    """

    retryable = False

    def __init__(self, code: str, message: str) -> None:
        """Initialize the error.

        Args:
            code: Error code.
            message: Error description.
        """
        super().__init__(message)
        self.code = code
        self.message = message


# -- Request signing -----------------------------------------------------------


class InvalidRequestError(SyncError):
    """Malformed input to signing (bad resource path, bad header)."""

    def __init__(self, message: str = "Invalid request") -> None:
        super().__init__(code="InvalidRequest", message=message)


# -- Remote calls ----------------------------------------------------------------


class TransientTransportError(SyncError):
    """A network failure or 5xx-class response; safe to retry."""

    retryable = True

    def __init__(
        self, message: str = "Transient transport failure", status: int | None = None
    ) -> None:
        super().__init__(code="TransientTransport", message=message)
        self.status = status


class AuthenticationError(SyncError):
    """The remote rejected the request signature or credentials."""

    def __init__(
        self,
        message: str = "The request signature was rejected by the remote service.",
        remote_code: str = "",
    ) -> None:
        super().__init__(code="Authentication", message=message)
        self.remote_code = remote_code


class RemoteError(SyncError):
    """A non-retryable error response other than an authentication failure."""

    def __init__(self, message: str, status: int, remote_code: str = "") -> None:
        super().__init__(code="Remote", message=message)
        self.status = status
        self.remote_code = remote_code


# -- Batch execution -------------------------------------------------------------


class BatchStartError(SyncError):
    """The worker pool for a batch could not be started."""

    def __init__(self, message: str = "Unable to start the batch worker pool") -> None:
        super().__init__(code="BatchStart", message=message)


# -- Reconciliation --------------------------------------------------------------


class InconsistentStateError(SyncError):
    """Local and remote state contradict each other and cannot be ordered."""

    def __init__(self, key: str, message: str = "") -> None:
        super().__init__(
            code="InconsistentState",
            message=message
            or f"Remote object and local file '{key}' have the same date but different hashes.",
        )
        self.key = key


class LocalIOError(SyncError):
    """Reading the local tree failed; a partial snapshot is never returned."""

    def __init__(self, path: str, message: str = "") -> None:
        super().__init__(code="LocalIO", message=message or f"Unable to read local path: {path}")
        self.path = path


class RemoteMetadataError(SyncError):
    """Full metadata could not be fetched for every key under a remote prefix.

    Attributes:
        errors: Mapping of object key to the terminal cause for that key.
        cancelled: Whether the metadata batch was cancelled before finishing.
    """

    def __init__(
        self,
        errors: dict[str, BaseException] | None = None,
        cancelled: bool = False,
    ) -> None:
        self.errors = dict(errors or {})
        self.cancelled = cancelled
        if cancelled:
            message = "Remote metadata retrieval was cancelled before completion."
        else:
            message = (
                f"Failed to retrieve detailed information about {len(self.errors)} "
                f"remote object(s): {', '.join(sorted(self.errors)[:5])}"
            )
        super().__init__(code="RemoteMetadata", message=message)
