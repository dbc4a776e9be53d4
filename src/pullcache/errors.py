"""Exception hierarchy for pullcache.

Fetch errors are local to a single job: they are reported through that job's
outcome and never touch other resources or the ledger. Callback errors come
from the owner's notification handler. Ledger errors come from the
transaction protocol and checkpoint replay.
"""

from typing import Optional


class PullCacheError(Exception):
    """Base exception for all pullcache errors."""

    pass


# ---------------------------------------------------------------------------
# Fetch errors
# ---------------------------------------------------------------------------


class FetchError(PullCacheError):
    """Base exception for errors raised while probing or fetching a resource."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class ProtocolError(FetchError):
    """Raised when a URL uses a scheme other than http or https."""

    pass


class VersionUnavailableError(FetchError):
    """Raised when a probe response carries neither ETag nor Last-Modified."""

    pass


class NotFoundError(FetchError):
    """Raised when the origin answers with a terminal non-success status."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        self.status = status
        super().__init__(message, url)


class RedirectLoopOrExceededError(FetchError):
    """Raised when a redirect chain exceeds the configured number of hops."""

    def __init__(self, url: str, max_redirects: int):
        self.max_redirects = max_redirects
        super().__init__(
            f"Redirect chain exceeded {max_redirects} hops, last location: {url}", url
        )


class NetworkError(FetchError):
    """Raised on transport failures (connection refused, reset, DNS...)."""

    pass


class FetchTimeoutError(NetworkError):
    """Raised when a probe or body download exceeds its configured timeout."""

    pass


class FilesystemError(FetchError):
    """Raised when the cache directory or file cannot be created or written."""

    pass


# ---------------------------------------------------------------------------
# Notification callback errors
# ---------------------------------------------------------------------------


class CallbackError(PullCacheError):
    """Base exception for errors reported by an owner's notification handler."""

    pass


class CallbackSystemError(CallbackError):
    """The owner reported a fatal condition; the owner must be torn down."""

    pass


class CallbackApplicationError(CallbackError):
    """The owner's handler failed in a non-fatal way. Logged and ignored."""

    pass


# ---------------------------------------------------------------------------
# Ledger errors
# ---------------------------------------------------------------------------


class LedgerError(PullCacheError):
    """Base exception for ledger errors."""

    pass


class LedgerReplayError(LedgerError):
    """Raised when a checkpoint or log cannot be replayed. Not recoverable."""

    pass


class TransactionStateError(LedgerError):
    """Raised when a ledger operation is called in the wrong transaction state."""

    pass
