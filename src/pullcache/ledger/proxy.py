"""Owner-facing view of a ResourceLedger."""

from typing import Optional, Set

from pullcache.ledger.ledger import ResourceLedger
from pullcache.ledger.operations import ResourceDescriptor


class ResourceProxy:
    """Lets owner code manage its cached resources without the lifecycle hooks.

    Changes made through the proxy take effect when the owner's current
    transaction commits.

    Examples:
        >>> resources = ResourceProxy(ledger)
        >>> resources.declare("icon", "http://example.com/icon.png", "on_icon_updated")

        The owner method ``on_icon_updated`` is later called with
        ``(alias, cached_file_path, version)``; the version changes with the
        contents (ETag in the HTTP headers).
    """

    __slots__ = ("_ledger",)

    def __init__(self, ledger: ResourceLedger):
        self._ledger = ledger

    def declare(self, alias: str, url: str, notify_handler: str) -> None:
        """Add a resource to be tracked and cached.

        Args:
            alias: A name for this resource
            url: A URL to locate this resource
            notify_handler: Owner method name called when the resource changes
        """
        self._ledger.declare(alias, url, notify_handler)

    def undeclare(self, alias: str) -> None:
        """Stop caching a resource."""
        self._ledger.undeclare(alias)

    def force_refresh(self, alias: str) -> None:
        """Force a refresh of the status of the resource."""
        self._ledger.force_refresh(alias)

    def get(self, alias: str) -> Optional[ResourceDescriptor]:
        """Get info associated to a cached resource."""
        return self._ledger.get(alias)

    def list_aliases(self) -> Set[str]:
        """List all the resources currently cached."""
        return self._ledger.list_aliases()
