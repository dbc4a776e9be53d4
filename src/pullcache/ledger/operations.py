"""Resource descriptors and pending ledger operations.

A pending operation is one of three frozen dataclasses. The checkpoint
encoding tags each with an ``op`` field; decoding an unknown tag raises
LedgerReplayError, so no untyped operation ever reaches the ledger.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pullcache.errors import LedgerReplayError


@dataclass(frozen=True)
class ResourceDescriptor:
    """A declared resource.

    Attributes:
        alias: Resource name, unique within its owner
        url: Source URL
        notify_handler: Name of the owner method notified of new versions
        current_version: Last cached version, when known
        cached_file_path: Path of the last cached version, when known
    """

    alias: str
    url: str
    notify_handler: str
    current_version: Optional[str] = None
    cached_file_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, str]:
        """Checkpoint form. Version information is not persisted."""
        return {"url": self.url, "alias": self.alias, "notify_handler": self.notify_handler}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceDescriptor":
        try:
            return cls(alias=data["alias"], url=data["url"], notify_handler=data["notify_handler"])
        except (KeyError, TypeError) as e:
            raise LedgerReplayError(f"Malformed resource entry in checkpoint: {data!r}") from e


@dataclass(frozen=True)
class AddResource:
    """Declare (or re-declare) a resource."""

    alias: str
    url: str
    notify_handler: str

    tag = "add"

    def to_dict(self) -> Dict[str, str]:
        return {
            "op": self.tag,
            "alias": self.alias,
            "url": self.url,
            "notify_handler": self.notify_handler,
        }

    def descriptor(self) -> ResourceDescriptor:
        return ResourceDescriptor(alias=self.alias, url=self.url, notify_handler=self.notify_handler)


@dataclass(frozen=True)
class RemoveResource:
    """Stop tracking a resource."""

    alias: str

    tag = "remove"

    def to_dict(self) -> Dict[str, str]:
        return {"op": self.tag, "alias": self.alias}


@dataclass(frozen=True)
class RefreshResource:
    """Force a new version probe of a resource."""

    alias: str

    tag = "refresh"

    def to_dict(self) -> Dict[str, str]:
        return {"op": self.tag, "alias": self.alias}


PendingOperation = Union[AddResource, RemoveResource, RefreshResource]


def operation_from_dict(data: Dict[str, Any]) -> PendingOperation:
    """Decode one checkpointed operation.

    Args:
        data: Dict produced by an operation's to_dict()

    Returns:
        The decoded operation

    Raises:
        LedgerReplayError: If the tag is unknown or fields are missing

    Examples:
        >>> operation_from_dict({'op': 'remove', 'alias': 'icon'})
        RemoveResource(alias='icon')
    """
    if not isinstance(data, dict):
        raise LedgerReplayError(f"Malformed operation in checkpoint: {data!r}")
    tag = data.get("op")
    try:
        if tag == AddResource.tag:
            return AddResource(
                alias=data["alias"], url=data["url"], notify_handler=data["notify_handler"]
            )
        if tag == RemoveResource.tag:
            return RemoveResource(alias=data["alias"])
        if tag == RefreshResource.tag:
            return RefreshResource(alias=data["alias"])
    except KeyError as e:
        raise LedgerReplayError(f"Operation {tag!r} is missing field {e}") from e
    raise LedgerReplayError(f"Invalid log action {tag!r}")


def operations_from_list(items: List[Dict[str, Any]]) -> List[PendingOperation]:
    return [operation_from_dict(item) for item in items]
