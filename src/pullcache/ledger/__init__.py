"""Transactional ledger of the resources declared by an owner.

Key components:
- ResourceLedger: committed set, pending log and transaction state machine
- ResourceProxy: owner-facing facade
- CheckpointStore: durable checkpoint files
"""

from pullcache.ledger.ledger import (
    OwnerDispatcher,
    ResourceLedger,
    TransactionState,
    decode_checkpoint,
    encode_checkpoint,
)
from pullcache.ledger.operations import (
    AddResource,
    PendingOperation,
    RefreshResource,
    RemoveResource,
    ResourceDescriptor,
)
from pullcache.ledger.proxy import ResourceProxy
from pullcache.ledger.store import CheckpointStore, CheckpointStoreError

__all__ = [
    "AddResource",
    "CheckpointStore",
    "CheckpointStoreError",
    "OwnerDispatcher",
    "PendingOperation",
    "RefreshResource",
    "RemoveResource",
    "ResourceDescriptor",
    "ResourceLedger",
    "ResourceProxy",
    "TransactionState",
    "decode_checkpoint",
    "encode_checkpoint",
]
