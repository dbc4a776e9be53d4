"""Transactional ledger of the resources declared by one owner.

Declarations, removals and refresh requests are recorded in a pending log and
have no effect until the enclosing transaction commits. Commit applies the log,
in order, to the committed set and forwards each operation to the
ResourceCacheEngine. The ledger is a small state machine driven by the owner's
hosting framework::

    IDLE --begin--> IN_TRANSACTION --prepare--> PREPARED --commit--> IDLE
                          |                        |
                          +---------abort----------+--------> IDLE

``prepare()`` returns a checkpoint blob. After a restart, ``restore(blob)``
rebuilds the committed set and re-registers every resource with the engine,
since engine registrations live only in memory.

Example:
    >>> ledger = ResourceLedger("ca1", engine, dispatcher)
    >>> ledger.init()
    >>> ledger.begin()
    >>> ledger.declare("icon", "http://example.com/icon.png", "on_icon_updated")
    >>> blob = ledger.prepare()
    >>> ledger.commit()
"""

import asyncio
import inspect
import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import orjson

from pullcache.cache.engine import NotifyHandler, ResourceCacheEngine
from pullcache.errors import LedgerReplayError, TransactionStateError
from pullcache.ledger.operations import (
    AddResource,
    PendingOperation,
    RefreshResource,
    RemoveResource,
    ResourceDescriptor,
    operations_from_list,
)

logger = logging.getLogger(__name__)

# Delivers a notification to the owner: (method_name, alias, path, version).
# May be a plain function or a coroutine function. Raises
# CallbackSystemError when the owner is no longer usable and
# CallbackApplicationError for errors the owner's method reported.
OwnerDispatcher = Callable[[str, str, str, str], Any]


class TransactionState(Enum):
    """States of the ledger's transaction protocol."""

    IDLE = "idle"
    IN_TRANSACTION = "in_transaction"
    PREPARED = "prepared"


def encode_checkpoint(
    resources: Dict[str, ResourceDescriptor], pending: List[PendingOperation]
) -> bytes:
    """Serialize ledger state into a checkpoint blob."""
    return orjson.dumps(
        {
            "resources": {alias: desc.to_dict() for alias, desc in resources.items()},
            "pending_operations": [op.to_dict() for op in pending],
        }
    )


def decode_checkpoint(
    blob: Optional[bytes],
) -> Tuple[Dict[str, ResourceDescriptor], List[PendingOperation]]:
    """Parse a checkpoint blob.

    An empty or None blob yields empty state.

    Raises:
        LedgerReplayError: If the blob is not a valid checkpoint
    """
    if not blob:
        return {}, []
    try:
        data = orjson.loads(blob)
    except orjson.JSONDecodeError as e:
        raise LedgerReplayError(f"Checkpoint is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise LedgerReplayError("Checkpoint must be a JSON object")

    raw_resources = data.get("resources") or {}
    raw_pending = data.get("pending_operations") or []
    if not isinstance(raw_resources, dict) or not isinstance(raw_pending, list):
        raise LedgerReplayError("Checkpoint has malformed resources or pending_operations")

    resources = {
        alias: ResourceDescriptor.from_dict(entry) for alias, entry in raw_resources.items()
    }
    return resources, operations_from_list(raw_pending)


class ResourceLedger:
    """Committed resource set and pending log of a single owner.

    Calls to begin/prepare/commit/abort for one owner must be serialized by
    the caller. Mutating calls are only accepted inside a transaction.
    """

    def __init__(
        self,
        owner_id: str,
        engine: ResourceCacheEngine,
        dispatcher: OwnerDispatcher,
    ):
        """Initialize the ledger.

        Args:
            owner_id: Identity of the owning entity
            engine: Engine receiving committed operations
            dispatcher: Delivers update notifications to the owner
        """
        self.owner_id = owner_id
        self.engine = engine
        self.dispatcher = dispatcher
        self._resources: Dict[str, ResourceDescriptor] = {}
        self._log: List[PendingOperation] = []
        self._state = TransactionState.IDLE

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def pending_operations(self) -> Tuple[PendingOperation, ...]:
        return tuple(self._log)

    # ------------------------------------------------------------------
    # Owner-facing operations
    # ------------------------------------------------------------------

    def declare(self, alias: str, url: str, notify_handler: str) -> None:
        """Record a declaration of a resource, effective at commit.

        Args:
            alias: Resource name, unique within this owner
            url: Source URL (http or https)
            notify_handler: Name of the owner method called with
                (alias, cached_file_path, version) when the resource changes
        """
        self._record(AddResource(alias=alias, url=url, notify_handler=notify_handler))

    def undeclare(self, alias: str) -> None:
        """Record the removal of a resource, effective at commit."""
        self._record(RemoveResource(alias=alias))

    def force_refresh(self, alias: str) -> None:
        """Record a forced version probe of a resource, effective at commit."""
        self._record(RefreshResource(alias=alias))

    def get(self, alias: str) -> Optional[ResourceDescriptor]:
        """Get a committed resource.

        The returned copy carries the engine's current version and cached
        path when the resource has been fetched.
        """
        descriptor = self._resources.get(alias)
        if descriptor is None:
            return None
        status = self.engine.get_status(self.owner_id, alias)
        if status is None:
            return descriptor
        return replace(descriptor, current_version=status.version, cached_file_path=status.path)

    def list_aliases(self) -> Set[str]:
        """Aliases of all committed resources."""
        return set(self._resources)

    def _record(self, op: PendingOperation) -> None:
        if self._state is not TransactionState.IN_TRANSACTION:
            raise TransactionStateError(
                f"Cannot record {op.tag} of {op.alias!r} for owner {self.owner_id} "
                f"in state {self._state.value}"
            )
        self._log.append(op)

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def init(self) -> None:
        """Start with an empty ledger."""
        self._resources = {}
        self._log = []
        self._state = TransactionState.IDLE

    def restore(self, blob: Optional[bytes]) -> List[asyncio.Future]:
        """Rebuild state from a checkpoint and re-register resources.

        Every committed resource is replayed as a declaration, followed by the
        checkpoint's leftover pending operations. No new checkpoint is taken.

        Args:
            blob: Checkpoint produced by prepare(), or None

        Returns:
            Futures of the fetch jobs enqueued on the engine

        Raises:
            LedgerReplayError: If the checkpoint cannot be decoded or replayed
            RuntimeError: If there is something to replay and no event loop
                is running; the ledger is left unchanged
        """
        resources, pending = decode_checkpoint(blob)
        log: List[PendingOperation] = [
            AddResource(alias=desc.alias, url=desc.url, notify_handler=desc.notify_handler)
            for desc in resources.values()
        ]
        log.extend(pending)
        self._check_replayable(log)
        self._resources = resources
        self._log = log
        self._state = TransactionState.IDLE
        logger.debug(
            f"Restoring owner {self.owner_id}: {len(resources)} resources, "
            f"{len(pending)} pending operations"
        )
        return self._replay()

    def begin(self, tx_context: Any = None) -> None:
        """Open a transaction, discarding any stale pending log."""
        if self._state is not TransactionState.IDLE:
            raise TransactionStateError(
                f"Cannot begin a transaction for owner {self.owner_id} in state {self._state.value}"
            )
        self._log = []
        self._state = TransactionState.IN_TRANSACTION

    def prepare(self) -> bytes:
        """Snapshot the committed set and the pending log.

        Does not change the committed set; may be called repeatedly.

        Returns:
            Opaque checkpoint blob
        """
        if self._state is TransactionState.IDLE:
            raise TransactionStateError(
                f"Cannot prepare owner {self.owner_id} outside a transaction"
            )
        blob = encode_checkpoint(self._resources, self._log)
        self._state = TransactionState.PREPARED
        return blob

    def commit(self) -> List[asyncio.Future]:
        """Apply the pending log to the committed set and the engine.

        Returns:
            Futures of the fetch jobs enqueued on the engine

        Raises:
            RuntimeError: If the log is not empty and no event loop is
                running; the transaction stays open with its log intact
        """
        if self._state is TransactionState.IDLE:
            raise TransactionStateError(
                f"Cannot commit owner {self.owner_id} outside a transaction"
            )
        self._check_replayable(self._log)
        futures = self._replay()
        self._state = TransactionState.IDLE
        return futures

    def abort(self) -> None:
        """Discard the pending log. Committed state and the engine are untouched."""
        self._log = []
        self._state = TransactionState.IDLE

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def _check_replayable(self, log: List[PendingOperation]) -> None:
        # Nothing may be applied unless every operation can be.
        for op in log:
            if not isinstance(op, (AddResource, RemoveResource, RefreshResource)):
                raise LedgerReplayError(f"Invalid log action {op!r} for owner {self.owner_id}")
        if log:
            # Engine jobs are scheduled on the running loop.
            asyncio.get_running_loop()

    def _replay(self) -> List[asyncio.Future]:
        futures: List[asyncio.Future] = []
        for op in self._log:
            if isinstance(op, AddResource):
                self._resources[op.alias] = op.descriptor()
                futures.append(
                    self.engine.add_resource(
                        self.owner_id,
                        op.alias,
                        op.url,
                        self._make_notifier(op.alias, op.notify_handler),
                    )
                )
            elif isinstance(op, RemoveResource):
                self._resources.pop(op.alias, None)
                self.engine.remove_resource(self.owner_id, op.alias)
            elif isinstance(op, RefreshResource):
                future = self.engine.refresh_resource(self.owner_id, op.alias)
                if future is not None:
                    futures.append(future)
            else:
                raise LedgerReplayError(
                    f"Invalid log action {op!r} for owner {self.owner_id}"
                )
        self._log = []
        return futures

    def _make_notifier(self, alias: str, method_name: str) -> NotifyHandler:
        async def notify(path: str, version: str) -> Any:
            result = self.dispatcher(method_name, alias, path, version)
            if inspect.isawaitable(result):
                result = await result
            return result

        return notify
