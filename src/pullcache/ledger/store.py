"""Durable storage of ledger checkpoints."""

import logging
import os
import uuid
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

from pullcache.errors import LedgerError
from pullcache.utils import sanitize_component

logger = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = ".checkpoint.json"


class CheckpointStoreError(LedgerError):
    """Raised when a checkpoint cannot be read or written."""

    pass


class CheckpointStore:
    """Stores one checkpoint blob per owner in a directory.

    Writes go to a temporary file that is renamed into place, under a
    per-owner file lock, so readers never observe a partial checkpoint.

    Examples:
        >>> store = CheckpointStore(tmp / "checkpoints")
        >>> store.save("ca1", ledger.prepare())
        >>> ledger.restore(store.load("ca1"))
    """

    def __init__(self, directory: Union[str, Path], lock_timeout: float = 30.0):
        """Initialize checkpoint store.

        Args:
            directory: Directory holding checkpoint files (created if needed)
            lock_timeout: Seconds to wait for an owner's lock
        """
        self.directory = Path(directory).expanduser()
        self.lock_timeout = lock_timeout
        self.lock_dir = self.directory / ".locks"
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CheckpointStoreError(
                f"Cannot create checkpoint directory at {self.directory}: {e}"
            ) from e

    def path_for(self, owner_id: str) -> Path:
        """Get the checkpoint file path of an owner."""
        return self.directory / f"{sanitize_component(owner_id)}{CHECKPOINT_SUFFIX}"

    def _lock(self, owner_id: str) -> FileLock:
        return FileLock(
            self.lock_dir / f"{sanitize_component(owner_id)}.lock", timeout=self.lock_timeout
        )

    def save(self, owner_id: str, blob: bytes) -> Path:
        """Atomically write an owner's checkpoint.

        Returns:
            Path of the checkpoint file

        Raises:
            CheckpointStoreError: If the lock or the write fails
        """
        path = self.path_for(owner_id)
        temp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with self._lock(owner_id):
                with open(temp_path, "wb") as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                temp_path.replace(path)
        except Timeout as e:
            raise CheckpointStoreError(
                f"Timeout acquiring checkpoint lock for {owner_id} after {self.lock_timeout} seconds"
            ) from e
        except OSError as e:
            raise CheckpointStoreError(f"Cannot write checkpoint for {owner_id}: {e}") from e
        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as e:
                    logger.warning(f"Failed to clean up temp file {temp_path}: {e}")
        logger.debug(f"Saved checkpoint for {owner_id} to {path}")
        return path

    def load(self, owner_id: str) -> Optional[bytes]:
        """Read an owner's checkpoint, or None if there is none."""
        path = self.path_for(owner_id)
        try:
            with self._lock(owner_id):
                if not path.exists():
                    return None
                return path.read_bytes()
        except Timeout as e:
            raise CheckpointStoreError(
                f"Timeout acquiring checkpoint lock for {owner_id} after {self.lock_timeout} seconds"
            ) from e
        except OSError as e:
            raise CheckpointStoreError(f"Cannot read checkpoint for {owner_id}: {e}") from e

    def delete(self, owner_id: str) -> bool:
        """Remove an owner's checkpoint.

        Returns:
            True if a checkpoint existed
        """
        path = self.path_for(owner_id)
        try:
            with self._lock(owner_id):
                if not path.exists():
                    return False
                path.unlink()
                return True
        except Timeout as e:
            raise CheckpointStoreError(
                f"Timeout acquiring checkpoint lock for {owner_id} after {self.lock_timeout} seconds"
            ) from e
        except OSError as e:
            raise CheckpointStoreError(f"Cannot delete checkpoint for {owner_id}: {e}") from e

    def list_owners(self) -> List[str]:
        """List the owner ids that have a checkpoint."""
        return sorted(
            unquote(p.name[: -len(CHECKPOINT_SUFFIX)])
            for p in self.directory.glob(f"*{CHECKPOINT_SUFFIX}")
        )
