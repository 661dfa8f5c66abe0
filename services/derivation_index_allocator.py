"""
Derivation Index Allocator

Hands out the per-escrow custody derivation index as ``max(existing) + 1``.
Allocation is serialized three ways:

- a process-wide mutex held for the whole create transaction,
- a transaction-scoped PostgreSQL advisory lock (other processes),
- a UNIQUE constraint on escrows.derivation_index as the last line.

A collision that still reaches the constraint means two escrows would share
custody keys; it raises DerivationIndexCollisionError and is never retried.
"""

import hashlib
import logging
import threading
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from models import Escrow

logger = logging.getLogger(__name__)


class DerivationIndexAllocator:
    """Single serialized counter shared by all escrow creations"""

    # Lock namespace to avoid conflicts (32-bit integer for PostgreSQL advisory locks)
    ESCROW_NAMESPACE = 0x45534357  # 'ESCW' in hex
    LOCK_KEY = "escrow_derivation_index"

    def __init__(self):
        self._mutex = threading.Lock()

    @staticmethod
    def _generate_lock_id(key: str) -> int:
        """Deterministic positive 32-bit lock ID from a string key"""
        key_hash = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return int(key_hash[:8], 16) & 0x7FFFFFFF

    @contextmanager
    def serialized(self) -> Generator[None, None, None]:
        """
        Hold the process mutex for the duration of a create transaction.

        The index must stay reserved until the escrow row is committed, so the
        caller wraps its whole transaction in this block.
        """
        with self._mutex:
            yield

    def next_index(self, session: Session) -> int:
        """Allocate the next index inside the caller's transaction"""
        if session.get_bind().dialect.name == "postgresql":
            # Released automatically at commit/rollback
            session.execute(
                text("SELECT pg_advisory_xact_lock(:namespace, :lock_id)"),
                {"namespace": self.ESCROW_NAMESPACE, "lock_id": self._generate_lock_id(self.LOCK_KEY)},
            )

        current_max = session.execute(select(func.max(Escrow.derivation_index))).scalar()
        index = 0 if current_max is None else int(current_max) + 1
        logger.debug(f"🔢 DERIVATION_INDEX_ALLOCATED: {index}")
        return index


_allocator = DerivationIndexAllocator()


def get_derivation_index_allocator() -> DerivationIndexAllocator:
    return _allocator
