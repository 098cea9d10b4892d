"""
Async Storage Module

Async facade over the synchronous storage backends. Every read and write is
awaited (run in a worker thread so the event loop is never blocked), and
``run_transaction`` provides optimistic multi-document transactions: the
callback's reads are version-checked at commit and the whole callback is
re-run from scratch when another writer got there first.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
import asyncio
import random
import uuid

from .storage import StorageInterface, PendingWrite, ReadSet
from .exceptions import TransactionConflictError, TransactionRetryExhaustedError
from .logging_config import get_logger

logger = get_logger("loan_servicing.storage")

T = TypeVar("T")


class Transaction:
    """
    A single attempt of an optimistic transaction.

    Reads go straight to storage and their versions are remembered. Writes
    are buffered and only applied by the commit, which fails with
    ``TransactionConflictError`` if any remembered version has moved.
    All reads must happen before the first write.
    """

    def __init__(self, storage: StorageInterface):
        self._storage = storage
        self._reads: ReadSet = {}
        self._writes: List[PendingWrite] = []

    def _record_read(self, table: str, record_id: str, version: Optional[int]) -> None:
        key = (table, record_id)
        if key in self._reads and self._reads[key] != version:
            raise TransactionConflictError(f"Document {table}/{record_id} changed between reads")
        self._reads[key] = version

    def _check_no_writes(self) -> None:
        if self._writes:
            raise RuntimeError("Transaction reads must happen before writes")

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Read one document, remembering its version (absent documents included)"""
        self._check_no_writes()
        data, version = await asyncio.to_thread(self._storage.load_versioned, table, record_id)
        self._record_read(table, record_id, version)
        return data

    async def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Query documents, remembering the version of every document returned"""
        self._check_no_writes()
        rows = await asyncio.to_thread(
            self._storage.find_versioned, table, filters, order_by, descending, limit
        )
        for data, version in rows:
            self._record_read(table, data["id"], version)
        return [data for data, _ in rows]

    def set(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Create or overwrite a document at commit"""
        self._writes.append(PendingWrite(table, record_id, "set", dict(data)))

    def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing document at commit"""
        self._writes.append(PendingWrite(table, record_id, "update", dict(fields)))

    @property
    def writes(self) -> List[PendingWrite]:
        return list(self._writes)

    async def commit(self) -> None:
        await asyncio.to_thread(self._storage.commit_changes, dict(self._reads), list(self._writes))


class LedgerStore:
    """Async document store with optimistic transactions"""

    def __init__(self, storage: StorageInterface, max_attempts: int = 5, retry_delay: float = 0.01):
        self.storage = storage
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.storage.load, table, record_id)

    async def set(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.storage.save, table, record_id, data)

    async def add(self, table: str, data: Dict[str, Any]) -> str:
        """Store a document under a generated id and return the id"""
        record_id = self.new_id()
        await self.set(table, record_id, {**data, "id": record_id})
        return record_id

    async def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.storage.find, table, filters, order_by, descending, limit)

    async def count(self, table: str) -> int:
        return await asyncio.to_thread(self.storage.count, table)

    async def batch_write(self, writes: List[PendingWrite]) -> None:
        """Apply writes atomically without a read set"""
        await asyncio.to_thread(self.storage.commit_changes, {}, writes)

    async def run_transaction(
        self,
        operation: Callable[[Transaction], Awaitable[T]],
        max_attempts: Optional[int] = None
    ) -> T:
        """
        Run ``operation`` inside an optimistic transaction.

        The operation may be invoked several times; it must only touch
        storage through the transaction it is given. Errors other than a
        commit conflict propagate immediately with nothing written.

        Raises:
            TransactionRetryExhaustedError: If every attempt hit a conflict
        """
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            transaction = Transaction(self.storage)
            try:
                result = await operation(transaction)
                await transaction.commit()
                return result
            except TransactionConflictError as e:
                logger.warning(f"Transaction conflict on attempt {attempt}/{attempts}: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay * attempt * (1 + random.random()))

        raise TransactionRetryExhaustedError(f"Transaction aborted after {attempts} conflicting attempts")

    async def close(self) -> None:
        await asyncio.to_thread(self.storage.close)
