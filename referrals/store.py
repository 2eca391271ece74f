"""
Document store abstraction used by the referral ledger.

The ledger talks to a collection/document database through `DocumentStore`:
plain reads, create-if-absent writes, filtered queries, serializable
transactions whose body the store re-runs on write conflicts, and atomic
write batches. Field values may carry the `Increment`, `ArrayUnion` and
`SERVER_TIMESTAMP` primitives, which the store resolves against the current
document at commit time.

`InMemoryDocumentStore` implements the same contract with optimistic
concurrency control and backs the tests and local development.
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, TypeVar

from .errors import (
    DocumentAlreadyExistsError,
    InvalidArgumentError,
    NotFoundError,
    TransactionAbortedError,
)
from .models import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BATCH_OPERATIONS = 500


class Increment:
    def __init__(self, amount: int | float = 1):
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


class ArrayUnion:
    def __init__(self, *values: Any):
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values})"


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def matches(self, data: dict) -> bool:
        if self.field not in data:
            return False
        current = data[self.field]
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return current != self.value
        if self.op == "in":
            return current in self.value
        if self.op == "array-contains":
            return isinstance(current, list) and self.value in current
        if current is None:
            return False
        if self.op == "<":
            return current < self.value
        if self.op == "<=":
            return current <= self.value
        if self.op == ">":
            return current > self.value
        if self.op == ">=":
            return current >= self.value
        raise InvalidArgumentError(f"Unsupported filter operator: {self.op}")


@dataclass
class DocumentSnapshot:
    id: str
    data: Optional[dict]

    @property
    def exists(self) -> bool:
        return self.data is not None


class Transaction(ABC):
    @abstractmethod
    def get(self, collection: str, document_id: str) -> DocumentSnapshot: ...

    @abstractmethod
    def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[DocumentSnapshot]: ...

    @abstractmethod
    def create(self, collection: str, document_id: str, data: dict) -> None: ...

    @abstractmethod
    def set(self, collection: str, document_id: str, data: dict) -> None: ...

    @abstractmethod
    def update(self, collection: str, document_id: str, data: dict) -> None: ...


class WriteBatch(ABC):
    @abstractmethod
    def set(self, collection: str, document_id: str, data: dict) -> None: ...

    @abstractmethod
    def update(self, collection: str, document_id: str, data: dict) -> None: ...

    @abstractmethod
    def delete(self, collection: str, document_id: str) -> None: ...


class DocumentStore(ABC):
    @abstractmethod
    def new_document_id(self, collection: str) -> str: ...

    @abstractmethod
    def create_document(self, collection: str, data: dict, document_id: Optional[str] = None) -> str:
        """Create a document; raises DocumentAlreadyExistsError if the id is taken."""

    @abstractmethod
    def get_document(self, collection: str, document_id: str) -> DocumentSnapshot: ...

    @abstractmethod
    def update_document(self, collection: str, document_id: str, data: dict) -> None: ...

    @abstractmethod
    def query_collection(self, collection: str, filters: Iterable[Filter] = ()) -> list[DocumentSnapshot]: ...

    @abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run `fn` in a serializable transaction, re-running it on conflicts."""

    @abstractmethod
    def run_batch(self, fn: Callable[[WriteBatch], None]) -> None:
        """Collect writes from `fn` and commit them atomically (at most 500)."""


class _TransactionConflict(Exception):
    pass


class _InMemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self.document_versions: dict[tuple[str, str], int] = {}
        self.collection_versions: dict[str, int] = {}
        self.operations: list[tuple[str, str, str, Optional[dict]]] = []

    def get(self, collection: str, document_id: str) -> DocumentSnapshot:
        with self._store._lock:
            key = (collection, document_id)
            self.document_versions.setdefault(key, self._store._versions.get(key, 0))
            return self._store.get_document(collection, document_id)

    def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[DocumentSnapshot]:
        with self._store._lock:
            self.collection_versions.setdefault(collection, self._store._collection_versions.get(collection, 0))
            return self._store.query_collection(collection, filters)

    def create(self, collection: str, document_id: str, data: dict) -> None:
        self.operations.append(("create", collection, document_id, data))

    def set(self, collection: str, document_id: str, data: dict) -> None:
        self.operations.append(("set", collection, document_id, data))

    def update(self, collection: str, document_id: str, data: dict) -> None:
        self.operations.append(("update", collection, document_id, data))


class _InMemoryBatch(WriteBatch):
    def __init__(self):
        self.operations: list[tuple[str, str, str, Optional[dict]]] = []

    def _add(self, operation: tuple[str, str, str, Optional[dict]]) -> None:
        if len(self.operations) >= MAX_BATCH_OPERATIONS:
            raise InvalidArgumentError(
                f"A write batch holds at most {MAX_BATCH_OPERATIONS} operations",
                {"limit": MAX_BATCH_OPERATIONS},
            )
        self.operations.append(operation)

    def set(self, collection: str, document_id: str, data: dict) -> None:
        self._add(("set", collection, document_id, data))

    def update(self, collection: str, document_id: str, data: dict) -> None:
        self._add(("update", collection, document_id, data))

    def delete(self, collection: str, document_id: str) -> None:
        self._add(("delete", collection, document_id, None))


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, clock: Callable[[], datetime] = utc_now, max_attempts: int = 5):
        self._clock = clock
        self._max_attempts = max_attempts
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, dict]] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._collection_versions: dict[str, int] = {}
        # Committed write operations, for asserting how much a call wrote.
        self.writes = 0

    def new_document_id(self, collection: str) -> str:
        return uuid.uuid4().hex

    def create_document(self, collection: str, data: dict, document_id: Optional[str] = None) -> str:
        document_id = document_id or self.new_document_id(collection)
        with self._lock:
            self._commit([("create", collection, document_id, data)])
        return document_id

    def get_document(self, collection: str, document_id: str) -> DocumentSnapshot:
        with self._lock:
            data = self._collections.get(collection, {}).get(document_id)
            return DocumentSnapshot(document_id, copy.deepcopy(data))

    def update_document(self, collection: str, document_id: str, data: dict) -> None:
        with self._lock:
            self._commit([("update", collection, document_id, data)])

    def query_collection(self, collection: str, filters: Iterable[Filter] = ()) -> list[DocumentSnapshot]:
        filters = list(filters)
        with self._lock:
            return [
                DocumentSnapshot(document_id, copy.deepcopy(data))
                for document_id, data in self._collections.get(collection, {}).items()
                if all(f.matches(data) for f in filters)
            ]

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        for attempt in range(1, self._max_attempts + 1):
            transaction = _InMemoryTransaction(self)
            result = fn(transaction)
            try:
                self._commit_transaction(transaction)
            except _TransactionConflict:
                logger.debug("Transaction conflict on attempt %d, retrying", attempt)
                continue
            return result
        raise TransactionAbortedError(
            f"Transaction aborted after {self._max_attempts} conflicting attempts",
            {"attempts": self._max_attempts},
        )

    def run_batch(self, fn: Callable[[WriteBatch], None]) -> None:
        batch = _InMemoryBatch()
        fn(batch)
        if not batch.operations:
            return
        with self._lock:
            self._commit(batch.operations)

    def _commit_transaction(self, transaction: _InMemoryTransaction) -> None:
        with self._lock:
            for key, version in transaction.document_versions.items():
                if self._versions.get(key, 0) != version:
                    raise _TransactionConflict()
            for collection, version in transaction.collection_versions.items():
                if self._collection_versions.get(collection, 0) != version:
                    raise _TransactionConflict()
            if transaction.operations:
                self._commit(transaction.operations)

    def _commit(self, operations: list[tuple[str, str, str, Optional[dict]]]) -> None:
        # Every operation is resolved before anything is stored, so a failing
        # operation leaves the store untouched.
        pending: dict[tuple[str, str], Optional[dict]] = {}
        for kind, collection, document_id, data in operations:
            key = (collection, document_id)
            current = pending[key] if key in pending else self._collections.get(collection, {}).get(document_id)
            pending[key] = self._apply(kind, collection, document_id, current, data)

        for (collection, document_id), data in pending.items():
            documents = self._collections.setdefault(collection, {})
            if data is None:
                documents.pop(document_id, None)
            else:
                documents[document_id] = data
            self._versions[(collection, document_id)] = self._versions.get((collection, document_id), 0) + 1
            self._collection_versions[collection] = self._collection_versions.get(collection, 0) + 1
        self.writes += len(operations)

    def _apply(self, kind: str, collection: str, document_id: str,
               current: Optional[dict], data: Optional[dict]) -> Optional[dict]:
        if kind == "delete":
            return None
        if kind == "create" and current is not None:
            raise DocumentAlreadyExistsError(collection, document_id)
        if kind == "update":
            if current is None:
                raise NotFoundError(
                    f"Document not found in {collection}: {document_id}",
                    {"collection": collection, "documentId": document_id},
                )
            merged = copy.deepcopy(current)
        else:
            merged = {}
        for field, value in data.items():
            merged[field] = self._resolve(value, merged.get(field))
        return merged

    def _resolve(self, value: Any, current: Any) -> Any:
        if isinstance(value, Increment):
            return (current if isinstance(current, (int, float)) else 0) + value.amount
        if isinstance(value, ArrayUnion):
            result = list(current) if isinstance(current, list) else []
            result.extend(v for v in value.values if v not in result)
            return result
        if value is SERVER_TIMESTAMP:
            return self._clock()
        return copy.deepcopy(value)
