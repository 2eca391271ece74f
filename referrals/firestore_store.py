"""Cloud Firestore implementation of the document store."""

import logging
from typing import Any, Callable, Iterable, Optional, TypeVar

import firebase_admin
from firebase_admin import credentials
from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from .errors import (
    DependencyFailureError,
    DocumentAlreadyExistsError,
    InvalidArgumentError,
    NotFoundError,
)
from .settings import Settings
from .store import (
    MAX_BATCH_OPERATIONS,
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Filter,
    Increment,
    Transaction,
    WriteBatch,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def initialize_firebase(settings: Settings) -> firebase_admin.App:
    """Initialize the Firebase Admin SDK once per process."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options = {"projectId": settings.firebase_project_id} if settings.firebase_project_id else None
    if settings.firebase_credentials_path:
        cred = credentials.Certificate(settings.firebase_credentials_path)
    else:
        cred = credentials.ApplicationDefault()
    app = firebase_admin.initialize_app(cred, options)
    logger.info("Firebase Admin SDK initialized")
    return app


def _to_firestore(value: Any) -> Any:
    if isinstance(value, Increment):
        return firestore.Increment(value.amount)
    if isinstance(value, ArrayUnion):
        return firestore.ArrayUnion(value.values)
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    return value


def _prepare(data: dict) -> dict:
    return {field: _to_firestore(value) for field, value in data.items()}


def _snapshot(doc) -> DocumentSnapshot:
    return DocumentSnapshot(doc.id, doc.to_dict() if doc.exists else None)


class _FirestoreTransaction(Transaction):
    def __init__(self, store: "FirestoreDocumentStore", transaction: firestore.Transaction):
        self._store = store
        self._transaction = transaction

    def get(self, collection: str, document_id: str) -> DocumentSnapshot:
        ref = self._store.reference(collection, document_id)
        return _snapshot(ref.get(transaction=self._transaction))

    def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[DocumentSnapshot]:
        query = self._store.build_query(collection, filters)
        return [_snapshot(doc) for doc in query.get(transaction=self._transaction)]

    def create(self, collection: str, document_id: str, data: dict) -> None:
        self._transaction.create(self._store.reference(collection, document_id), _prepare(data))

    def set(self, collection: str, document_id: str, data: dict) -> None:
        self._transaction.set(self._store.reference(collection, document_id), _prepare(data))

    def update(self, collection: str, document_id: str, data: dict) -> None:
        self._transaction.update(self._store.reference(collection, document_id), _prepare(data))


class _FirestoreBatch(WriteBatch):
    def __init__(self, store: "FirestoreDocumentStore", batch):
        self._store = store
        self._batch = batch
        self.size = 0

    def _count(self) -> None:
        if self.size >= MAX_BATCH_OPERATIONS:
            raise InvalidArgumentError(
                f"A write batch holds at most {MAX_BATCH_OPERATIONS} operations",
                {"limit": MAX_BATCH_OPERATIONS},
            )
        self.size += 1

    def set(self, collection: str, document_id: str, data: dict) -> None:
        self._count()
        self._batch.set(self._store.reference(collection, document_id), _prepare(data))

    def update(self, collection: str, document_id: str, data: dict) -> None:
        self._count()
        self._batch.update(self._store.reference(collection, document_id), _prepare(data))

    def delete(self, collection: str, document_id: str) -> None:
        self._count()
        self._batch.delete(self._store.reference(collection, document_id))

    def commit(self) -> None:
        self._batch.commit()


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, client: firestore.Client, max_attempts: int = 5):
        self._client = client
        self._max_attempts = max_attempts

    @classmethod
    def from_settings(cls, settings: Settings) -> "FirestoreDocumentStore":
        app = initialize_firebase(settings)
        return cls(firebase_firestore.client(app), max_attempts=settings.transaction_max_attempts)

    def reference(self, collection: str, document_id: str):
        return self._client.collection(collection).document(document_id)

    def build_query(self, collection: str, filters: Iterable[Filter]):
        query = self._client.collection(collection)
        for f in filters:
            op = "array_contains" if f.op == "array-contains" else f.op
            query = query.where(filter=FieldFilter(f.field, op, f.value))
        return query

    def new_document_id(self, collection: str) -> str:
        return self._client.collection(collection).document().id

    def create_document(self, collection: str, data: dict, document_id: Optional[str] = None) -> str:
        ref = self.reference(collection, document_id) if document_id else self._client.collection(collection).document()
        try:
            ref.create(_prepare(data))
        except (google_exceptions.AlreadyExists, google_exceptions.Conflict):
            raise DocumentAlreadyExistsError(collection, ref.id)
        except google_exceptions.GoogleAPICallError as e:
            raise DependencyFailureError(f"Failed to create document in {collection}", {"error": str(e)}) from e
        return ref.id

    def get_document(self, collection: str, document_id: str) -> DocumentSnapshot:
        try:
            return _snapshot(self.reference(collection, document_id).get())
        except google_exceptions.GoogleAPICallError as e:
            raise DependencyFailureError(f"Failed to read {collection}/{document_id}", {"error": str(e)}) from e

    def update_document(self, collection: str, document_id: str, data: dict) -> None:
        try:
            self.reference(collection, document_id).update(_prepare(data))
        except google_exceptions.NotFound:
            raise NotFoundError(
                f"Document not found in {collection}: {document_id}",
                {"collection": collection, "documentId": document_id},
            )
        except google_exceptions.GoogleAPICallError as e:
            raise DependencyFailureError(f"Failed to update {collection}/{document_id}", {"error": str(e)}) from e

    def query_collection(self, collection: str, filters: Iterable[Filter] = ()) -> list[DocumentSnapshot]:
        try:
            return [_snapshot(doc) for doc in self.build_query(collection, filters).stream()]
        except google_exceptions.GoogleAPICallError as e:
            raise DependencyFailureError(f"Failed to query {collection}", {"error": str(e)}) from e

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        @firestore.transactional
        def _run(transaction: firestore.Transaction) -> T:
            return fn(_FirestoreTransaction(self, transaction))

        try:
            return _run(self._client.transaction(max_attempts=self._max_attempts))
        except google_exceptions.GoogleAPICallError as e:
            raise DependencyFailureError("Transaction failed", {"error": str(e)}) from e

    def run_batch(self, fn: Callable[[WriteBatch], None]) -> None:
        batch = _FirestoreBatch(self, self._client.batch())
        fn(batch)
        if not batch.size:
            return
        try:
            batch.commit()
        except google_exceptions.GoogleAPICallError as e:
            raise DependencyFailureError("Batch commit failed", {"error": str(e)}) from e
