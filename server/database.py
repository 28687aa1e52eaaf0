"""
Ledger Store

The only way the application touches persisted state. Every primitive is
available on a LedgerTransaction; groups of reads and writes issued through
``LedgerStore.run_transaction`` commit atomically or not at all.

Two backends share the primitives:

* FirestoreLedgerStore - Firestore transactions (optimistic concurrency,
  retried by the client library on contention).
* InMemoryLedgerStore - dicts guarded by a lock, with writes staged until the
  transaction callback returns. Used by the test suite and local runs.

Within a Firestore transaction all reads must happen before the first write.
"""

from error_handling import (
    DatabaseOperationContext, ItemNotFoundError, SwapRequestNotFoundError,
    UserNotFoundError, WriteConflictError,
)
from models import ClothingItem, ItemStatus, SwapRequest, SwapStatus, User
import copy
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "firestore").lower()

# Collection names double as the schema; Firestore creates them on first write.
COLLECTION_USERS = "users"
COLLECTION_ITEMS = "items"
COLLECTION_SWAPS = "swaps"
COLLECTION_CONFIG = "config"


class LedgerTransaction:
    """Data-access primitives over users, items and swap requests.

    Subclasses provide the five document-level operations; everything else is
    shared so both backends enforce the same conditional-write rules.
    """

    # Document-level operations

    def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _query(self, collection: str, filters: List[tuple] = None) -> List[Tuple[str, Dict[str, Any]]]:
        raise NotImplementedError

    def _set(self, collection: str, doc_id: str, data: Dict[str, Any]):
        raise NotImplementedError

    def _update(self, collection: str, doc_id: str, updates: Dict[str, Any]):
        raise NotImplementedError

    def _delete(self, collection: str, doc_id: str):
        raise NotImplementedError

    def new_id(self, collection: str) -> str:
        return uuid.uuid4().hex

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        data = self._read(COLLECTION_USERS, user_id)
        if data is None:
            return None
        return User.model_validate({**data, 'uid': user_id})

    def get_user_points(self, user_id: str) -> int:
        data = self._read(COLLECTION_USERS, user_id)
        if data is None:
            raise UserNotFoundError(user_id)
        return int(data.get('points', 0))

    def create_user(self, user: User) -> User:
        self._set(COLLECTION_USERS, user.uid, user.to_document())
        return user

    def adjust_user_points(self, user_id: str, delta: int) -> int:
        """Apply a points delta; rejects any result below zero. Returns the new balance."""
        current = self.get_user_points(user_id)
        new_balance = current + delta
        if new_balance < 0:
            raise WriteConflictError(COLLECTION_USERS, user_id, 'points', f">= {-delta}", current)
        self._update(COLLECTION_USERS, user_id, {
            'points': new_balance,
            'updatedAt': datetime.now(timezone.utc)
        })
        return new_balance

    def list_users(self) -> List[User]:
        return [User.model_validate({**data, 'uid': doc_id})
                for doc_id, data in self._query(COLLECTION_USERS)]

    # Items

    def get_item(self, item_id: str) -> Optional[ClothingItem]:
        data = self._read(COLLECTION_ITEMS, item_id)
        if data is None:
            return None
        return ClothingItem.model_validate({**data, 'id': item_id})

    def create_item(self, item: ClothingItem) -> ClothingItem:
        self._set(COLLECTION_ITEMS, item.id, item.to_document())
        return item

    def update_item(self, item_id: str, updates: Dict[str, Any]):
        if self._read(COLLECTION_ITEMS, item_id) is None:
            raise ItemNotFoundError(item_id)
        self._update(COLLECTION_ITEMS, item_id, {**updates, 'updatedAt': datetime.now(timezone.utc)})

    def delete_item(self, item_id: str):
        self._delete(COLLECTION_ITEMS, item_id)

    def set_item_status(self, item_id: str, new_status: ItemStatus, expected_status: ItemStatus = None):
        """Set an item's status, only if it currently equals ``expected_status`` when given"""
        data = self._read(COLLECTION_ITEMS, item_id)
        if data is None:
            raise ItemNotFoundError(item_id)
        current = data.get('status')
        if expected_status is not None and current != ItemStatus(expected_status).value:
            raise WriteConflictError(COLLECTION_ITEMS, item_id, 'status', ItemStatus(expected_status).value, current)
        self._update(COLLECTION_ITEMS, item_id, {
            'status': ItemStatus(new_status).value,
            'updatedAt': datetime.now(timezone.utc)
        })

    def list_items(self, filters: List[tuple] = None) -> List[ClothingItem]:
        items = [ClothingItem.model_validate({**data, 'id': doc_id})
                 for doc_id, data in self._query(COLLECTION_ITEMS, filters)]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    # Swap requests

    def get_swap_request(self, request_id: str) -> Optional[SwapRequest]:
        data = self._read(COLLECTION_SWAPS, request_id)
        if data is None:
            return None
        return SwapRequest.model_validate({**data, 'id': request_id})

    def create_swap_request(self, request: SwapRequest) -> SwapRequest:
        self._set(COLLECTION_SWAPS, request.id, request.to_document())
        return request

    def update_swap_request_status(self, request_id: str, new_status: SwapStatus,
                                   expected_status: SwapStatus = None):
        """Set a request's status, only if it currently equals ``expected_status`` when given"""
        data = self._read(COLLECTION_SWAPS, request_id)
        if data is None:
            raise SwapRequestNotFoundError(request_id)
        current = data.get('status')
        if expected_status is not None and current != SwapStatus(expected_status).value:
            raise WriteConflictError(COLLECTION_SWAPS, request_id, 'status', SwapStatus(expected_status).value, current)
        self._update(COLLECTION_SWAPS, request_id, {
            'status': SwapStatus(new_status).value,
            'updatedAt': datetime.now(timezone.utc)
        })

    def list_pending_requests_for_item(self, item_id: str) -> List[SwapRequest]:
        """Pending requests that target the item or offer it in exchange"""
        pending = SwapStatus.PENDING.value
        found = {}
        for field in ('itemId', 'requesterItemId'):
            for doc_id, data in self._query(COLLECTION_SWAPS, [(field, '==', item_id), ('status', '==', pending)]):
                found[doc_id] = SwapRequest.model_validate({**data, 'id': doc_id})
        return sorted(found.values(), key=lambda request: request.created_at)

    def list_swap_requests(self, filters: List[tuple] = None) -> List[SwapRequest]:
        requests = [SwapRequest.model_validate({**data, 'id': doc_id})
                    for doc_id, data in self._query(COLLECTION_SWAPS, filters)]
        requests.sort(key=lambda request: request.created_at, reverse=True)
        return requests

    # Configuration documents

    def get_config(self, name: str) -> Optional[Dict[str, Any]]:
        return self._read(COLLECTION_CONFIG, name)

    def set_config(self, name: str, data: Dict[str, Any]):
        self._set(COLLECTION_CONFIG, name, data)


class LedgerStore:
    """Entry point for transactional and read-only access"""

    backend = "abstract"

    def run_transaction(self, operation: Callable[[LedgerTransaction], T]) -> T:
        """Run ``operation`` inside a transaction; its writes commit atomically"""
        raise NotImplementedError

    def reader(self) -> LedgerTransaction:
        """Non-transactional accessor for plain reads"""
        raise NotImplementedError

    def ping(self) -> bool:
        """Round-trip check used by the health endpoint"""
        self.reader().get_config('_health_check')
        return True


# Firestore backend

class FirestoreTransaction(LedgerTransaction):
    """Primitives bound to a Firestore transaction (or plain reads when none)"""

    def __init__(self, db, transaction=None):
        self._db = db
        self._transaction = transaction
        self._cache: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

    def _ref(self, collection: str, doc_id: str):
        return self._db.collection(collection).document(doc_id)

    def new_id(self, collection: str) -> str:
        return self._db.collection(collection).document().id

    def _read(self, collection, doc_id):
        key = (collection, doc_id)
        if key not in self._cache:
            with DatabaseOperationContext('get', collection):
                snapshot = self._ref(collection, doc_id).get(transaction=self._transaction)
            self._cache[key] = snapshot.to_dict() if snapshot.exists else None
        cached = self._cache[key]
        return dict(cached) if cached is not None else None

    def _query(self, collection, filters=None):
        query = self._db.collection(collection)
        for field, operator, value in filters or []:
            query = query.where(field, operator, value)
        with DatabaseOperationContext('query', collection):
            docs = query.get(transaction=self._transaction)
        results = []
        for doc in docs:
            data = doc.to_dict()
            self._cache.setdefault((collection, doc.id), data)
            results.append((doc.id, dict(data)))
        return results

    def _set(self, collection, doc_id, data):
        ref = self._ref(collection, doc_id)
        if self._transaction is not None:
            self._transaction.set(ref, data)
        else:
            with DatabaseOperationContext('set', collection):
                ref.set(data)
        self._cache[(collection, doc_id)] = dict(data)

    def _update(self, collection, doc_id, updates):
        ref = self._ref(collection, doc_id)
        if self._transaction is not None:
            self._transaction.update(ref, updates)
        else:
            with DatabaseOperationContext('update', collection):
                ref.update(updates)
        cached = self._cache.get((collection, doc_id))
        if cached is not None:
            cached.update(updates)

    def _delete(self, collection, doc_id):
        ref = self._ref(collection, doc_id)
        if self._transaction is not None:
            self._transaction.delete(ref)
        else:
            with DatabaseOperationContext('delete', collection):
                ref.delete()
        self._cache[(collection, doc_id)] = None


class FirestoreLedgerStore(LedgerStore):
    """Ledger store backed by Cloud Firestore"""

    backend = "firestore"

    def __init__(self, db=None):
        if db is None:
            from firebase_init import get_db
            db = get_db()
        self._db = db

    def run_transaction(self, operation):
        from firebase_admin import firestore

        transaction = self._db.transaction()

        @firestore.transactional
        def _run(transaction):
            return operation(FirestoreTransaction(self._db, transaction))

        with DatabaseOperationContext('transaction'):
            return _run(transaction)

    def reader(self):
        return FirestoreTransaction(self._db)


# In-memory backend

_MISSING = object()


class InMemoryTransaction(LedgerTransaction):
    """Primitives over an InMemoryLedgerStore; writes are staged until commit"""

    def __init__(self, store: "InMemoryLedgerStore", staged: bool = True):
        self._store = store
        self._staged = staged
        self._writes: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

    def _current(self, collection, doc_id):
        staged = self._writes.get((collection, doc_id), _MISSING)
        if staged is not _MISSING:
            return staged
        return self._store._collections.get(collection, {}).get(doc_id)

    def _read(self, collection, doc_id):
        with self._store._lock:
            data = self._current(collection, doc_id)
            return copy.deepcopy(data) if data is not None else None

    def _query(self, collection, filters=None):
        results = []
        with self._store._lock:
            doc_ids = set(self._store._collections.get(collection, {}))
            doc_ids.update(doc_id for coll, doc_id in self._writes if coll == collection)
            for doc_id in sorted(doc_ids):
                data = self._current(collection, doc_id)
                if data is None:
                    continue
                if all(_matches(data.get(field), operator, value) for field, operator, value in filters or []):
                    results.append((doc_id, copy.deepcopy(data)))
        return results

    def _write(self, collection, doc_id, data):
        if self._staged:
            self._writes[(collection, doc_id)] = data
        else:
            with self._store._lock:
                self._store._apply(collection, doc_id, data)

    def _set(self, collection, doc_id, data):
        self._write(collection, doc_id, copy.deepcopy(data))

    def _update(self, collection, doc_id, updates):
        current = self._read(collection, doc_id)
        if current is None:
            raise WriteConflictError(collection, doc_id, 'exists', True, False)
        current.update(copy.deepcopy(updates))
        self._write(collection, doc_id, current)

    def _delete(self, collection, doc_id):
        self._write(collection, doc_id, None)

    def commit(self):
        for (collection, doc_id), data in self._writes.items():
            self._store._apply(collection, doc_id, data)
        self._writes.clear()


def _matches(actual, operator: str, expected) -> bool:
    if operator == '==':
        return actual == expected
    if operator == '!=':
        return actual != expected
    if operator == 'in':
        return actual in expected
    if operator == 'array_contains':
        return isinstance(actual, list) and expected in actual
    if actual is None:
        return False
    if operator == '>':
        return actual > expected
    if operator == '>=':
        return actual >= expected
    if operator == '<':
        return actual < expected
    if operator == '<=':
        return actual <= expected
    raise ValueError(f"Unsupported query operator: {operator}")


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger store; transactions are serialized by a lock"""

    backend = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _apply(self, collection, doc_id, data):
        documents = self._collections.setdefault(collection, {})
        if data is None:
            documents.pop(doc_id, None)
        else:
            documents[doc_id] = data

    def run_transaction(self, operation):
        with self._lock:
            transaction = InMemoryTransaction(self)
            result = operation(transaction)
            transaction.commit()
            return result

    def reader(self):
        return InMemoryTransaction(self, staged=False)

    def clear(self):
        with self._lock:
            self._collections.clear()


@lru_cache(maxsize=1)
def get_ledger_store() -> LedgerStore:
    """FastAPI dependency returning the configured ledger store"""
    if LEDGER_BACKEND == "memory":
        logger.warning("Using in-memory ledger store - data will not persist")
        return InMemoryLedgerStore()
    if LEDGER_BACKEND == "firestore":
        return FirestoreLedgerStore()
    raise ValueError(f"Unknown LEDGER_BACKEND: {LEDGER_BACKEND}")
