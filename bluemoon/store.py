"""
Document store boundary.

The reward core talks to its backing database only through ``DocumentStore``.
``InMemoryDocumentStore`` is the bundled implementation: thread-safe, with
atomic units of work (all-or-nothing, rolled back on error), unique-key
conditional inserts, compare-and-set updates and live subscriptions that
receive a fresh snapshot after every committed unit.
"""

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from uuid import uuid4

import structlog

from .errors import DuplicateKeyError, NotFoundError, StaleWriteError

logger = structlog.get_logger(__name__)

USERS = "users"
REFERRALS = "referrals"
TRANSACTIONS = "transactions"
PAYMENT_REQUESTS = "payment_requests"
NOTIFICATIONS = "notifications"
REFERRAL_CODES = "referral_codes"

COLLECTIONS = (USERS, REFERRALS, TRANSACTIONS, PAYMENT_REQUESTS, NOTIFICATIONS, REFERRAL_CODES)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def referral_id_for(referrer_id: str, referred_id: str) -> str:
    return f"{referrer_id}_{referred_id}"


@dataclass
class Snapshot:
    collection: str
    documents: list[dict]
    revision: int


@dataclass
class Query:
    collection: str
    where: dict[str, Any] = field(default_factory=dict)
    order_by: Optional[str] = None
    descending: bool = False

    def matches(self, document: dict) -> bool:
        return all(document.get(key) == value for key, value in self.where.items())

    def apply(self, documents: list[dict]) -> list[dict]:
        selected = [d for d in documents if self.matches(d)]
        if self.order_by:
            if self.descending:
                # Newest insert first among equal sort keys.
                selected.reverse()
            selected.sort(key=lambda d: d.get(self.order_by), reverse=self.descending)
        return selected


class Subscription:
    """
    A live query. Only the newest unread snapshot is held; a newer commit
    replaces it. ``close()`` stops delivery.
    """

    def __init__(self, store: "InMemoryDocumentStore", query: Query):
        self.id = uuid4().hex
        self.query = query
        self._store = store
        self._ready = threading.Condition()
        self._latest: Optional[Snapshot] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: Snapshot) -> None:
        with self._ready:
            if self._closed:
                return
            self._latest = snapshot
            self._ready.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[Snapshot]:
        with self._ready:
            self._ready.wait_for(lambda: self._latest is not None or self._closed, timeout)
            snapshot, self._latest = self._latest, None
            return snapshot

    def drain(self) -> list[Snapshot]:
        with self._ready:
            snapshot, self._latest = self._latest, None
        return [snapshot] if snapshot is not None else []

    def close(self) -> None:
        with self._ready:
            if self._closed:
                return
            self._closed = True
            self._latest = None
            self._ready.notify_all()
        self._store.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class DocumentStore(ABC):
    @abstractmethod
    def atomic(self):
        """Context manager grouping writes into one all-or-nothing unit."""

    # Generic document access

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def insert(self, collection: str, doc_id: Optional[str], document: dict,
               unique_key: Optional[str] = None) -> str:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict,
               expected: Optional[dict] = None) -> dict:
        ...

    @abstractmethod
    def find(self, collection: str, where: Optional[dict] = None,
             order_by: Optional[str] = None, descending: bool = False) -> list[dict]:
        ...

    @abstractmethod
    def subscribe(self, collection: str, where: Optional[dict] = None,
                  order_by: Optional[str] = None, descending: bool = False) -> Subscription:
        ...

    # Users

    def get_user(self, user_id: str) -> Optional[dict]:
        return self.get(USERS, user_id)

    @abstractmethod
    def put_user(self, user_id: str, fields: dict) -> dict:
        ...

    # Referral codes

    def register_referral_code(self, code: str, uid: str, display_name: str) -> None:
        self.insert(REFERRAL_CODES, code, {"uid": uid, "display_name": display_name})

    def resolve_referral_code(self, code: str) -> Optional[dict]:
        if not code:
            return None
        return self.get(REFERRAL_CODES, code)

    # Referrals

    def create_referral(self, referrer_id: str, referred_id: str, fields: dict) -> str:
        doc_id = referral_id_for(referrer_id, referred_id)
        document = dict(fields, referrer_id=referrer_id, referred_user_id=referred_id)
        return self.insert(REFERRALS, doc_id, document)

    def get_referral(self, referral_id: str) -> Optional[dict]:
        return self.get(REFERRALS, referral_id)

    def update_referral_status(self, referral_id: str, new_status: str, fields: dict,
                               expected_status: Optional[str] = None) -> dict:
        expected = {"status": expected_status} if expected_status else None
        return self.update(REFERRALS, referral_id, dict(fields, status=new_status), expected)

    # Transactions

    def append_transaction(self, user_id: str, type: str, amount: int, description: str,
                           metadata: Optional[dict] = None,
                           idempotency_key: Optional[str] = None) -> str:
        document = {
            "user_id": user_id,
            "type": type,
            "amount": amount,
            "description": description,
            "status": "completed",
            "idempotency_key": idempotency_key,
        }
        document.update(metadata or {})
        return self.insert(TRANSACTIONS, None, document, unique_key=idempotency_key)

    def query_transactions(self, user_id: str, type: Optional[str] = None) -> list[dict]:
        where: dict[str, Any] = {"user_id": user_id}
        if type is not None:
            where["type"] = type
        return self.find(TRANSACTIONS, where, order_by="created_at")

    # Payment requests

    def create_payment_request(self, user_id: str, amount: int, bank_details: dict,
                               fields: Optional[dict] = None) -> str:
        document = {
            "user_id": user_id,
            "amount": amount,
            "bank_details": dict(bank_details),
            "status": "pending",
            "admin_note": "",
            "processed_at": None,
        }
        document.update(fields or {})
        return self.insert(PAYMENT_REQUESTS, None, document)

    def get_payment_request(self, request_id: str) -> Optional[dict]:
        return self.get(PAYMENT_REQUESTS, request_id)

    def update_payment_request(self, request_id: str, status: str, note: str = "",
                               expected_status: Optional[str] = None,
                               fields: Optional[dict] = None) -> dict:
        changes = {"status": status, "admin_note": note}
        changes.update(fields or {})
        expected = {"status": expected_status} if expected_status else None
        return self.update(PAYMENT_REQUESTS, request_id, changes, expected)

    # Notifications

    def add_notification(self, user_id: str, message: str) -> str:
        return self.insert(NOTIFICATIONS, None, {"user_id": user_id, "message": message, "read": False})


class InMemoryDocumentStore(DocumentStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, dict]] = {name: {} for name in COLLECTIONS}
        self._unique_keys: dict[str, str] = {}
        self._subscriptions: list[Subscription] = []
        self._revision = 0
        self._depth = 0
        self._dirty: set[str] = set()
        self._backup: Optional[tuple] = None

    @property
    def revision(self) -> int:
        return self._revision

    @contextmanager
    def atomic(self) -> Iterator["InMemoryDocumentStore"]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._backup = (copy.deepcopy(self._collections), dict(self._unique_keys))
                self._dirty = set()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._collections, self._unique_keys = self._backup
                    self._backup = None
                    self._dirty = set()
                    logger.debug("store_unit_rolled_back")
                raise
            self._depth -= 1
            if outermost:
                self._backup = None
                dirty, self._dirty = self._dirty, set()
                if dirty:
                    self._revision += 1
                    self._publish(dirty)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            document = self._collection(collection).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def insert(self, collection: str, doc_id: Optional[str], document: dict,
               unique_key: Optional[str] = None) -> str:
        with self.atomic():
            documents = self._collection(collection)
            if unique_key is not None and unique_key in self._unique_keys:
                raise DuplicateKeyError(f"Unique key {unique_key!r} already exists")
            doc_id = doc_id or uuid4().hex
            if doc_id in documents:
                raise DuplicateKeyError(f"{collection}/{doc_id} already exists")
            stored = copy.deepcopy(document)
            stored["id"] = doc_id
            stored.setdefault("created_at", utcnow())
            documents[doc_id] = stored
            if unique_key is not None:
                self._unique_keys[unique_key] = doc_id
            self._dirty.add(collection)
            return doc_id

    def update(self, collection: str, doc_id: str, fields: dict,
               expected: Optional[dict] = None) -> dict:
        with self.atomic():
            document = self._collection(collection).get(doc_id)
            if document is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            for key, value in (expected or {}).items():
                if document.get(key) != value:
                    raise StaleWriteError(
                        f"{collection}/{doc_id}: expected {key}={value!r}, found {document.get(key)!r}"
                    )
            document.update(copy.deepcopy(fields))
            self._dirty.add(collection)
            return copy.deepcopy(document)

    def put_user(self, user_id: str, fields: dict) -> dict:
        with self.atomic():
            users = self._collection(USERS)
            if user_id not in users:
                self.insert(USERS, user_id, fields)
                return self.get(USERS, user_id)
            return self.update(USERS, user_id, fields)

    def find(self, collection: str, where: Optional[dict] = None,
             order_by: Optional[str] = None, descending: bool = False) -> list[dict]:
        return self._run(Query(collection, dict(where or {}), order_by, descending))

    def subscribe(self, collection: str, where: Optional[dict] = None,
                  order_by: Optional[str] = None, descending: bool = False) -> Subscription:
        self._collection(collection)
        subscription = Subscription(self, Query(collection, dict(where or {}), order_by, descending))
        with self._lock:
            self._subscriptions.append(subscription)
            subscription.push(Snapshot(collection, self._run(subscription.query), self._revision))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _collection(self, name: str) -> dict[str, dict]:
        try:
            return self._collections[name]
        except KeyError:
            raise NotFoundError(f"Unknown collection {name!r}") from None

    def _run(self, query: Query) -> list[dict]:
        with self._lock:
            documents = copy.deepcopy(list(self._collection(query.collection).values()))
        return query.apply(documents)

    def _publish(self, collections: set[str]) -> None:
        for subscription in list(self._subscriptions):
            if subscription.query.collection in collections:
                subscription.push(Snapshot(
                    subscription.query.collection,
                    self._run(subscription.query),
                    self._revision,
                ))
