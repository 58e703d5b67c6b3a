from __future__ import annotations

import copy
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists, NotFound

os.environ.setdefault("FIREBASE_PROJECT_ID", "test-project")

from billing.config import Settings  # noqa: E402

WEBHOOK_SECRET = "whsec_test"
KEY_SECRET = "key_secret_test"


def _deep_merge(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, firestore.ArrayUnion):
            current = list(target.get(key) or [])
            target[key] = current + [item for item in value.values if item not in current]
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class FakeSnapshot:
    def __init__(self, reference: "FakeDocumentReference", data: Optional[Dict[str, Any]]):
        self.reference = reference
        self.id = reference.id
        self._data = copy.deepcopy(data) if data is not None else None

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocumentReference:
    def __init__(self, db: "FakeFirestore", path: str):
        self._db = db
        self.path = path
        self.id = path.rsplit("/", 1)[-1]

    def collection(self, name: str) -> "FakeCollection":
        return FakeCollection(self._db, f"{self.path}/{name}")

    def get(self, transaction=None) -> FakeSnapshot:
        with self._db.lock:
            return FakeSnapshot(self, self._db.docs.get(self.path))

    def set(self, data: Dict[str, Any], merge: bool = False) -> None:
        with self._db.lock:
            self._db.apply([("set", self, data, merge)])

    def update(self, data: Dict[str, Any]) -> None:
        with self._db.lock:
            self._db.apply([("update", self, data, False)])

    def create(self, data: Dict[str, Any]) -> None:
        with self._db.lock:
            self._db.apply([("create", self, data, False)])


class FakeQuery:
    def __init__(self, db: "FakeFirestore", matcher, filters=None, limit=None):
        self._db = db
        self._matcher = matcher
        self._filters: List[Tuple[str, str, Any]] = list(filters or [])
        self._limit = limit

    def where(self, field: str, op: str, value: Any) -> "FakeQuery":
        return FakeQuery(self._db, self._matcher, self._filters + [(field, op, value)], self._limit)

    def limit(self, count: int) -> "FakeQuery":
        return FakeQuery(self._db, self._matcher, self._filters, count)

    @staticmethod
    def _passes(data: Dict[str, Any], field: str, op: str, value: Any) -> bool:
        if field not in data:
            return False
        current = data[field]
        if op == "==":
            return current == value
        if op == "!=":
            return current != value
        if current is None or type(current) is not type(value):
            return False
        if op == "<":
            return current < value
        if op == "<=":
            return current <= value
        if op == ">":
            return current > value
        if op == ">=":
            return current >= value
        raise ValueError(f"Unsupported operator {op}")

    def stream(self):
        with self._db.lock:
            matches = []
            for path in sorted(self._db.docs):
                if not self._matcher(path):
                    continue
                data = self._db.docs[path]
                if all(self._passes(data, f, op, v) for f, op, v in self._filters):
                    matches.append(FakeSnapshot(FakeDocumentReference(self._db, path), data))
        if self._limit is not None:
            matches = matches[: self._limit]
        return iter(matches)

    def get(self) -> List[FakeSnapshot]:
        return list(self.stream())


class FakeCollection(FakeQuery):
    def __init__(self, db: "FakeFirestore", path: str):
        depth = path.count("/") + 1
        prefix = path + "/"
        super().__init__(
            db,
            lambda doc_path: doc_path.startswith(prefix) and doc_path.count("/") == depth,
        )
        self.path = path

    def document(self, document_id: Optional[str] = None) -> FakeDocumentReference:
        return FakeDocumentReference(self._db, f"{self.path}/{document_id or uuid.uuid4().hex[:20]}")


class FakeBatch:
    def __init__(self, db: "FakeFirestore"):
        self._db = db
        self._ops: List[Tuple[str, FakeDocumentReference, Dict[str, Any], bool]] = []

    def create(self, ref, data):
        self._ops.append(("create", ref, data, False))

    def set(self, ref, data, merge: bool = False):
        self._ops.append(("set", ref, data, merge))

    def update(self, ref, data):
        self._ops.append(("update", ref, data, False))

    def commit(self):
        with self._db.lock:
            self._db.apply(self._ops)
        self._db.commits += 1


class FakeTransaction(FakeBatch):
    """Serializes the whole read-modify-write by holding the store lock from begin to commit."""

    _read_only = False
    _max_attempts = 5

    def __init__(self, db: "FakeFirestore"):
        super().__init__(db)
        self._id = None
        self._held = False

    def _clean_up(self) -> None:
        self._ops = []
        self._id = None

    def _begin(self, retry_id=None) -> None:
        self._db.lock.acquire()
        self._held = True
        self._id = uuid.uuid4().bytes

    def _commit(self):
        self._db.apply(self._ops)
        self._release()
        return []

    def _rollback(self) -> None:
        self._release()

    def _release(self) -> None:
        if self._held:
            self._held = False
            self._db.lock.release()


class FakeFirestore:
    """Just enough of the Firestore client for the billing code paths."""

    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.lock = threading.RLock()
        self.commits = 0

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def collection_group(self, name: str) -> FakeQuery:
        def matcher(path: str) -> bool:
            segments = path.split("/")
            return len(segments) >= 2 and segments[-2] == name

        return FakeQuery(self, matcher)

    def batch(self) -> FakeBatch:
        return FakeBatch(self)

    def transaction(self) -> "FakeTransaction":
        return FakeTransaction(self)

    def apply(self, ops) -> None:
        # Validate everything first so a failing batch writes nothing.
        for kind, ref, _, _ in ops:
            if kind == "create" and ref.path in self.docs:
                raise AlreadyExists(f"Document already exists: {ref.path}")
            if kind == "update" and ref.path not in self.docs:
                raise NotFound(f"No document to update: {ref.path}")
        for kind, ref, data, merge in ops:
            if kind == "set" and merge and ref.path in self.docs:
                _deep_merge(self.docs[ref.path], data)
            elif kind == "update":
                _deep_merge(self.docs[ref.path], data)
            else:
                self.docs[ref.path] = _deep_merge({}, data)

    # helpers for assertions
    def seed(self, path: str, data: Dict[str, Any]) -> None:
        self.docs[path] = copy.deepcopy(data)

    def doc(self, path: str) -> Optional[Dict[str, Any]]:
        data = self.docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    def list(self, collection: str) -> List[Dict[str, Any]]:
        depth = collection.count("/") + 1
        return [
            copy.deepcopy(data)
            for path, data in sorted(self.docs.items())
            if path.startswith(collection + "/") and path.count("/") == depth
        ]


@pytest.fixture
def db() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        firebase_project_id="test-project",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        razorpay_auto_capture=True,
        scheduler_token="sched-token",
        admin_uids="admin-1",
        provisioning_queue="inline",
    )


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def payment_entity(
    payment_id: str = "pay_1",
    *,
    order_id: str = "order_1",
    amount: int = 50000,
    status: str = "captured",
    notes: Optional[Dict[str, Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entity = {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "order_id": order_id,
        "method": "upi",
        "email": "user@example.com",
        "contact": "+919999999999",
        "notes": notes if notes is not None else {"planId": "gold_plan", "userId": "user-1"},
    }
    entity.update(extra)
    return entity


def envelope(event: str, entity: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"entity": "event", "event": event, "payload": {}}
    if entity is not None:
        body["payload"]["payment"] = {"entity": entity}
    return body
