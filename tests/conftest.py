"""
Shared fixtures: an in-memory Firestore double plus fake OpenAI, GoCardless
and Stripe clients injected through constructor arguments.
"""

import copy
import hashlib
import hmac
import itertools
import json
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from classes.idempotency_cache import IdempotencyCache
from classes.llm_client import ChatLlmClient

# =========================================================================
# Firestore double
# =========================================================================

_auto_ids = itertools.count(1)


class FakeSnapshot:
    def __init__(self, doc_id: str, data: Optional[Dict[str, Any]]):
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data) if self._data is not None else None

    def get(self, field: str) -> Any:
        return (self._data or {}).get(field)


class FakeDocumentRef:
    def __init__(self, store: "FakeFirestore", collection: str, doc_id: str):
        self._store = store
        self.collection_name = collection
        self.id = doc_id

    def _docs(self) -> Dict[str, Dict[str, Any]]:
        return self._store.data.setdefault(self.collection_name, {})

    def set(self, data: Dict[str, Any], merge: bool = False) -> None:
        self._store.check_writable(self.collection_name)
        docs = self._docs()
        if merge and self.id in docs:
            docs[self.id].update(copy.deepcopy(data))
        else:
            docs[self.id] = copy.deepcopy(data)
        self._store.writes.append(("set", self.collection_name, self.id, merge))

    def update(self, data: Dict[str, Any]) -> None:
        self._store.check_writable(self.collection_name)
        docs = self._docs()
        if self.id not in docs:
            raise KeyError(f"No document to update: {self.collection_name}/{self.id}")
        docs[self.id].update(copy.deepcopy(data))
        self._store.writes.append(("update", self.collection_name, self.id, False))

    def get(self) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._docs().get(self.id))


class FakeQuery:
    _OPS = {
        "==": lambda a, b: a == b,
        "!=": lambda a, b: a != b,
        "in": lambda a, b: a in b,
    }

    def __init__(self, store: "FakeFirestore", collection: str, filters=None):
        self._store = store
        self._collection = collection
        self._filters = list(filters or [])

    def where(self, *, filter) -> "FakeQuery":
        return FakeQuery(self._store, self._collection, self._filters + [filter])

    def stream(self):
        for doc_id, data in list(self._store.data.get(self._collection, {}).items()):
            if all(self._OPS[f.op_string](data.get(f.field_path), f.value) for f in self._filters):
                yield FakeSnapshot(doc_id, data)


class FakeCollection(FakeQuery):
    def __init__(self, store: "FakeFirestore", name: str):
        super().__init__(store, name)
        self.name = name

    def document(self, doc_id: Optional[str] = None) -> FakeDocumentRef:
        return FakeDocumentRef(self._store, self.name, doc_id or f"auto-{next(_auto_ids)}")

    def add(self, data: Dict[str, Any]):
        ref = self.document()
        ref.set(data)
        return None, ref


class FakeFirestore:
    def __init__(self):
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.writes: List[tuple] = []
        self.failing_collections: set = set()

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def check_writable(self, collection: str) -> None:
        if collection in self.failing_collections:
            raise RuntimeError(f"write to {collection} failed")

    def docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.data.get(collection, {})

    def logs(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        entries = list(self.docs("webhook_logs").values())
        if event_type is None:
            return entries
        return [e for e in entries if e["eventType"] == event_type]


@pytest.fixture
def db() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def cache() -> IdempotencyCache:
    return IdempotencyCache()


# =========================================================================
# OpenAI double
# =========================================================================


class FakeCompletions:
    def __init__(self, content: Optional[str] = None, error: Optional[Exception] = None, choices: bool = True):
        self.content = content
        self.error = error
        self.choices = choices
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        choices = [SimpleNamespace(message=SimpleNamespace(content=self.content))] if self.choices else []
        usage = SimpleNamespace(prompt_tokens=120, completion_tokens=80, total_tokens=200)
        return SimpleNamespace(choices=choices, usage=usage)


class FakeOpenAIClient:
    def __init__(self, **kwargs):
        self.completions = FakeCompletions(**kwargs)
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def make_chat_llm():
    def _make(content: Any = None, error: Optional[Exception] = None, choices: bool = True):
        if content is not None and not isinstance(content, str):
            content = json.dumps(content)
        fake = FakeOpenAIClient(content=content, error=error, choices=choices)
        llm = ChatLlmClient("gpt-4o", api_key="test-key", client=fake)
        llm.fake = fake
        return llm

    return _make


@pytest.fixture(autouse=True)
def _no_ambient_secrets(monkeypatch):
    for name in (
        "OPENAI_API_KEY",
        "OPENAI_API_KEY_SECRET_ID",
        "GOCARDLESS_ACCESS_TOKEN",
        "GOCARDLESS_ACCESS_TOKEN_SECRET_ID",
        "GOCARDLESS_WEBHOOK_SECRET",
        "GOCARDLESS_WEBHOOK_SECRET_SECRET_ID",
        "STRIPE_SECRET_KEY",
        "STRIPE_SECRET_KEY_SECRET_ID",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_WEBHOOK_SECRET_SECRET_ID",
        "STRIPE_STANDARD_PRICE_ID",
        "STRIPE_STANDARD_PRICE_ID_SECRET_ID",
        "STRIPE_PAY_AS_YOU_GO_PRICE_ID",
        "STRIPE_PAY_AS_YOU_GO_PRICE_ID_SECRET_ID",
    ):
        monkeypatch.delenv(name, raising=False)


# =========================================================================
# Payment provider doubles
# =========================================================================


class FakeRedirectFlows:
    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.completed: List[tuple] = []
        self.fail_complete = False

    def create(self, params):
        self.created.append(params)
        return SimpleNamespace(id="RE123", redirect_url="https://pay-sandbox.gocardless.com/flow/RE123")

    def complete(self, identity, params):
        if self.fail_complete:
            raise RuntimeError("redirect flow already completed")
        self.completed.append((identity, params))
        return SimpleNamespace(links=SimpleNamespace(mandate="MD123", customer="CU123"))


class FakeGcSubscriptions:
    def __init__(self):
        self.created: List[Dict[str, Any]] = []

    def create(self, params):
        self.created.append(params)
        return SimpleNamespace(
            id="SB123",
            status="active",
            amount=params["amount"],
            currency=params["currency"],
            start_date=params.get("start_date"),
        )


@pytest.fixture
def gocardless_sdk():
    return SimpleNamespace(redirect_flows=FakeRedirectFlows(), subscriptions=FakeGcSubscriptions())


class FakeStripeSdk:
    def __init__(self):
        self.customers: List[Dict[str, Any]] = []
        self.sessions: List[Dict[str, Any]] = []
        self.Customer = SimpleNamespace(create=self._create_customer)
        self.checkout = SimpleNamespace(Session=SimpleNamespace(create=self._create_session))

    def _create_customer(self, **kwargs):
        self.customers.append(kwargs)
        return {"id": "cus_123", "email": kwargs.get("email")}

    def _create_session(self, **kwargs):
        self.sessions.append(kwargs)
        return {"id": "cs_test_123", "url": "https://checkout.stripe.com/c/pay/cs_test_123"}


@pytest.fixture
def stripe_sdk():
    return FakeStripeSdk()


# =========================================================================
# Signing helpers
# =========================================================================


def gocardless_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def stripe_signature(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
