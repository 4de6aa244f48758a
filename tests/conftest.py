"""Shared test fixtures for the AI proxy gateway tests."""

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from google.cloud import firestore

from uplift_gateway.config import GatewayConfig, load_config
from uplift_gateway.credits import InMemoryCreditLedger
from uplift_gateway.errors import AuthenticationError
from uplift_gateway.gateway import Gateway
from uplift_gateway.interactions import InMemoryInteractionSink, InteractionLogger
from uplift_gateway.quota import InMemoryQuotaStore
from uplift_gateway.router import build_registry

PROVIDER_ENV_VARS = ("CLAUDE_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY")


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "providers": {
            "claude": {
                "kind": "anthropic",
                "base_url": "https://anthropic.test/v1",
                "api_key_env": "CLAUDE_API_KEY",
                "default_model": "claude-test",
            },
            "openai": {
                "kind": "openai",
                "base_url": "https://openai.test/v1",
                "api_key_env": "OPENAI_API_KEY",
                "default_model": "gpt-test",
            },
            "gemini": {
                "kind": "gemini",
                "base_url": "https://gemini.test/v1beta/models",
                "api_key_env": "GEMINI_API_KEY",
                "default_model": "gemini-test",
            },
        },
        "rate_limits": {
            "ai": {"base": 10, "burst": 20, "window_seconds": 60},
        },
        "validation": {
            "max_messages": 10,
            "max_content_chars": 100,
            "max_total_chars": 500,
        },
        "auth": {"mode": "firebase", "project_id": "uplift-test"},
        "provider_timeout_seconds": 5,
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVerifier:
    """Identity verifier backed by a plain token -> user id map."""

    def __init__(self, tokens: Dict[str, str]) -> None:
        self.tokens = tokens
        self.calls = 0

    async def verify(self, token: str) -> str:
        self.calls += 1
        user_id = self.tokens.get(token)
        if user_id is None:
            raise AuthenticationError(detail="unknown test token")
        return user_id


class ProviderStub:
    """Fake upstream for all three wire formats, served via httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status = 200
        self.body: Optional[Any] = None
        self.raise_timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_timeout:
            raise httpx.ReadTimeout("upstream too slow", request=request)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "upstream failure"}})
        if self.body is not None:
            return httpx.Response(200, json=self.body)

        path = request.url.path
        if path.endswith("/messages"):
            return httpx.Response(
                200,
                json={
                    "content": [{"type": "text", "text": "claude says hi"}],
                    "usage": {"input_tokens": 3, "output_tokens": 4},
                },
            )
        if path.endswith(":generateContent"):
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "gemini says hi"}]}}],
                    "usageMetadata": {"totalTokenCount": 9},
                },
            )
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "openai says hi"}}],
                "usage": {"total_tokens": 11},
            },
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeSnapshot:
    def __init__(self, data: Optional[Dict[str, Any]]) -> None:
        self._data = copy.deepcopy(data)

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data)


class FakeDocumentRef:
    def __init__(self, client: "FakeFirestoreClient", path: str) -> None:
        self._client = client
        self.path = path

    async def get(self, transaction: Optional["FakeTransaction"] = None) -> FakeSnapshot:
        self._client.reads.append((self.path, transaction))
        return FakeSnapshot(self._client.documents.get(self.path))


class FakeCollection:
    def __init__(self, client: "FakeFirestoreClient", name: str) -> None:
        self._client = client
        self._name = name

    def document(self, document_id: str) -> FakeDocumentRef:
        return FakeDocumentRef(self._client, "{}/{}".format(self._name, document_id))

    async def add(self, data: Dict[str, Any]) -> Tuple[None, FakeDocumentRef]:
        ref = self.document("auto-{}".format(len(self._client.documents)))
        self._client.documents[ref.path] = copy.deepcopy(data)
        return None, ref


class FakeTransaction:
    """Buffers writes and applies them on commit, like a Firestore transaction."""

    def __init__(self, client: "FakeFirestoreClient") -> None:
        self._client = client
        self.pending: List[Tuple[str, str, Dict[str, Any]]] = []
        self.committed = False

    def set(self, ref: FakeDocumentRef, data: Dict[str, Any]) -> None:
        self.pending.append(("set", ref.path, copy.deepcopy(data)))

    def update(self, ref: FakeDocumentRef, fields: Dict[str, Any]) -> None:
        if ref.path not in self._client.documents:
            raise KeyError("No document to update: {}".format(ref.path))
        self.pending.append(("update", ref.path, copy.deepcopy(fields)))

    def commit(self) -> None:
        for op, path, data in self.pending:
            self._client.writes.append((op, path, data))
            if op == "set":
                self._client.documents[path] = data
                continue
            doc = self._client.documents[path]
            for field_path, value in data.items():
                target = doc
                *parents, leaf = field_path.split(".")
                for part in parents:
                    target = target.setdefault(part, {})
                target[leaf] = value
        self.committed = True


class FakeFirestoreClient:
    """Just enough of ``firestore.AsyncClient`` for the gateway's stores.

    Documents are keyed ``"<collection>/<id>"``.
    """

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.reads: List[Tuple[str, Optional[FakeTransaction]]] = []
        self.writes: List[Tuple[str, str, Dict[str, Any]]] = []
        self.transactions: List[FakeTransaction] = []

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def transaction(self) -> FakeTransaction:
        transaction = FakeTransaction(self)
        self.transactions.append(transaction)
        return transaction


def _run_in_fake_transaction(fn: Callable[..., Awaitable[Any]]):
    async def run(transaction: FakeTransaction) -> Any:
        result = await fn(transaction)
        transaction.commit()
        return result

    return run


@pytest.fixture()
def firestore_client(monkeypatch: pytest.MonkeyPatch) -> FakeFirestoreClient:
    """A fake Firestore client; transactional functions run against it directly."""
    monkeypatch.setattr(firestore, "async_transactional", _run_in_fake_transaction)
    return FakeFirestoreClient()


@dataclass
class Harness:
    gateway: Gateway
    ledger: InMemoryCreditLedger
    quota: InMemoryQuotaStore
    sink: InMemoryInteractionSink
    verifier: FakeVerifier
    stub: ProviderStub
    clock: FakeClock


@pytest.fixture()
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture()
def harness(
    test_config: GatewayConfig,
    provider_stub: ProviderStub,
    monkeypatch: pytest.MonkeyPatch,
) -> Harness:
    """A gateway wired to in-memory stores and the provider stub.

    Users: ``u1`` and ``u2`` start with 3 credits, ``broke`` with 0.
    """
    for env_var in PROVIDER_ENV_VARS:
        monkeypatch.setenv(env_var, "test-key")

    clock = FakeClock()
    ledger = InMemoryCreditLedger()
    ledger.set_balance("u1", 3)
    ledger.set_balance("u2", 3)
    ledger.set_balance("broke", 0)
    quota = InMemoryQuotaStore(test_config.rate_limits, clock=clock)
    sink = InMemoryInteractionSink()
    verifier = FakeVerifier(
        {"token-u1": "u1", "token-u2": "u2", "token-broke": "broke", "token-ghost": "ghost"}
    )
    gateway = Gateway(
        verifier=verifier,
        quota=quota,
        ledger=ledger,
        providers=build_registry(test_config, transport=provider_stub.transport),
        interactions=InteractionLogger(sink, timeout=1.0),
        limits=test_config.validation,
    )
    return Harness(
        gateway=gateway,
        ledger=ledger,
        quota=quota,
        sink=sink,
        verifier=verifier,
        stub=provider_stub,
        clock=clock,
    )


def make_body(
    user_id: str = "u1",
    provider: str = "claude",
    content: str = "hi",
    **extra: Any,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "provider": provider,
        "messages": [{"role": "user", "content": content}],
        "userId": user_id,
    }
    body.update(extra)
    return body


def encode(body: Any) -> bytes:
    return json.dumps(body).encode("utf-8")
