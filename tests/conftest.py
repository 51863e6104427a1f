import json
from collections.abc import Callable, Iterator
from contextlib import asynccontextmanager
from typing import Any

import pytest
from fastapi.testclient import TestClient

from chatrelay.config.settings import Settings, clear_settings_cache
from chatrelay.main import create_app
from chatrelay.storage.conversations import InMemoryConversationStore
from chatrelay.storage.recommendations import InMemoryRecommendationStore
from chatrelay.tenants.directory import InMemoryTenantDirectory, TenantSettings

CLASSIFIER_REPLY = json.dumps({"topic": "pirates", "sentiment": "positive", "is_troll": False})


class RecordingProvider:
    def __init__(
        self,
        reply: str = "Ahoy there!",
        error: Exception | None = None,
        name: str = "recording",
    ):
        self.name = name
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []
        self.json_flags: list[bool] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        self.prompts.append(prompt)
        self.json_flags.append(json_output)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn

    async def __aenter__(self) -> "FakeCursor":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def execute(self, sql: str, params: Any = None) -> None:
        await self._conn.execute(sql, params)

    async def fetchone(self) -> dict[str, Any] | None:
        return self._conn.rows.pop(0) if self._conn.rows else None


class FakeTransaction:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn

    async def __aenter__(self) -> "FakeTransaction":
        self._conn.transactions_opened += 1
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        if exc_type is None:
            self._conn.commits += 1
        else:
            self._conn.rollbacks += 1
        return False


class FakeConnection:
    """Records statements; raises ``fail_with`` on the statement matching ``fail_on``."""

    def __init__(
        self,
        rows: list[dict[str, Any]] | None = None,
        fail_on: str | None = None,
        fail_with: Exception | None = None,
    ):
        self.rows = list(rows or [])
        self.fail_on = fail_on
        self.fail_with = fail_with
        self.statements: list[tuple[str, Any]] = []
        self.transactions_opened = 0
        self.commits = 0
        self.rollbacks = 0

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    def cursor(self, row_factory: Any = None) -> FakeCursor:
        _ = row_factory
        return FakeCursor(self)

    async def execute(self, sql: str, params: Any = None) -> None:
        if self.fail_on is not None and self.fail_on in sql and self.fail_with is not None:
            raise self.fail_with
        self.statements.append((sql, params))


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn

    @asynccontextmanager
    async def connection(self, timeout: float | None = None):  # type: ignore[no-untyped-def]
        _ = timeout
        yield self.conn


@pytest.fixture
def recording_provider_cls() -> type[RecordingProvider]:
    return RecordingProvider


@pytest.fixture
def fake_db() -> dict[str, type]:
    return {"connection": FakeConnection, "pool": FakePool}


@pytest.fixture
def generation_provider() -> RecordingProvider:
    return RecordingProvider(reply="Ahoy there!", name="generation")


@pytest.fixture
def classifier_provider() -> RecordingProvider:
    return RecordingProvider(reply=CLASSIFIER_REPLY, name="classifier")


@pytest.fixture
def tenant_directory() -> InMemoryTenantDirectory:
    return InMemoryTenantDirectory(
        [
            TenantSettings(account_number=1001, api_key="tenant-key", sources=("web", "mobile")),
            TenantSettings(
                account_number=2002,
                api_key="pirate-key",
                prompt="You are a pirate.",
            ),
            TenantSettings(account_number=3003, api_key=None),
        ]
    )


@pytest.fixture
def conversation_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def recommendation_store() -> InMemoryRecommendationStore:
    return InMemoryRecommendationStore()


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch,
    generation_provider: RecordingProvider,
    classifier_provider: RecordingProvider,
    tenant_directory: InMemoryTenantDirectory,
    conversation_store: InMemoryConversationStore,
    recommendation_store: InMemoryRecommendationStore,
) -> Iterator[TestClient]:
    monkeypatch.setenv("RELAY_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("RELAY_PROVIDER_NAME", "stub")
    clear_settings_cache()
    app = create_app(
        Settings(),
        generation_provider=generation_provider,
        classifier_provider=classifier_provider,
        tenant_directory=tenant_directory,
        conversation_store=conversation_store,
        recommendation_store=recommendation_store,
    )
    with TestClient(app) as test_client:
        yield test_client
    clear_settings_cache()


@pytest.fixture
def drain(client: TestClient) -> Callable[[], int]:
    def _drain() -> int:
        runner = client.app.state.runner  # type: ignore[attr-defined]
        return client.portal.call(runner.drain, 5.0)  # type: ignore[union-attr]

    return _drain


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"x-api-key": "tenant-key"}


@pytest.fixture
def parse_sse() -> Callable[[str], list[tuple[str, dict[str, Any]]]]:
    def _parse(text: str) -> list[tuple[str, dict[str, Any]]]:
        events: list[tuple[str, dict[str, Any]]] = []
        for block in text.split("\n\n"):
            if not block.strip():
                continue
            name = ""
            data = ""
            for line in block.split("\n"):
                if line.startswith("event: "):
                    name = line.removeprefix("event: ").strip()
                elif line.startswith("data: "):
                    data = line.removeprefix("data: ").strip()
            events.append((name, json.loads(data)))
        return events

    return _parse
