import json
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from usage_core.cooldown import ProbeCooldownCache
from usage_core.credential_sources import SecretStoreSource
from usage_core.credential_store import CredentialStore
from usage_core.providers import ClaudeProvider
from usage_core.secret_store import InMemorySecretStore

NOW = 1_750_000_000.0
CLAUDE_SERVICE = "Claude Code-credentials"


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def strip_query(url: httpx.URL) -> str:
    return str(url).split("?", 1)[0]


class RecordingHandler:
    """MockTransport handler that records requests and replays routed responses."""

    def __init__(self, routes: Dict[str, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.method} {strip_query(request.url)}"
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        return handler(request)

    def calls(self, method: str, url: str) -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and strip_query(r.url) == url
        ]


def json_response(data, status_code: int = 200, headers: Optional[dict] = None):
    return lambda request: httpx.Response(status_code, json=data, headers=headers)


def claude_document(
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    expires_at_ms: Optional[int] = int((NOW + 3600) * 1000),
    wrapped: bool = True,
    **extra,
) -> str:
    payload = {"accessToken": access_token, "scopes": ["user:inference"], **extra}
    if refresh_token is not None:
        payload["refreshToken"] = refresh_token
    if expires_at_ms is not None:
        payload["expiresAt"] = expires_at_ms
    return json.dumps({"claudeAiOauth": payload} if wrapped else payload)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore({CLAUDE_SERVICE: claude_document()})


@pytest.fixture
def claude_provider(secret_store: InMemorySecretStore) -> ClaudeProvider:
    return ClaudeProvider(SecretStoreSource(secret_store, CLAUDE_SERVICE))


@pytest_asyncio.fixture
async def make_client():
    clients = []

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
def make_store(clock: FakeClock):
    def _make(providers, http: httpx.AsyncClient) -> CredentialStore:
        return CredentialStore(
            {provider.kind: provider for provider in providers}, http, clock=clock
        )

    return _make


@pytest.fixture
def cooldowns(clock: FakeClock) -> ProbeCooldownCache:
    return ProbeCooldownCache(cooldown_seconds=300, clock=clock)
