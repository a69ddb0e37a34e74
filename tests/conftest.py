"""Shared fixtures for the Copilot Pool Proxy test suite."""

import json
from collections import defaultdict

import httpx
import pytest

from copilot_pool.accounts.store import JSONAccountStore
from copilot_pool.accounts.usage_cache import UsageCache
from copilot_pool.config.settings import Settings, get_settings
from copilot_pool.instances.registry import InstanceRegistry
from copilot_pool.main import create_app
from copilot_pool.routing.selector import AccountSelector
from copilot_pool.runtime import ProxyRuntime
from copilot_pool.upstream.copilot import CopilotClient

DEFAULT_MODELS = {
    "object": "list",
    "data": [
        {
            "id": "gpt-4o",
            "name": "GPT-4o",
            "vendor": "Azure OpenAI",
            "capabilities": {"tokenizer": "o200k_base", "limits": {"max_output_tokens": 4096}},
        },
        {
            "id": "claude-sonnet-4",
            "name": "Claude Sonnet 4",
            "vendor": "Anthropic",
            "capabilities": {"tokenizer": "o200k_base", "limits": {"max_output_tokens": 16000}},
        },
        {
            "id": "gpt-5-codex",
            "name": "GPT-5 Codex",
            "vendor": "OpenAI",
            "supported_endpoints": ["/responses"],
            "capabilities": {"tokenizer": "o200k_base", "limits": {"max_output_tokens": 32000}},
        },
    ],
}


def sse_body(chunks: list, done: bool = True) -> bytes:
    """Encode chat-completion chunks as an OpenAI-style SSE body."""
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def responses_sse_body(events: list[dict]) -> bytes:
    return "".join(
        f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events
    ).encode()


def chat_completion(content: str = "Hello!", model: str = "gpt-4o", **message_fields) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content, **message_fields},
            "finish_reason": "tool_calls" if "tool_calls" in message_fields else "stop",
        }],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    }


class FakeCopilot:
    """httpx.MockTransport handler imitating GitHub and Copilot endpoints.

    Copilot tokens are ``copilot-<github_token>`` so every upstream call can
    be attributed back to the account that made it.
    """

    def __init__(self):
        self.refresh_in = 1500
        self.models = DEFAULT_MODELS
        self.usage: dict = {
            "quota_snapshots": {
                "premium_interactions": {"entitlement": 300, "remaining": 150, "unlimited": False},
                "chat": {"entitlement": 0, "remaining": 0, "unlimited": True},
                "completions": {"entitlement": 0, "remaining": 0, "unlimited": True},
            }
        }
        self.token_status: dict[str, int] = {}
        self.chat_status: dict[str, int] = {}
        self.chat_response: dict = chat_completion()
        self.stream_body: bytes = sse_body([])
        self.responses_response: dict = {}
        self.responses_stream: bytes = b""
        self.token_fetches: dict[str, int] = defaultdict(int)
        self.calls: list[tuple[str, str]] = []  # (path, github_token)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.url.host == "aur.archlinux.org":
            return httpx.Response(200, text="pkgname=visual-studio-code-bin\npkgver=1.99.0\npkgrel=1\n")

        if path == "/copilot_internal/v2/token":
            github_token = request.headers["authorization"].removeprefix("token ")
            self.token_fetches[github_token] += 1
            status = self.token_status.get(github_token, 200)
            if status != 200:
                return httpx.Response(status, text="Bad credentials")
            return httpx.Response(200, json={
                "token": f"copilot-{github_token}",
                "refresh_in": self.refresh_in,
            })

        if path == "/copilot_internal/user":
            return httpx.Response(200, json=self.usage)

        github_token = request.headers["authorization"].removeprefix("Bearer copilot-")
        self.calls.append((path, github_token))
        self.requests.append(request)

        if path == "/models":
            return httpx.Response(200, json=self.models)

        status = self.chat_status.get(github_token, 200)
        if status >= 400:
            return httpx.Response(status, json={
                "error": {"message": f"failure from {github_token}", "type": "upstream_error"},
            })

        payload = json.loads(request.content)
        if path == "/embeddings":
            return httpx.Response(200, json={"object": "list", "data": [{"embedding": [0.1, 0.2]}]})
        if path == "/responses":
            if payload.get("stream"):
                return self._sse(self.responses_stream)
            return httpx.Response(200, json=self.responses_response)
        if payload.get("stream"):
            return self._sse(self.stream_body)
        return httpx.Response(200, json=self.chat_response)

    @staticmethod
    def _sse(body: bytes) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    def chat_calls(self) -> list[str]:
        """GitHub tokens of the accounts that received chat calls, in order."""
        return [token for path, token in self.calls if path != "/models"]


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(AUTO_START="false", LOG_LEVEL="DEBUG")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=str(tmp_path), _env_file=None)


@pytest.fixture
def fake_copilot() -> FakeCopilot:
    return FakeCopilot()


@pytest.fixture
def copilot_client(settings, fake_copilot) -> CopilotClient:
    return CopilotClient(settings, transport=httpx.MockTransport(fake_copilot))


@pytest.fixture
def store(settings) -> JSONAccountStore:
    return JSONAccountStore(settings.accounts_path)


@pytest.fixture
def usage_cache(settings) -> UsageCache:
    return UsageCache(settings.usage_cache_path)


@pytest.fixture
async def registry(copilot_client, usage_cache):
    registry = InstanceRegistry(copilot_client, usage_cache=usage_cache)
    yield registry
    await registry.stop_all()
    await copilot_client.close()


@pytest.fixture
def selector(store, registry, usage_cache) -> AccountSelector:
    return AccountSelector(store, registry, usage_cache)


@pytest.fixture
def runtime(store, usage_cache, copilot_client, registry, selector) -> ProxyRuntime:
    return ProxyRuntime(
        store=store,
        usage_cache=usage_cache,
        client=copilot_client,
        registry=registry,
        selector=selector,
    )


@pytest.fixture
def add_accounts(store, registry):
    """Factory fixture: create accounts and start their instances.

    Usage:
        accounts = await add_accounts(3, priorities=[3, 1, 2])
    """
    async def _add(count: int, priorities: list[int] | None = None, start: bool = True):
        accounts = []
        for i in range(count):
            account = await store.add_account(
                name=f"account-{i}",
                github_token=f"gh{i}",
                priority=priorities[i] if priorities else 0,
            )
            if start:
                await registry.start_instance(account)
            accounts.append(account)
        return accounts

    return _add


@pytest.fixture
async def app_client(runtime):
    """httpx AsyncClient wired to the FastAPI app with a fake upstream."""
    app = create_app(runtime)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
