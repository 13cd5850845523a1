import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from kalissh.modules.errors import BackendError, ModelTimeoutError
from kalissh.modules.llm import (
    DEFAULT_MODELS,
    ModelClient,
    ModelConfig,
    ModelRegistry,
    ModelRole,
    ModelStatsTracker,
)

API_URL = "https://backend.test/api/v1/chat/completions"
MESSAGES = [{"role": "user", "content": "What does nmap -sS do?"}]


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_client(handler, stats=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelClient("sk-test", API_URL, http_client=http, stats=stats)


@pytest.fixture
def deepseek():
    return ModelRegistry()["deepseek"]


class TestModelRegistry:
    def test_default_panel(self):
        registry = ModelRegistry()

        assert list(registry) == ["llama", "deepseek", "mistral", "qwen", "gpt", "gemma"]
        assert registry["deepseek"].role is ModelRole.REASONING
        assert registry["qwen"].role is ModelRole.VALIDATION
        assert registry["mistral"].timeout == 25

    def test_duplicate_keys_rejected(self):
        with pytest.raises(ValueError, match="Duplicate model key"):
            ModelRegistry([DEFAULT_MODELS[0], DEFAULT_MODELS[0]])

    def test_lookup_by_model_id(self):
        registry = ModelRegistry()

        assert registry.by_model_id("google/gemma-7b-it").key == "gemma"
        assert registry.by_model_id("unknown/model") is None


class TestModelStats:
    def test_defaults_before_any_call(self):
        stats = ModelStatsTracker().get("deepseek/deepseek-chat")

        assert stats.success_rate == 100.0
        assert stats.avg_response_time == 0.0
        assert stats.status == "active"

    def test_counters(self):
        tracker = ModelStatsTracker(clock=lambda: 42.0)
        tracker.record_success("m", 1.0)
        tracker.record_success("m", 3.0)
        tracker.record_failure("m", "timeout")

        stats = tracker.get("m")
        assert stats.calls == 3
        assert stats.avg_response_time == 2.0
        assert stats.success_rate == pytest.approx(66.666, rel=1e-3)
        assert stats.last_error == "timeout"
        assert stats.last_called == 42.0
        # Mostly successful, so still reported active
        assert stats.status == "active"

    def test_failing_model_reported_as_error(self):
        tracker = ModelStatsTracker()
        tracker.record_failure("m", "HTTP 500")

        assert tracker.get("m").status == "error"

        tracker.record_success("m", 0.5)
        assert tracker.get("m").status == "active"

    def test_get_returns_copy(self):
        tracker = ModelStatsTracker()
        tracker.record_success("m", 1.0)

        snapshot = tracker.get("m")
        snapshot.calls = 99

        assert tracker.get("m").calls == 1


class TestModelClient:
    @pytest.mark.asyncio
    async def test_successful_call(self, deepseek):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json=completion("It performs a SYN scan."))

        stats = ModelStatsTracker()
        client = make_client(handler, stats)

        response = await client.call(deepseek, MESSAGES, 0.3)

        assert response.ok
        assert response.content == "It performs a SYN scan."
        assert response.model == "deepseek/deepseek-chat"
        assert response.role is ModelRole.REASONING
        assert seen["auth"] == "Bearer sk-test"
        assert seen["payload"] == {
            "model": "deepseek/deepseek-chat",
            "messages": MESSAGES,
            "temperature": 0.3,
        }
        assert stats.get("deepseek/deepseek-chat").successes == 1

    @pytest.mark.asyncio
    async def test_non_2xx_status(self, deepseek):
        stats = ModelStatsTracker()
        client = make_client(lambda request: httpx.Response(500, text="upstream error"), stats)

        with pytest.raises(BackendError, match="status 500"):
            await client.call(deepseek, MESSAGES, 0.3)

        recorded = stats.get("deepseek/deepseek-chat")
        assert recorded.calls == 1
        assert recorded.successes == 0
        assert recorded.status == "error"

    @pytest.mark.asyncio
    async def test_empty_choices(self, deepseek):
        client = make_client(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(BackendError, match="no choices"):
            await client.call(deepseek, MESSAGES, 0.3)

    @pytest.mark.asyncio
    async def test_malformed_choice(self, deepseek):
        client = make_client(lambda request: httpx.Response(200, json={"choices": [{"text": "hi"}]}))

        with pytest.raises(BackendError, match="malformed"):
            await client.call(deepseek, MESSAGES, 0.3)

    @pytest.mark.asyncio
    async def test_invalid_json(self, deepseek):
        client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))

        with pytest.raises(BackendError, match="Invalid JSON"):
            await client.call(deepseek, MESSAGES, 0.3)

    @pytest.mark.asyncio
    async def test_transport_error(self, deepseek):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(BackendError, match="failed"):
            await client.call(deepseek, MESSAGES, 0.3)

    @pytest.mark.asyncio
    async def test_http_timeout_becomes_model_timeout(self, deepseek):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        stats = ModelStatsTracker()
        client = make_client(handler, stats)

        with pytest.raises(ModelTimeoutError):
            await client.call(deepseek, MESSAGES, 0.3)
        assert stats.get("deepseek/deepseek-chat").last_error is not None

    @pytest.mark.asyncio
    async def test_deadline_enforced(self, deepseek):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json=completion("too late"))

        client = make_client(handler)
        quick = replace(deepseek, timeout=0.05)

        with pytest.raises(ModelTimeoutError, match="timed out after 0.05s"):
            await client.call(quick, MESSAGES, 0.3)

    @pytest.mark.asyncio
    async def test_null_content_is_empty(self):
        config = ModelConfig("x", "x/model", "X", ModelRole.GENERAL, 5)
        client = make_client(lambda request: httpx.Response(200, json=completion(None)))

        response = await client.call(config, MESSAGES, 0.3)

        assert response.content == ""
        assert not response.ok

    @pytest.mark.asyncio
    async def test_aclose_leaves_shared_client_open(self, deepseek):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=completion("ok"))))
        client = ModelClient("sk-test", API_URL, http_client=http)

        await client.aclose()

        assert not http.is_closed
        await http.aclose()
