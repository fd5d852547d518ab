"""Tests for the issue classifier client and the classifier gateway."""

import asyncio
import json

import httpx
import pytest

from api.app.ai_client import IssueClassifier, _extract_json, _sanitize_response_body
from api.app.batch import ClassifierGateway
from api.app.db import get_issue_labels
from api.app.errors import TransientClassificationFailure

from .support import make_item


@pytest.fixture
def ai_env(monkeypatch):
    monkeypatch.setenv("AI_PROVIDER", "openai")
    monkeypatch.setenv("AI_MODEL", "test-model")
    monkeypatch.setenv("AI_BASE_URL", "https://llm.example.test/v1")
    monkeypatch.setenv("AI_API_KEY", "sk-testkey123456")


def _classify(handler, title="Docker image crashes", body="on startup"):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            classifier = IssueClassifier(client, asyncio.Semaphore(2))
            return await classifier.classify(title, body)

    return asyncio.run(scenario())


class TestIssueClassifier:
    """Tests for IssueClassifier against a mocked endpoint."""

    def test_openai_chat_completion(self, ai_env):
        """The OpenAI-compatible response is parsed and validated."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["payload"] = json.loads(request.content)
            content = '```json\n{"Docker": "true", "version": "1.2.3", "Model Provider": "false"}\n```'
            return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

        labels = _classify(handler)
        assert seen["url"] == "https://llm.example.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-testkey123456"
        assert seen["payload"]["model"] == "test-model"
        assert "Docker image crashes" in seen["payload"]["messages"][1]["content"]
        assert labels["docker"] is True
        assert labels["version"] == "1.2.3"
        assert labels["model_provider"] is None

    def test_anthropic_messages(self, ai_env, monkeypatch):
        """Anthropic text blocks are joined before parsing."""
        monkeypatch.setenv("AI_PROVIDER", "anthropic")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-api-key")
            body = {"content": [{"type": "text", "text": 'Result: {"Linux": true}'}]}
            return httpx.Response(200, json=body)

        labels = _classify(handler)
        assert seen["url"] == "https://llm.example.test/v1/messages"
        assert seen["key"] == "sk-testkey123456"
        assert labels["linux"] is True

    def test_error_status_masks_secrets(self, ai_env):
        """Non-2xx responses raise with the body sanitized."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": "bad", "api_key": "sk-leakedsecret99"})

        with pytest.raises(httpx.HTTPStatusError) as excinfo:
            _classify(handler)
        assert "sk-leakedsecret99" not in str(excinfo.value)

    def test_non_json_answer_raises(self, ai_env):
        """A reply without a JSON object is an error."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": [{"message": {"content": "I cannot help"}}]})

        with pytest.raises(ValueError):
            _classify(handler)

    def test_unconfigured_provider(self, ai_env, monkeypatch):
        """AI_PROVIDER=none refuses to classify."""
        monkeypatch.setenv("AI_PROVIDER", "none")
        with pytest.raises(ValueError, match="AI_PROVIDER"):
            _classify(lambda request: httpx.Response(200))


class TestHelpers:
    """Tests for response parsing helpers."""

    def test_extract_json_from_noise(self):
        assert _extract_json('noise {"a": 1} trailing') == {"a": 1}

    def test_extract_json_rejects_lists(self):
        assert _extract_json("[1, 2]") is None

    def test_sanitize_masks_keys(self):
        masked = _sanitize_response_body('{"token": "abcdefgh"}')
        assert "abcdefgh" not in masked


class SlowClassifier:
    async def classify(self, title, body):
        await asyncio.sleep(1)
        return {"chat": True}


class BrokenClassifier:
    async def classify(self, title, body):
        raise httpx.ConnectError("connection refused")


class StaticClassifier:
    async def classify(self, title, body):
        return {"chat": True}


class TestClassifierGateway:
    """Tests for time-bounded classify and persist."""

    def test_timeout_is_transient(self):
        gateway = ClassifierGateway(SlowClassifier(), item_timeout=0.01)
        with pytest.raises(TransientClassificationFailure, match="timed out"):
            asyncio.run(gateway.classify(make_item(1)))

    def test_network_error_is_transient(self):
        gateway = ClassifierGateway(BrokenClassifier())
        with pytest.raises(TransientClassificationFailure, match="connection refused"):
            asyncio.run(gateway.classify(make_item(1)))

    def test_persist_writes_labels(self):
        gateway = ClassifierGateway(StaticClassifier(), provider="openai", model="test-model")

        async def scenario():
            item = make_item(7)
            labels = await gateway.classify(item)
            await gateway.persist(item, labels)
            return await get_issue_labels(7)

        stored = asyncio.run(scenario())
        assert stored["labels"] == {"chat": True}
        assert stored["model"] == "test-model"
