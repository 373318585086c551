"""LLMClient against a mocked OpenAI client."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from openai import OpenAI, OpenAIError

from backstage.config import Settings
from backstage.errors import ModelProviderError
from backstage.llm import LLMClient


def _completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


def _stream(*chunks):
    """Iterable with close(), like openai.Stream."""
    stream = MagicMock()
    stream.__iter__.return_value = iter(chunks)
    return stream


@pytest.fixture
def openai_client():
    return MagicMock(spec=OpenAI)


@pytest.fixture
def llm_client(openai_client):
    # spec=OpenAI does not expose nested attributes, so wire them explicitly
    openai_client.chat = MagicMock()
    return LLMClient(model="test-model", client=openai_client)


class TestGenerate:
    def test_sends_system_and_prompt(self, llm_client, openai_client):
        openai_client.chat.completions.create.return_value = _completion("  16:30  ")

        assert llm_client.generate("be brief", "When is soundcheck?") == "16:30"

        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "When is soundcheck?"},
        ]

    def test_provider_error_is_wrapped(self, llm_client, openai_client, caplog):
        openai_client.chat.completions.create.side_effect = OpenAIError("rate limited: key sk-123")

        with pytest.raises(ModelProviderError) as exc:
            llm_client.generate("s", "p")

        assert "sk-123" not in exc.value.message
        assert "rate limited" in caplog.text


class TestStream:
    def test_yields_non_empty_deltas(self, llm_client, openai_client):
        stream = _stream(_chunk("Sound"), _chunk(None), SimpleNamespace(choices=[]), _chunk("check"))
        openai_client.chat.completions.create.return_value = stream

        assert list(llm_client.stream("s", "p")) == ["Sound", "check"]
        assert openai_client.chat.completions.create.call_args.kwargs["stream"] is True
        stream.close.assert_called_once()

    def test_early_stop_closes_provider_stream(self, llm_client, openai_client):
        stream = _stream(_chunk("Sound"), _chunk("check"))
        openai_client.chat.completions.create.return_value = stream

        pieces = llm_client.stream("s", "p")
        assert next(pieces) == "Sound"
        pieces.close()

        stream.close.assert_called_once()

    def test_open_failure_raises_immediately(self, llm_client, openai_client):
        openai_client.chat.completions.create.side_effect = OpenAIError("down")
        with pytest.raises(ModelProviderError):
            llm_client.stream("s", "p")

    def test_failure_mid_stream(self, llm_client, openai_client):
        def broken():
            yield _chunk("Sound")
            raise OpenAIError("connection reset")

        openai_client.chat.completions.create.return_value = broken()
        pieces = llm_client.stream("s", "p")
        assert next(pieces) == "Sound"
        with pytest.raises(ModelProviderError):
            next(pieces)


class TestGenerateJson:
    def test_requests_strict_schema(self, llm_client, openai_client):
        openai_client.chat.completions.create.return_value = _completion('{"timelines": []}')
        schema = {"type": "object"}

        assert llm_client.generate_json("s", "p", "event_timeline", schema) == '{"timelines": []}'

        fmt = openai_client.chat.completions.create.call_args.kwargs["response_format"]
        assert fmt == {
            "type": "json_schema",
            "json_schema": {"name": "event_timeline", "strict": True, "schema": schema},
        }


class TestConstruction:
    def test_from_settings_is_lazy(self):
        llm = LLMClient.from_settings(Settings(openai_api_key=None, llm_model="m"))
        assert llm.model == "m"
        assert llm._client is None
