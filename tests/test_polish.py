"""Tests for the one-shot polish flow."""

import json

import httpx
import pytest

from chatline.client import CompletionClient
from chatline.config import DEFAULT_POLISH_PROMPT
from chatline.polish import EMPTY_POLISH_INPUT, POLISH_API_KEY_MISSING, polish_expression

SETTINGS = {
    "api_url": "https://llm.test/v1",
    "api_key": "sk-test",
    "model": "test-model",
    "system_prompt": DEFAULT_POLISH_PROMPT,
}


def sse_reply(text: str) -> bytes:
    frame = json.dumps({"choices": [{"delta": {"content": text}}]})
    return f"data: {frame}\ndata: [DONE]\n".encode()


@pytest.fixture
def captured():
    return []


@pytest.fixture
def client(captured):
    async def handler(request):
        captured.append(json.loads(request.content))
        return httpx.Response(200, content=sse_reply("**Polished:**\nBetter."))

    return CompletionClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_polish_sends_system_then_user(client, captured):
    chunks = []
    result = await polish_expression(client, SETTINGS, "me want good words", on_chunk=chunks.append)

    assert result.ok
    assert result.content == "**Polished:**\nBetter."
    assert chunks == ["**Polished:**\nBetter."]
    [body] = captured
    assert body["messages"] == [
        {"role": "system", "content": DEFAULT_POLISH_PROMPT},
        {"role": "user", "content": "me want good words"},
    ]
    assert body["stream"] is True


@pytest.mark.asyncio
async def test_polish_blank_input_skips_network(client, captured):
    result = await polish_expression(client, SETTINGS, "   \n ")
    assert result.error == EMPTY_POLISH_INPUT
    assert captured == []


@pytest.mark.asyncio
async def test_polish_missing_key_skips_network(client, captured):
    result = await polish_expression(client, {**SETTINGS, "api_key": ""}, "text")
    assert result.error == POLISH_API_KEY_MISSING
    assert result.content == ""
    assert captured == []
