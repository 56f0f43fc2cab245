import asyncio
import json

import httpx
import pytest

from chorus.remote.telegram import TelegramClient, TelegramError


def _client(handler):
    return TelegramClient("123:abc", base_url="https://api.test", transport=httpx.MockTransport(handler))


def test_calls_post_json_to_bot_method():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 9}})

    async def scenario():
        client = _client(handler)
        try:
            return await client.send_message(1, "<b>hi</b>", parse_mode="HTML")
        finally:
            await client.close()

    assert asyncio.run(scenario()) == {"message_id": 9}
    assert seen == [("/bot123:abc/sendMessage", {"chat_id": 1, "text": "<b>hi</b>", "parse_mode": "HTML"})]


def test_get_updates_passes_offset():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "result": []})

    async def scenario():
        client = _client(handler)
        try:
            return await client.get_updates(offset=11, timeout=0)
        finally:
            await client.close()

    assert asyncio.run(scenario()) == []
    assert seen == [{"timeout": 0, "allowed_updates": ["message"], "offset": 11}]


def test_api_errors_raise_telegram_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"ok": False, "error_code": 400, "description": "Bad Request: can't parse entities"})

    async def scenario():
        client = _client(handler)
        try:
            await client.edit_message_text(1, 2, "<b")
        finally:
            await client.close()

    with pytest.raises(TelegramError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.error_code == 400
    assert "can't parse entities" in str(excinfo.value)


def test_non_json_error_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    async def scenario():
        client = _client(handler)
        try:
            await client.get_me()
        finally:
            await client.close()

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(scenario())
