import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from pricealert.notify.telegram import TelegramConfig, TelegramNotifier
from pricealert.utils.types import TriggerContext


class FakeBotApi:
    """Scripted Bot API: pops one (status, body) per request, then answers 200."""
    def __init__(self, script=()):
        self.script = list(script)
        self.requests = []

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append((request.match_info["method"], await request.json()))
        if self.script:
            status, body = self.script.pop(0)
            return web.json_response(body, status=status)
        return web.json_response({"ok": True, "result": {"message_id": 321}})


async def _notifier(api):
    app = web.Application()
    app.router.add_post("/bot{token}/{method}", api.handle)
    server = TestServer(app)
    await server.start_server()
    cfg = TelegramConfig(
        bot_token="T",
        rate_per_sec=100.0,
        initial_backoff_s=0.01,
        max_backoff_s=0.05,
        api_base=str(server.make_url("")).rstrip("/"),
    )
    return TelegramNotifier(cfg), server


CTX = TriggerContext(alert_id=5, symbol="BTC", current_price=106.0, baseline_price=100.0, pct=6.0, window_minutes=10)


@pytest.mark.asyncio
async def test_send_returns_message_id_and_buttons():
    api = FakeBotApi()
    n, server = await _notifier(api)
    try:
        assert await n.send("42", CTX) == "321"
    finally:
        await n.stop()
        await server.close()
    method, payload = api.requests[0]
    assert method == "sendMessage"
    assert payload["chat_id"] == "42"
    assert payload["parse_mode"] == "HTML"
    assert "BTC" in payload["text"]
    buttons = payload["reply_markup"]["inline_keyboard"][0]
    assert [b["callback_data"] for b in buttons] == ["confirm:5", "del:5"]


@pytest.mark.asyncio
async def test_send_retries_transient_failures():
    api = FakeBotApi([
        (500, {"ok": False}),
        (429, {"ok": False, "parameters": {"retry_after": 0.01}}),
    ])
    n, server = await _notifier(api)
    try:
        assert await n.send("42", CTX) == "321"
    finally:
        await n.stop()
        await server.close()
    assert len(api.requests) == 3


@pytest.mark.asyncio
async def test_send_gives_up():
    api = FakeBotApi([(502, {})] * 3)
    n, server = await _notifier(api)
    try:
        assert await n.send("42", CTX) is None
    finally:
        await n.stop()
        await server.close()
    assert len(api.requests) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    api = FakeBotApi([(400, {"ok": False, "description": "chat not found"})])
    n, server = await _notifier(api)
    try:
        assert await n.send("42", CTX) is None
        assert await n.answer_callback("cb-1", "✅ Alert confirmed") is True
    finally:
        await n.stop()
        await server.close()
    assert [m for m, _ in api.requests] == ["sendMessage", "answerCallbackQuery"]
    assert api.requests[1][1] == {"callback_query_id": "cb-1", "text": "✅ Alert confirmed"}
