import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from shares_gate.errors import NotifierError
from shares_gate.models import Permission
from shares_gate.notifier import FULL_PERMISSIONS, AccessNotifier, TelegramNotifier


def test_build_payload():
    notifier = TelegramNotifier()
    payload = notifier.build_payload("-100", " 42 ", Permission.NONE)
    assert payload["user_id"] == 42
    assert payload["chat_id"] == "-100"
    assert set(payload["permissions"]) == set(FULL_PERMISSIONS)
    assert not any(payload["permissions"].values())
    assert all(notifier.build_payload("-100", "42", Permission.FULL)["permissions"].values())

    with pytest.raises(NotifierError):
        notifier.build_payload("-100", "@alice", Permission.FULL)


async def fake_bot_api(ok: bool):
    seen = []

    async def restrict(request: web.Request) -> web.Response:
        seen.append((request.match_info["token"], await request.json()))
        if ok:
            return web.json_response({"ok": True, "result": True})
        return web.json_response({"ok": False, "description": "Bad Request: user not found"}, status=400)

    app = web.Application()
    app.router.add_post("/bot{token}/restrictChatMember", restrict)
    server = TestServer(app)
    await server.start_server()
    return server, seen


@pytest.mark.asyncio()
async def test_set_permissions_calls_bot_api():
    server, seen = await fake_bot_api(ok=True)
    try:
        async with TelegramNotifier(f"http://{server.host}:{server.port}") as notifier:
            await notifier.set_permissions("123:abc", "-100", "42", Permission.FULL)
    finally:
        await server.close()
    token, body = seen[0]
    assert token == "123:abc"
    assert body["user_id"] == 42
    assert body["permissions"]["can_send_messages"] is True


@pytest.mark.asyncio()
async def test_rejected_call_raises():
    server, _ = await fake_bot_api(ok=False)
    try:
        async with TelegramNotifier(f"http://{server.host}:{server.port}") as notifier:
            with pytest.raises(NotifierError, match="user not found"):
                await notifier.set_permissions("123:abc", "-100", "42", Permission.NONE)
    finally:
        await server.close()


def test_notifier_requires_set_permissions():
    with pytest.raises(TypeError):
        AccessNotifier()
