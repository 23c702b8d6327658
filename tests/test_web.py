import asyncio

import pytest
from aiohttp import test_utils, web
from aiohttp.client_exceptions import ClientResponseError

from conftest import speed_up
from pypioneeravr.avr import PioneerAVR
from pypioneeravr.web import WebInterface, accepts


def make_app(status: int = 200):
    commands = []

    async def status_handler(request):
        return web.Response(status=status, text="ok")

    async def event_handler(request):
        commands.append(request.query.get("WebToHostItem"))
        return web.Response(text="ok")

    app = web.Application()
    app.router.add_get("/StatusHandler.asp", status_handler)
    app.router.add_get("/EventHandler.asp", event_handler)
    return app, commands


def test_commands_sent_over_http():
    for command in ("PO", "PF", "MO", "MF", "VU", "VD", "19FN"):
        assert accepts(command)
    for command in ("?P", "092VL", "0013SR", "CUP"):
        assert not accepts(command)


@pytest.mark.asyncio
async def test_probe_and_send():
    app, commands = make_app()
    server = test_utils.TestServer(app)
    await server.start_server()
    interface = WebInterface("127.0.0.1", base_url=str(server.make_url("/")))
    try:
        assert await interface.probe()
        assert interface.enabled
        await interface.send("PO")
        await interface.send("25FN")
        assert commands == ["PO", "25FN"]
    finally:
        await interface.close()
        await server.close()


@pytest.mark.asyncio
async def test_probe_disabled_interface():
    app, _ = make_app(status=404)
    server = test_utils.TestServer(app)
    await server.start_server()
    interface = WebInterface("127.0.0.1", base_url=str(server.make_url("/")))
    try:
        assert not await interface.probe()
        assert not interface.enabled
    finally:
        await interface.close()
        await server.close()


@pytest.mark.asyncio
async def test_send_raises_on_http_error():
    app = web.Application()
    server = test_utils.TestServer(app)
    await server.start_server()
    interface = WebInterface("127.0.0.1", base_url=str(server.make_url("/")))
    try:
        with pytest.raises(ClientResponseError):
            await interface.send("PO")
    finally:
        await interface.close()
        await server.close()


@pytest.mark.asyncio
async def test_receiver_uses_web_interface_for_simple_writes(fake_receiver):
    app, commands = make_app()
    server = test_utils.TestServer(app)
    await server.start_server()
    async with fake_receiver as device:
        avr = PioneerAVR(
            "127.0.0.1", device.port, rediscover=None, enable_polling=False, discover_inputs=False
        )
        speed_up(avr.connection)
        avr._web = WebInterface("127.0.0.1", base_url=str(server.make_url("/")))
        try:
            assert await avr.async_connect()
            assert avr.web.enabled
            await asyncio.sleep(0.05)
            await avr.power_off()
            assert commands == ["PF"]
            assert "PF" not in device.received
        finally:
            await avr.async_close()
            await server.close()
