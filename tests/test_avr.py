import asyncio

import pytest

from conftest import speed_up
from pypioneeravr.avr import PioneerAVR
from pypioneeravr.listener import AVRListener


class RecordingListener(AVRListener):

    def __init__(self):
        self.events = []

    def connected(self):
        self.events.append(("connected",))

    def disconnected(self):
        self.events.append(("disconnected",))

    def power_changed(self, power: bool):
        self.events.append(("power", power))

    def volume_changed(self, volume: int):
        self.events.append(("volume", volume))

    def mute_changed(self, muted: bool):
        self.events.append(("mute", muted))

    def input_changed(self, index: int):
        self.events.append(("input", index))

    def listening_mode_changed(self, mode: str, family: str):
        self.events.append(("listening_mode", mode, family))

    def display_changed(self, text: str):
        self.events.append(("display", text))

    def input_discovered(self, index, avr_input):
        self.events.append(("input_discovered", index, avr_input.id))

    def inputs_ready(self):
        self.events.append(("inputs_ready",))

    def error(self, error_message: str):
        self.events.append(("error", error_message))


class BrokenListener(RecordingListener):

    def power_changed(self, power: bool):
        raise RuntimeError("listener failure")


def make_avr(port: int, **kwargs) -> PioneerAVR:
    options = dict(
        min_volume=0,
        max_volume=100,
        rediscover=None,
        enable_polling=False,
        input_candidates=("19", "25", "30"),
    )
    options.update(kwargs)
    avr = PioneerAVR("127.0.0.1", port, **options)
    speed_up(avr.connection)
    avr._push_delay = 0.001
    avr._power_refresh_delay = 0.01
    avr._volume_refresh_delay = 0.01
    avr.catalog._probe_interval = 0.005
    avr.catalog._retry_wait = 0.02
    avr.catalog._retry_rounds = 3
    return avr


async def eventually(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


async def connected_avr(device, **kwargs):
    avr = make_avr(device.port, **kwargs)
    listener = RecordingListener()
    avr.register_listener(listener)
    assert await avr.async_connect()
    assert await avr.wait_for_inputs(2.0)
    await asyncio.sleep(0.02)
    return avr, listener


@pytest.mark.asyncio
async def test_connect_initialises_state(fake_receiver):
    async with fake_receiver as device:
        avr, listener = await connected_avr(device)

        for command in ("?P", "?S", "0PKL", "0RML", "?F", "?V", "?M", "?RGB19", "?RGB25", "?RGB30"):
            assert command in device.received
        assert avr.state.power is True
        assert avr.state.volume == 49
        assert avr.state.muted is False
        assert avr.state.listening_mode == "0013"
        assert [i.name for i in avr.inputs] == ["HDMI 1", "BD"]
        assert avr.is_ready

        assert ("connected",) in listener.events
        assert ("power", True) in listener.events
        assert ("volume", 49) in listener.events
        assert ("input_discovered", 0, "19") in listener.events
        assert ("input_discovered", 1, "25") in listener.events
        assert listener.events.count(("inputs_ready",)) == 1
        await avr.async_close()


@pytest.mark.asyncio
async def test_status_verbs(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device)
        assert await avr.power_status() is True
        assert await avr.volume_status() == 49
        assert await avr.mute_status() is False
        device.input_id = "25"
        assert await avr.input_status() == 1
        assert await avr.update_listening_mode_lm() == "0101"
        await avr.async_close()


@pytest.mark.asyncio
async def test_set_volume(fake_receiver):
    async with fake_receiver as device:
        avr, listener = await connected_avr(device)
        await avr.set_volume(60)
        await eventually(lambda: "111VL" in device.received)
        await eventually(lambda: avr.state.volume == 60)
        await eventually(lambda: ("volume", 60) in listener.events)
        await avr.async_close()


@pytest.mark.asyncio
async def test_set_volume_to_current_value_is_not_sent(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device)
        await avr.set_volume(49)
        await asyncio.sleep(0.02)
        assert not any(command.endswith("VL") for command in device.received)
        await avr.async_close()


@pytest.mark.asyncio
async def test_volume_steps_refresh_state(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device)
        before = device.count("?V")
        await avr.volume_up()
        await eventually(lambda: "VU" in device.received)
        await eventually(lambda: device.count("?V") > before and device.count("?M") >= 2)
        await avr.volume_down()
        await eventually(lambda: "VD" in device.received)
        await avr.async_close()


@pytest.mark.asyncio
async def test_setters_ignored_while_off(fake_receiver):
    async with fake_receiver as device:
        device.power = False
        avr, listener = await connected_avr(device)
        assert avr.state.power is False

        await avr.set_volume(10)
        await avr.mute_on()
        await avr.set_input("25")
        await asyncio.sleep(0.02)
        for command in ("018VL", "MO", "25FN"):
            assert command not in device.received

        await avr.power_on()
        await eventually(lambda: "PO" in device.received)
        await eventually(lambda: avr.state.power is True)
        await eventually(lambda: ("power", True) in listener.events)
        await avr.async_close()


@pytest.mark.asyncio
async def test_mute(fake_receiver):
    async with fake_receiver as device:
        avr, listener = await connected_avr(device)
        await avr.mute_off()
        assert "MF" not in device.received

        await avr.mute_on()
        await eventually(lambda: avr.state.muted is True)
        assert "MO" in device.received
        await eventually(lambda: ("mute", True) in listener.events)

        sent = device.count("MO")
        await avr.mute_on()
        assert device.count("MO") == sent
        await avr.async_close()


@pytest.mark.asyncio
async def test_set_input(fake_receiver):
    async with fake_receiver as device:
        avr, listener = await connected_avr(device)
        await avr.set_input("25")
        await eventually(lambda: "25FN" in device.received)
        await eventually(lambda: avr.state.active_input_index == 1)
        await eventually(lambda: ("input", 1) in listener.events)
        assert avr.state.active_input.name == "BD"
        await avr.async_close()


@pytest.mark.asyncio
async def test_rename_input(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device)
        await avr.rename_input("25", "Blu-ray!")
        await eventually(lambda: "Bluray1RGB25" in device.received)
        assert avr.inputs[1].name == "Bluray"
        await avr.async_close()


@pytest.mark.asyncio
async def test_remote_keys(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device)
        await avr.remote_key("up")
        await avr.remote_key("HOME_MENU")
        await eventually(lambda: "CUP" in device.received and "HM" in device.received)
        with pytest.raises(ValueError):
            await avr.remote_key("SIDEWAYS")
        await avr.async_close()


@pytest.mark.asyncio
async def test_toggle_from_auto_goes_to_extended_stereo(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device)
        await avr.toggle_listening_mode()
        await eventually(lambda: "0112SR" in device.received)
        await eventually(lambda: avr.state.listening_mode == "0112")
        await avr.async_close()


@pytest.mark.asyncio
async def test_toggle_falls_back_when_auto_rejected(fake_receiver):
    async with fake_receiver as device:
        device.listening_mode = "0112"
        device.rejected_modes.add("0013")
        avr, listener = await connected_avr(device)
        await avr.toggle_listening_mode()
        assert "0013SR" in device.received
        await eventually(lambda: "0101SR" in device.received)
        await eventually(lambda: avr.state.listening_mode == "0101")
        assert ("error", "E04") in listener.events
        await avr.async_close()


@pytest.mark.asyncio
async def test_display_and_unsolicited_updates(fake_receiver):
    async with fake_receiver as device:
        avr, listener = await connected_avr(device)
        device.push("FL0220204558542E53544552454F2020")
        device.push("VOL111")
        await eventually(lambda: ("volume", 60) in listener.events)
        assert any(e[0] == "display" and e[1].endswith("EXT.STEREO") for e in listener.events)
        assert avr.state.display.endswith("EXT.STEREO")
        await avr.async_close()


@pytest.mark.asyncio
async def test_pushes_are_coalesced(fake_receiver):
    async with fake_receiver as device:
        avr, listener = await connected_avr(device)
        avr._push_delay = 0.05
        listener.events.clear()
        device.push("VOL100")
        device.push("VOL110")
        await asyncio.sleep(0.15)
        assert [e for e in listener.events if e[0] == "volume"] == [("volume", 59)]
        await avr.async_close()


@pytest.mark.asyncio
async def test_disconnect_reports_power_off(fake_receiver):
    async with fake_receiver as device:
        avr, listener = await connected_avr(device)
        listener.events.clear()
        avr.connection._reconnect_delay_short = 10.0
        device.drop_clients()
        await eventually(lambda: ("disconnected",) in listener.events)
        assert ("power", False) in listener.events
        # Cached state is kept for the next connection
        assert avr.state.power is True
        await avr.async_close()


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_others(fake_receiver):
    async with fake_receiver as device:
        avr = make_avr(device.port)
        broken = BrokenListener()
        working = RecordingListener()
        avr.register_listener(broken)
        avr.register_listener(working)
        await avr.async_connect()
        await eventually(lambda: ("power", True) in working.events)
        avr.unregister_listener(broken)
        await avr.async_close()


@pytest.mark.asyncio
async def test_polling_refreshes_state(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device, enable_polling=True, poll_interval=0.05)
        polls = device.count("?P")
        device.volume = 111
        await eventually(lambda: device.count("?P") > polls)
        await eventually(lambda: avr.state.volume == 60)
        await avr.async_close()


@pytest.mark.asyncio
async def test_polling_pauses_without_user_interaction(fake_receiver):
    async with fake_receiver as device:
        avr, _ = await connected_avr(device, enable_polling=True, poll_interval=0.02)
        avr._interaction_timeout = 0
        await asyncio.sleep(0.05)
        polls = device.count("?V")
        await asyncio.sleep(0.15)
        assert device.count("?V") == polls
        await avr.async_close()
