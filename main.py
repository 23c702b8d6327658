"""
Main command-line interface for pypioneeravr.

This script provides a CLI to interact with a Pioneer AV receiver.
"""

import argparse
import asyncio
import logging

from pypioneeravr.avr import PioneerAVR
from pypioneeravr.listener import AVRListener


async def connect(args) -> PioneerAVR:
    print(f"Connecting to receiver at {args.host}:{args.port}...")
    avr = PioneerAVR(
        args.host,
        args.port,
        min_volume=args.min_volume,
        max_volume=args.max_volume,
        rediscover=None,
        enable_polling=False,
        discover_inputs=args.command in ("status", "inputs", "input"),
    )
    if not await avr.async_connect():
        await avr.async_close()
        raise SystemExit(f"Could not connect to {args.host}:{args.port}")
    return avr


async def show_status(args):
    """Query and display power, volume, mute, input and listening mode."""
    avr = await connect(args)
    await avr.wait_for_inputs(timeout=20)
    await avr.update_input()

    state = avr.state
    active = state.active_input
    print("\nReceiver Status:")
    print("-" * 60)
    print(f"{'Power:':20s} {'On' if state.power else 'Off'}")
    print(f"{'Volume:':20s} {state.volume}% (raw {state.volume_raw})")
    print(f"{'Mute:':20s} {'On' if state.muted else 'Off'}")
    print(f"{'Input:':20s} {active.name + ' (' + active.id + ')' if active else 'unknown'}")
    print(f"{'Listening mode:':20s} {state.listening_mode or 'unknown'}")
    print("-" * 60)
    await avr.async_close()


async def show_inputs(args):
    """List the inputs the receiver reports."""
    avr = await connect(args)
    if not await avr.wait_for_inputs(timeout=20):
        print("Warning: input discovery did not complete")
    await avr.update_input()

    print("\nInputs:")
    print("-" * 60)
    for index, avr_input in enumerate(avr.inputs):
        marker = "*" if index == avr.state.active_input_index else " "
        print(f"{marker} {avr_input.id}  {avr_input.name:16s} {avr_input.kind.name}")
    print("-" * 60)
    await avr.async_close()


async def set_power(args):
    avr = await connect(args)
    if args.state == "on":
        await avr.power_on()
    else:
        await avr.power_off()
    # Wait for the delayed power refresh
    await asyncio.sleep(1)
    print(f"Power: {'On' if avr.state.power else 'Off'}")
    await avr.async_close()


async def set_volume(args):
    avr = await connect(args)
    if not avr.state.power:
        print("Receiver is off, volume not changed")
    else:
        print(f"Setting volume to {args.percent}%...")
        await avr.set_volume(args.percent)
        await asyncio.sleep(1)
        print(f"Volume: {avr.state.volume}%")
    await avr.async_close()


async def set_input(args):
    avr = await connect(args)
    if not avr.state.power:
        print("Receiver is off, input not changed")
    else:
        print(f"Switching to input {args.input_id}...")
        await avr.set_input(args.input_id.zfill(2))
        await asyncio.sleep(1)
        active = avr.state.active_input
        print(f"Input: {active.name if active else 'unknown'}")
    await avr.async_close()


async def set_mute(args):
    avr = await connect(args)
    if args.state == "on":
        await avr.mute_on()
    else:
        await avr.mute_off()
    await asyncio.sleep(1)
    print(f"Mute: {'On' if avr.state.muted else 'Off'}")
    await avr.async_close()


class DisplayPrinter(AVRListener):

    def connected(self):
        pass

    def disconnected(self):
        print("[disconnected]")

    def power_changed(self, power: bool):
        print(f"[power {'on' if power else 'off'}]")

    def volume_changed(self, volume: int):
        print(f"[volume {volume}%]")

    def mute_changed(self, muted: bool):
        print(f"[mute {'on' if muted else 'off'}]")

    def input_changed(self, index: int):
        print(f"[input {index}]")

    def display_changed(self, text: str):
        if text:
            print(text)


async def watch_display(args):
    """Print the front-panel display until interrupted."""
    avr = await connect(args)
    avr.register_listener(DisplayPrinter())
    print("Watching display, Ctrl-C to stop")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await avr.async_close()


def main():
    parser = argparse.ArgumentParser(description="Control a Pioneer AV receiver")
    parser.add_argument("--host", default="192.168.1.50", help="Receiver hostname or IP (default: 192.168.1.50)")
    parser.add_argument("--port", type=int, default=23, help="Telnet port (default: 23)")
    parser.add_argument("--min-volume", type=int, default=0, help="Lower volume bound in percent (default: 0)")
    parser.add_argument("--max-volume", type=int, default=60, help="Upper volume bound in percent (default: 60)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("status", help="Show power, volume, mute and input")
    subparsers.add_parser("inputs", help="List the receiver's inputs")

    power_parser = subparsers.add_parser("power", help="Switch the receiver on or off")
    power_parser.add_argument("state", choices=["on", "off"])

    volume_parser = subparsers.add_parser("volume", help="Set the volume")
    volume_parser.add_argument("percent", type=int, help="Volume 0-100, relative to the min/max window")

    input_parser = subparsers.add_parser("input", help="Select an input")
    input_parser.add_argument("input_id", help="Two-digit input code, e.g. 19 for HDMI 1")

    mute_parser = subparsers.add_parser("mute", help="Mute or unmute")
    mute_parser.add_argument("state", choices=["on", "off"])

    subparsers.add_parser("display", help="Print the front-panel display as it changes")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)

    commands = {
        "status": show_status,
        "inputs": show_inputs,
        "power": set_power,
        "volume": set_volume,
        "input": set_input,
        "mute": set_mute,
        "display": watch_display,
    }
    if args.command in commands:
        try:
            asyncio.run(commands[args.command](args))
        except KeyboardInterrupt:
            pass
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
