"""
Watch the relay's live feed from a terminal.

Usage:
    python -m ttn_relay.watch --url http://localhost:3000
    python -m ttn_relay.watch --url https://relay.example.org --no-history
"""

import argparse
import asyncio
import logging
from typing import Optional

from ttn_relay.client import DashboardClient
from ttn_relay.models import DeviceMessage

# Field name -> (label, unit), in the order the dashboard shows them
SUMMARY_FIELDS = [
    ("Temp", "T", "°C"),
    ("WaterT1", "WT", "°C"),
    ("WaterT2", "WT2", "°C"),
    ("Humidity", "H", "%"),
    ("Pressure", "P", "hPa"),
    ("TDS", "TDS", "ppm"),
]


def format_message(message: DeviceMessage) -> str:
    """One line per message: device, kind, time, then the known sensor fields."""
    readings = []
    for field, label, unit in SUMMARY_FIELDS:
        value = message.payload.get(field)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            readings.append(f"{label}: {value:.1f}{unit}")

    line = (
        f"{message.device_id} [{message.device_kind.value}] "
        f"{message.received_at.astimezone().strftime('%H:%M:%S')}"
    )
    if readings:
        line += "  " + ", ".join(readings)
    if message.is_historical:
        line += " (Historical)"
    return line


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print uplinks relayed by a TTN sensor relay")
    parser.add_argument("--url", default="http://localhost:3000", help="Base URL of the relay")
    parser.add_argument("--no-history", action="store_true", help="Skip the latest stored messages")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log connection details")
    return parser.parse_args(argv)


async def watch(url: str, show_history: bool = True):
    client = DashboardClient(url)

    async def show(message: DeviceMessage):
        print(format_message(message), flush=True)

    if show_history:
        await client.load_history()
        for message in reversed(list(client.history)):
            print(format_message(message), flush=True)

    await client.run(on_message=show, load_history=False)


def main(argv: Optional[list[str]] = None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="[%(asctime)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        asyncio.run(watch(args.url, show_history=not args.no_history))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
