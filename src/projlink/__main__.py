"""Command-line entry point for projector link diagnostics."""

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable

from projlink.api.client import RemoteControlClient
from projlink.api.remote import BlendingMode, ErrorResponse, response_request_id
from projlink.core.ble import SyncBluetoothManager
from projlink.core.config import ConfigManager
from projlink.models.scan_record import ScanRecord

logger = logging.getLogger(__name__)

_Sender = Callable[[RemoteControlClient, str | None], Awaitable[str | None]]

# action name -> (needs argument, sender)
_ACTIONS: dict[str, tuple[bool, _Sender]] = {
    "info": (False, lambda c, _: c.get_video_info()),
    "position": (False, lambda c, _: c.get_video_duration()),
    "play": (False, lambda c, _: c.play_video()),
    "pause": (False, lambda c, _: c.pause_video()),
    "seek": (True, lambda c, arg: c.seek_video(int(arg or 0))),
    "image-info": (False, lambda c, _: c.get_image_info()),
    "image-play": (False, lambda c, _: c.play_images()),
    "image-pause": (False, lambda c, _: c.pause_images()),
    "connect-mac": (True, lambda c, arg: c.connect_to_mac(arg or "")),
    "discover": (True, lambda c, arg: c.start_discovery(arg or "")),
    "blend": (True, lambda c, arg: c.set_blending_mode(BlendingMode(arg), is_controller=True)),
}


def _format_record(record: ScanRecord) -> str:
    rssi = f"{record.rssi} dBm" if record.rssi is not None else "n/a"
    return f"{record.address}  {record.display_name:<24}  {rssi}"


async def run_scan(duration: float, config: ConfigManager) -> int:
    """Scan for projectors and print what was seen.

    Returns:
        Exit code (0 if anything was found).
    """
    manager = SyncBluetoothManager(config.get_ble_settings())
    try:
        await manager.start_scan()
        await asyncio.sleep(duration)
        records = sorted(manager.scan_results, key=lambda r: r.address)
    finally:
        await manager.release()

    if not records:
        print("No projectors found")
        return 1
    for record in records:
        print(_format_record(record))
    return 0


async def run_remote(
    host: str, action: str, arg: str | None, timeout: float, config: ConfigManager
) -> int:
    """Send one remote-control request and print the correlated reply.

    Returns:
        Exit code (0 on ack/response, 1 on error or timeout).
    """
    _, sender = _ACTIONS[action]
    client = RemoteControlClient(config.get_remote_settings(), name=host)
    try:
        async with client.events() as events:
            client.connect(host)
            if not await client.wait_connected(timeout):
                print(f"Could not connect to {host}", file=sys.stderr)
                return 1

            request_id = await sender(client, arg)
            if request_id is None:
                print("Request was not sent", file=sys.stderr)
                return 1

            async with asyncio.timeout(timeout):
                while True:
                    msg = await events.get()
                    if response_request_id(msg) == request_id:
                        break
                    logger.debug("Skipping %s", msg)
    except TimeoutError:
        print(f"No response from {host} within {timeout:.1f}s", file=sys.stderr)
        return 1
    finally:
        await client.release()

    print(msg.to_json())
    return 1 if isinstance(msg, ErrorResponse) else 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(prog="projlink", description="Projector link diagnostics")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="scan for projectors over BLE")
    scan.add_argument(
        "--duration", type=float, default=5.0, help="scan time in seconds (default: 5)"
    )

    remote = sub.add_parser("remote", help="send one remote-control request")
    remote.add_argument("host", help="projector hostname or IP")
    remote.add_argument("action", choices=sorted(_ACTIONS), help="request to send")
    remote.add_argument(
        "arg", nargs="?", default=None, help="argument for seek/connect-mac/discover/blend"
    )
    remote.add_argument("--timeout", type=float, default=10.0, help="seconds to wait (default: 10)")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the CLI.

    Returns:
        Exit code (0 for success).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = ConfigManager()
    if args.command == "scan":
        return asyncio.run(run_scan(args.duration, config))

    needs_arg, _ = _ACTIONS[args.action]
    if needs_arg and args.arg is None:
        parser.error(f"action {args.action!r} requires an argument")
    if args.action == "seek" and not (args.arg or "").isdigit():
        parser.error("seek requires a position in milliseconds")
    if args.action == "blend" and args.arg not in BlendingMode.__members__:
        parser.error(f"blend mode must be one of {', '.join(BlendingMode.__members__)}")
    return asyncio.run(run_remote(args.host, args.action, args.arg, args.timeout, config))


if __name__ == "__main__":
    sys.exit(main())
