"""Command-line front end for a device: save cards, sync, watch, show status."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING

import pendulum

from client.api_client import SyncApiClient
from client.config import ClientSettings, validate_server_url
from client.errors import SyncError
from client.local_store import LocalStore
from client.records import CardRecord, CardType, new_card
from client.sync_engine import SyncEngine, SyncEvent, SyncEventType

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.INFO if verbose else logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="verbcards-sync",
        description="Keep this device's flashcards in sync with the card server",
    )
    parser.add_argument("--server", "-s", help="Server URL (default: VERBCARDS_SERVER_URL)")
    parser.add_argument("--db", help="Local store URL (default: VERBCARDS_DATABASE_URL)")
    parser.add_argument("--device-id", help="Override the stored device id")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    add = subparsers.add_parser("add", help="Save a card locally and sync it")
    add.add_argument(
        "--type",
        dest="card_type",
        choices=[t.value for t in CardType],
        default=CardType.VERB_CONJUGATION.value,
    )
    add.add_argument("--id", dest="card_id", help="Overwrite the card with this id")
    add.add_argument("data", help="Card payload as a JSON object")
    add.add_argument("--no-sync", action="store_true", help="Only save locally")

    subparsers.add_parser("status", help="Show local cards and sync state")
    subparsers.add_parser("sync", help="Run one sync cycle")

    watch = subparsers.add_parser("watch", help="Sync periodically until interrupted")
    watch.add_argument("--interval", type=float, help="Seconds between syncs")

    subparsers.add_parser("server-stats", help="Show the server's card and device counts")
    return parser


def _print_event(event: SyncEvent) -> None:
    if event.type is SyncEventType.STARTED:
        print("Syncing...")
    elif event.type is SyncEventType.COMPLETED:
        print(f"Synced: {event.uploaded} uploaded, {event.downloaded} downloaded")
    else:
        print(f"Sync failed: {event.error}")


def _parse_payload(raw: str) -> dict[str, object]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Card payload must be a JSON object")
    return data


async def _show_status(engine: SyncEngine) -> None:
    stats = await engine.store.get_stats()
    status = await engine.get_sync_status()
    print(f"Device:  {engine.store.device_id}")
    print(f"Cards:   {stats.total_cards} stored locally")
    for card_type, count in sorted(stats.by_type.items()):
        print(f"  {card_type}: {count}")
    if status.unsynced_count > 0:
        print(f"Sync:    {status.unsynced_count} unsynced")
    elif status.last_sync is not None:
        synced = pendulum.instance(status.last_sync)
        print(f"Sync:    synced {synced.diff_for_humans()}")
    else:
        print("Sync:    ready")


async def run(args: argparse.Namespace, settings: ClientSettings) -> int:
    """Execute one CLI command. Returns the process exit code."""
    server_url = validate_server_url(
        args.server or settings.server_url,
        args.allow_insecure_http or settings.allow_insecure_http,
    )
    store = LocalStore(
        args.db or settings.database_url,
        device_id=args.device_id or settings.device_id,
    )
    await store.initialize()
    api = SyncApiClient(server_url, timeout=settings.request_timeout_seconds)
    engine = SyncEngine(store, api, backoff_max_seconds=settings.backoff_max_seconds)
    engine.add_sync_listener(_print_event)

    try:
        if args.command == "add":
            payload = _parse_payload(args.data)
            if args.card_id:
                record = CardRecord(id=args.card_id, card_type=args.card_type, data=payload)
            else:
                record = new_card(args.card_type, payload)
            if args.no_sync:
                saved = await store.put_cards([record])
            else:
                saved = await engine.save_cards([record])
            print(f"Saved card {saved[0].id}")

        elif args.command == "status":
            await _show_status(engine)

        elif args.command == "sync":
            result = await engine.sync_cards()
            return 0 if result is not None and result.ok else 1

        elif args.command == "watch":
            interval = args.interval or settings.sync_interval_seconds
            print(f"Watching, syncing every {interval:g} s (Ctrl-C to stop)")
            await engine.start_auto_sync(interval)

        elif args.command == "server-stats":
            stats = await api.stats()
            print(f"Server cards:   {stats.get('total_cards', 0)}")
            print(f"Server devices: {stats.get('total_devices', 0)}")
        return 0
    finally:
        await engine.aclose()
        await api.aclose()
        await store.close()


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.verbose)
    settings = ClientSettings()

    try:
        exit_code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        exit_code = 0
    except (SyncError, ValueError) as exc:
        print(f"Error: {exc}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
