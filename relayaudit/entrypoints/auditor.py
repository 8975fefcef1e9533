"""Relay auditor entrypoint.

Pulls LaWallet balance and/or transaction events from a nostr relay,
rebuilds the ledger for each audit mode and persists it under the data
directory. Runs once by default, or on a schedule with --poll_interval.
"""

import argparse
import asyncio
import os
import signal
import sys

import bittensor as bt
from dotenv import load_dotenv
from pydantic import ValidationError


def build_parser() -> argparse.ArgumentParser:
    from relayaudit.auditor.extractors import available_modes

    parser = argparse.ArgumentParser(description="LaWallet relay auditor")
    bt.logging.add_args(parser)
    parser.add_argument("--relay_url", type=str, default=None)
    parser.add_argument(
        "--mode", dest="modes", action="append", choices=available_modes(), default=None,
        help="Audit mode; repeat to run several (default: balance)",
    )
    parser.add_argument("--page_limit", type=int, default=None)
    parser.add_argument("--round_delay", type=float, default=None)
    parser.add_argument("--connect_timeout", type=float, default=None)
    parser.add_argument("--receive_timeout", type=float, default=None)
    parser.add_argument("--asset", type=str, default=None)
    parser.add_argument("--ledger_pubkey", type=str, default=None)
    parser.add_argument("--data_dir", type=str, default=None)
    parser.add_argument("--poll_interval", type=int, default=None)
    parser.add_argument("--max_consecutive_errors", type=int, default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    # Load .env if not in test mode
    if os.environ.get("RELAYAUDIT_TEST_MODE") != "true":
        load_dotenv()

    args = build_parser().parse_args(argv)
    if getattr(args, "logging.debug", False):
        bt.logging.set_debug(True)

    from relayaudit.config import load_config

    try:
        config = load_config(overrides={
            "relay_url": args.relay_url,
            "modes": args.modes,
            "page_limit": args.page_limit,
            "round_delay": args.round_delay,
            "connect_timeout": args.connect_timeout,
            "receive_timeout": args.receive_timeout,
            "asset": args.asset,
            "ledger_pubkey": args.ledger_pubkey,
            "data_dir": args.data_dir,
            "poll_interval": args.poll_interval,
            "max_consecutive_errors": args.max_consecutive_errors,
        })
    except ValidationError as e:
        bt.logging.error({"auditor_config_invalid": str(e)})
        return 1

    if "transactions" in config.modes and not config.ledger_pubkey:
        bt.logging.warning({"auditor_config": "no ledger_pubkey, transaction events from any author will be read"})

    bt.logging.info({"auditor_config": config.model_dump()})

    # Build auditor components
    from relayaudit.auditor.extractors import get_extractor
    from relayaudit.auditor.runtime import AuditorRuntime
    from relayaudit.auditor.sync import RelaySync, RunStatus
    from relayaudit.ledger.store.filesystem import FilesystemStore

    store = FilesystemStore(data_dir=config.data_dir)
    syncs = [
        RelaySync(
            endpoint=config.relay_url,
            extractor=get_extractor(mode, **config.extractor_options(mode)),
            store=store,
            page_limit=config.page_limit,
            round_delay=config.round_delay,
            connect_timeout=config.connect_timeout,
            receive_timeout=config.receive_timeout,
        )
        for mode in config.modes
    ]
    runtime = AuditorRuntime(
        syncs,
        poll_interval=config.poll_interval,
        max_consecutive_errors=config.max_consecutive_errors,
    )

    # Graceful shutdown
    loop = asyncio.new_event_loop()

    def _signal_handler(sig, frame):
        bt.logging.info({"auditor": "shutdown_signal_received"})
        loop.call_soon_threadsafe(runtime.stop)

    previous = {sig: signal.signal(sig, _signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}

    results = []
    try:
        results = loop.run_until_complete(runtime.run())
    except KeyboardInterrupt:
        bt.logging.info({"auditor": "keyboard_interrupt"})
    finally:
        loop.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        bt.logging.info({"auditor": "stopped"})

    if runtime.gave_up or any(r.status == RunStatus.FAILED for r in results):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
