from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from callrelay.server.config import RelayConfig, load_config
from callrelay.server.runtime import RelayRuntime, run_forever

log = logging.getLogger("callrelay.cmd.server")


async def _run(config: RelayConfig) -> None:
    runtime = RelayRuntime(config)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    await run_forever(runtime, stop_event)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Presence and call-signaling relay")
    parser.add_argument("--config", default=None, help="Path to relay YAML config")
    parser.add_argument("--listen", default=None, help="host:port to listen on (overrides config)")
    parser.add_argument("--db", dest="db_path", default=None, help="SQLite file for the user directory")
    parser.add_argument("--log-level", default=None, help="Logging level (overrides config)")
    args = parser.parse_args(argv)

    config = load_config(
        Path(args.config) if args.config else None,
        {"listen": args.listen, "db_path": args.db_path, "log_level": args.log_level},
    )

    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
