# cors_relay.py
"""
CORS Relay -- single-origin reverse proxy for browser clients.

ARCHITECTURE:
- CONFIG: 'config.py' (environment + CLI flags, frozen Config).
- SERVER: 'proxy_core.py' (asyncio HTTP/1.1 surface).
- HANDLER: 'proxy_handler.py' (CORS, header policy, request log).
- UPSTREAM: 'upstream_client.py' (httpx, bounded timeouts).
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from config import Config, ConfigError, load_config
from proxy_core import serve

log = logging.getLogger("CorsRelay")

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CORS Relay - forwards requests to one backend and adds CORS headers",
        epilog="Every option can also be set through the matching PROXY_* environment variable."
    )
    parser.add_argument("-b", "--backend", dest="backend_url", help="Backend base URL (PROXY_BACKEND_URL)")
    parser.add_argument("-l", "--listen", dest="listen_host", help="Listen address (default: 127.0.0.1)")
    parser.add_argument("-p", "--port", dest="listen_port", type=int, help="Listen port (default: 8080)")
    parser.add_argument(
        "-o", "--allow-origin", dest="allowed_origins", action="append",
        help="Allowed CORS origin; repeat for several, '*' allows any (default: *)"
    )
    parser.add_argument("--connect-timeout", type=float, help="Backend connect timeout in seconds (default: 10)")
    parser.add_argument("--total-timeout", type=float, help="Backend total timeout in seconds (default: 60)")
    parser.add_argument("--log-file", dest="log_destination", help="Request log file, appended (default: stderr)")
    parser.add_argument(
        "--insecure", action="store_true",
        help="Do not verify the backend TLS certificate (trusted internal backends only)"
    )
    parser.add_argument("--ca-bundle", help="CA bundle used to verify the backend certificate")
    parser.add_argument("--max-body", dest="max_body_size", type=int, help="Maximum request body in bytes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    """CLI flags win over the environment; unset flags fall through."""
    return load_config(
        backend_url=args.backend_url,
        listen_host=args.listen_host,
        listen_port=args.listen_port,
        allowed_origins=tuple(args.allowed_origins) if args.allowed_origins else None,
        connect_timeout=args.connect_timeout,
        total_timeout=args.total_timeout,
        log_destination=args.log_destination,
        verify_tls=False if args.insecure else None,
        ca_bundle=args.ca_bundle,
        max_body_size=args.max_body_size,
    )


async def run(config: Config) -> None:
    """Serves until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(serve(config))

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)
    try:
        await task
    except asyncio.CancelledError:
        pass


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT, datefmt="%H:%M:%S"
    )

    try:
        config = config_from_args(args)
    except ConfigError as e:
        parser.error(str(e))

    log.info(
        "Backend %s | origins %s | timeouts %gs/%gs",
        config.backend_url, ", ".join(config.allowed_origins),
        config.connect_timeout, config.total_timeout
    )
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass
    except OSError as e:
        log.error("Could not start relay: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
