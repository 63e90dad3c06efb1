"""
Command line entry point.

Usage:
    python -m localcan serve [--proxy]
    python -m localcan scan processes.json
"""

import argparse
import asyncio
import json
import logging
import sys

import aiohttp
import uvicorn

from .config import get_settings

logger = logging.getLogger("localcan")


def serve(args) -> int:
    settings = get_settings()
    if args.proxy:
        settings.proxy_autostart = True
    if args.proxy_port is not None:
        settings.proxy_port = args.proxy_port

    from .main import create_app

    app = create_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


async def push_scan(url: str, processes: list) -> dict:
    """Send a process scan to a running daemon."""
    timeout = aiohttp.ClientTimeout(total=30)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.put(f"{url}/api/processes", json={"processes": processes}) as resp:
            body = await resp.json()
            if resp.status != 200:
                raise RuntimeError(f"Daemon rejected scan ({resp.status}): {body}")
            return body


def scan(args) -> int:
    settings = get_settings()
    if args.file == "-":
        processes = json.load(sys.stdin)
    else:
        with open(args.file) as f:
            processes = json.load(f)
    if isinstance(processes, dict):
        processes = processes.get("processes", [])

    url = args.url or f"http://{settings.host}:{settings.port}"
    try:
        result = asyncio.run(push_scan(url, processes))
    except (aiohttp.ClientError, RuntimeError) as e:
        print(f"ERROR: {e}")
        return 1
    print(f"Reported {result['count']} processes (changed: {result['changed']})")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="localcan",
        description="Local domains, certificates and reverse proxy for dev servers"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOCALCAN_LOG_LEVEL or INFO)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run the control plane")
    serve_parser.add_argument("--host", default=None, help="Control plane address")
    serve_parser.add_argument("--port", type=int, default=None, help="Control plane port")
    serve_parser.add_argument("--proxy", action="store_true", help="Start the proxy on startup")
    serve_parser.add_argument("--proxy-port", type=int, default=None, help="Proxy HTTP port")
    serve_parser.set_defaults(func=serve)

    scan_parser = sub.add_parser("scan", help="Report detected processes to a running daemon")
    scan_parser.add_argument("file", help="JSON list of processes, or - for stdin")
    scan_parser.add_argument("--url", default=None, help="Control plane URL")
    scan_parser.set_defaults(func=scan)

    args = parser.parse_args(argv)

    settings = get_settings()
    if args.log_level:
        settings.log_level = args.log_level
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
