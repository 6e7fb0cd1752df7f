"""
Command Line Interface for Hydrarr
Runs the dashboard API or checks the configured services from a shell.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Hydrarr - unified status dashboard for *arr services and qBittorrent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the dashboard API
  hydrarr serve --port 3000

  # Start with JSON logging
  hydrarr serve --log-format json --log-file /var/log/hydrarr.log

  # Check every configured service once
  hydrarr check

Environment Variables:
  SONARR_URL, SONARR_API_KEY       - Sonarr connection
  RADARR_URL, RADARR_API_KEY       - Radarr connection
  LIDARR_URL, LIDARR_API_KEY       - Lidarr connection
  READARR_URL, READARR_API_KEY     - Readarr connection
  PROWLARR_URL, PROWLARR_API_KEY   - Prowlarr connection
  BAZARR_URL, BAZARR_API_KEY       - Bazarr connection
  QBITTORRENT_URL                  - qBittorrent Web UI address
  QBITTORRENT_USERNAME             - qBittorrent username
  QBITTORRENT_PASSWORD             - qBittorrent password
  HOST                             - Server bind address (default: 0.0.0.0)
  PORT                             - Server port (default: 3000)
  UPSTREAM_TIMEOUT                 - Per-call timeout in seconds (default: 10)
  LOG_LEVEL                        - Logging level (default: INFO)
  LOG_FILE                         - Log file path (enables rotation)
  LOG_FORMAT                       - Log format: text or json (default: text)
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the dashboard API")
    serve_parser.add_argument(
        "--host", "-H", default="0.0.0.0", help="Host to bind to"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=3000, help="Port to listen on"
    )
    serve_parser.add_argument(
        "--log-level", "-l", default="INFO", help="Log level"
    )
    serve_parser.add_argument(
        "--log-file", help="Log file path (enables rotation)"
    )
    serve_parser.add_argument(
        "--log-format", choices=["text", "json"], default="text",
        help="Log format: text or json"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload (dev mode)"
    )

    # Check command
    check_parser = subparsers.add_parser(
        "check", help="Query every configured service and print its status"
    )
    check_parser.add_argument(
        "--log-level", "-l", default="WARNING", help="Log level"
    )

    args = parser.parse_args()

    if args.command == "serve":
        run_server(args)
    elif args.command == "check":
        asyncio.run(run_check(args))
    else:
        parser.print_help()
        sys.exit(1)


def run_server(args):
    """Run the dashboard API."""
    import os
    import uvicorn

    setup_logging(args.log_level)

    # Settings are read from the environment when the app is imported
    os.environ["HOST"] = args.host
    os.environ["PORT"] = str(args.port)
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    if args.log_file:
        os.environ["LOG_FILE"] = args.log_file

    logger.info(f"Starting Hydrarr dashboard on {args.host}:{args.port}")

    uvicorn.run(
        "hydrarr.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


def format_status_table(items: List[Dict[str, Any]]) -> str:
    lines = [f"{'Service':<14} {'Status':<16} Message", "-" * 70]
    for item in items:
        lines.append(
            f"{item.get('service', '?'):<14} {item.get('status', '?'):<16} {item.get('message', '')}"
        )
    return "\n".join(lines)


async def run_check(args):
    """Print the status of every service; exit 1 when a configured one is offline."""
    setup_logging(args.log_level)

    from .config import Settings
    from .dashboard import Dashboard

    dashboard = Dashboard(Settings())
    try:
        overview = await dashboard.overview()
    finally:
        await dashboard.close()

    items = overview["items"]
    print(format_status_table(items))

    offline = [i["service"] for i in items if i.get("configured") and i.get("status") != "online"]
    if offline:
        print(f"\nOffline: {', '.join(offline)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
