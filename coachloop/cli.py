"""
Command-line interface for coachloop.
"""

import argparse
import sys

from coachloop.api import start_server
from coachloop.config import settings
from coachloop.utils.logging import setup_logging


def main():
    parser = argparse.ArgumentParser(description="coachloop - agent session loop server")
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8900,
        help="Port to bind to (default: 8900)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )

    args = parser.parse_args()
    setup_logging(level=settings.log_level, fmt=settings.log_format)

    try:
        start_server(host=args.host, port=args.port, reload=args.reload)
    except KeyboardInterrupt:
        print("\nShutting down coachloop server...")
        sys.exit(0)


if __name__ == "__main__":
    main()
