"""Script to launch the concierge gate."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from concierge.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the concierge gate.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $CONCIERGE_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (default: off)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.environ.get("WORKERS", "1")),
        help="Number of worker processes (default: 1)",
    )
    args = parser.parse_args()

    if args.reload or args.workers > 1:
        # uvicorn needs an import string to reload or fork workers.
        if args.config:
            os.environ["CONCIERGE_CONFIG"] = args.config
        uvicorn.run(
            "concierge.server:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=args.workers,
            log_level="info",
        )
        return

    uvicorn.run(create_app(args.config), host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
