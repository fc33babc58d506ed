"""Run the access gate with uvicorn.

Usage:
    python -m accessgate
    python -m accessgate --reload  # Development mode
"""

from __future__ import annotations

import argparse

import uvicorn

from accessgate.dependencies import get_settings


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the access gate API server")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--host", type=str, help="Host to bind to")
    parser.add_argument("--port", type=int, help="Port to bind to")
    args = parser.parse_args()

    settings = get_settings()

    uvicorn.run(
        "accessgate.main:create_app",
        factory=True,
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
