"""
Expense Sync server entry point.

Run with:
    python app/main.py
    python app/main.py --port 9000 --validate-config

Host, port and everything else default to the environment / .env
settings (see expense_sync.config).
"""

import argparse

import uvicorn

from expense_sync.api import create_app
from expense_sync.config import get_settings, validate_all_settings


SETTINGS_SECTIONS = ("storage", "sync", "app")


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Expense Sync server")
    parser.add_argument("--host", type=str, default=settings.app.host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.app.port, help="Bind port")
    parser.add_argument(
        "--validate-config",
        action="store_true",
        help="Check configuration and exit",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    status = validate_all_settings()
    invalid = [name for name in SETTINGS_SECTIONS if not status[name]]

    if args.validate_config:
        for name in SETTINGS_SECTIONS:
            detail = status.get(f"{name}_error", "")
            print(f"{name}: {'ok' if status[name] else 'INVALID ' + detail}")
        return 1 if invalid else 0

    if invalid:
        print(f"Invalid configuration: {', '.join(invalid)}")
        return 1

    settings = get_settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.app.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
