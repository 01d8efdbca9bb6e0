"""Entry point for `python -m clawgate` / `clawgate`.

Subcommands:
    clawgate                 Run the service (default)
    clawgate whatsapp-auth   Link a WhatsApp account by QR code
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from clawgate.errors import FatalStartupError


def _run() -> None:
    from clawgate.app import ClawgateApp

    try:
        exit_code = asyncio.run(ClawgateApp().run())
    except FatalStartupError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(exit_code)


def _whatsapp_auth() -> None:
    from clawgate.chat.channels.whatsapp import authenticate

    try:
        sys.exit(asyncio.run(authenticate()))
    except KeyboardInterrupt:
        print("\nAuthentication cancelled.")
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="clawgate",
        description="Route chat and email conversations to a sandboxed agent",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("whatsapp-auth", help="Link a WhatsApp account and store its credentials")

    args = parser.parse_args()

    match args.command:
        case "whatsapp-auth":
            _whatsapp_auth()
        case _:
            _run()


if __name__ == "__main__":
    main()
