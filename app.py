#!/usr/bin/env python3
"""
CTF Arena server: flag submissions, scoring, event control and scoreboards
behind a JSON API, with a public scoreboard page and a live admin feed.
"""

import argparse
import asyncio
import logging
import os
from pathlib import Path

from ctfarena.system import CTFPlatform


async def main():
    """Main function with command line interface."""

    parser = argparse.ArgumentParser(
        description="CTF Arena server with JSON API and web scoreboard",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--web-port",
        type=int,
        default=int(os.getenv("WEB_PORT", "8081")),
        help="Web interface port (env: WEB_PORT)"
    )
    parser.add_argument(
        "--db",
        default=os.getenv("DB_PATH", "ctf.db"),
        help="SQLite database file path (env: DB_PATH)"
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "ctf_config.json"),
        help="Configuration file path (env: CONFIG_PATH)"
    )
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind the server to (env: HOST)"
    )
    parser.add_argument(
        "--create-admin",
        metavar="USERNAME",
        help="Provision an admin account, print its API token and exit"
    )
    parser.add_argument(
        "--seed-demo",
        action="store_true",
        help="Insert demo challenges when none exist"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config_path = Path(args.config)

    if config_path.exists() and not config_path.is_file():
        print(f"Error: {args.config} exists but is not a file")
        return

    system = CTFPlatform(
        host=args.host,
        web_port=args.web_port,
        db_path=args.db,
        config_path=args.config,
    )

    await system.init_db()

    if args.create_admin:
        user, token = await system.create_admin(args.create_admin)
        print(f"Admin {user.username} created (id {user.id})")
        print(f"API token: {token}")
        await system.cache.close()
        return

    if args.seed_demo:
        seeded = await system.seed_demo()
        print(f"Seeded {seeded} demo challenges")

    await system.print_full_scoreboard()

    try:
        await system.run()
    except KeyboardInterrupt:
        print("\nServer interrupted")


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
