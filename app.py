#!/usr/bin/env python3
"""
Dirkeeper - Launcher
======================
Starts the management console; the directory server itself is started
from the console, or right away when server.autostart is set.

Usage:
    python app.py                       # host/port from config.yaml
    python app.py --host 0.0.0.0 --port 9000
    python app.py --verbose             # supervisor DEBUG lines on the terminal

On first launch config.yaml is seeded from config.yaml.example. Keystore
settings in .env are exported to the process environment before the app
is created.
"""

import argparse
import os
import shutil

import uvicorn
from dotenv import load_dotenv

from server.config import ConfigManager


PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dirkeeper",
        description="Supervisor console for an embedded LDAP directory server",
    )
    parser.add_argument("--host", help="Console bind address (default: web.host)")
    parser.add_argument("--port", type=int, help="Console port (default: web.port)")
    parser.add_argument("--verbose", action="store_true", help="Echo DEBUG lines")
    return parser.parse_args(argv)


def prepare(project_dir: str, verbose: bool = False) -> dict:
    """Seed config.yaml, export .env, and return the loaded config."""
    config_path = os.path.join(project_dir, "config.yaml")
    example_path = config_path + ".example"
    if not os.path.exists(config_path) and os.path.exists(example_path):
        shutil.copy2(example_path, config_path)
        print("[INIT] config.yaml created from config.yaml.example")

    load_dotenv(os.path.join(project_dir, ".env"))
    if verbose:
        os.environ["DIRKEEPER_VERBOSE"] = "1"

    return ConfigManager(project_dir).load()


def main(argv: list[str] | None = None):
    args = parse_args(argv)
    config = prepare(PROJECT_DIR, args.verbose)

    host = args.host or config["web"]["host"]
    port = args.port or config["web"]["port"]

    print(f"\n  Dirkeeper 1.0  --  console http://{host}:{port}")
    print(f"  Install root: {config['server']['data_path']}\n")

    uvicorn.run("server.main:create_app", factory=True, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
