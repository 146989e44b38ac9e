from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import requests

from .config import DEFAULT_CONFIG_FILE, Config, load_config, write_config
from .errors import ConfigError
from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="bisket", description="Lightweight application version switcher")
    p.add_argument("--admin", default="http://localhost:18080", help="Admin API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_init = sub.add_parser("init", help="Write a default bisket.yaml")
    s_init.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    s_init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    s_serve = sub.add_parser("serve", help="Run the controller, proxy and admin listeners")
    s_serve.add_argument("--config", default=DEFAULT_CONFIG_FILE)

    sub.add_parser("apps", help="List live instances")
    sub.add_parser("refresh", help="Refresh tags and reconcile")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.admin.rstrip("/")

    if args.cmd == "init":
        if Path(args.config).exists() and not args.force:
            print(f"{args.config} already exists (use --force to overwrite)", file=sys.stderr)
            return 1
        print("Initializing bisket")
        write_config(Config.default(), args.config)
        return 0

    if args.cmd == "serve":
        _setup_logging()
        try:
            cfg = load_config(args.config)
        except ConfigError as e:
            print(f"Error reading config file: {e}", file=sys.stderr)
            return 1
        from .controller import Controller

        Controller(cfg).serve()
        return 0

    if args.cmd == "apps":
        r = requests.get(f"{base}/apps", timeout=10)
        print(r.text, end="")
        return 0 if r.ok else 1

    if args.cmd == "refresh":
        r = requests.post(f"{base}/repo/tags/refresh", timeout=300)
        print(r.text)
        return 0 if r.ok else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
