#!/usr/bin/env python
from __future__ import annotations

import argparse
import getpass
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.db import SessionLocal
from app.logging_utils import setup_json_logging
from app.services.identity import bootstrap_admin


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the first Admin account.")
    parser.add_argument("--username", required=True)
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", help="Prompted for when omitted.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    setup_json_logging()
    args = _parse_args(argv)
    password = args.password or getpass.getpass("Admin password: ")
    if len(password) < 8:
        print(json.dumps({"success": False, "message": "Password must be at least 8 characters."}))
        return 2

    with SessionLocal() as db:
        result = bootstrap_admin(db, username=args.username, email=args.email, password=password)

    print(
        json.dumps(
            {
                "success": result.success,
                "message": result.message,
                "kind": result.kind.value if result.kind else None,
                "data": result.data,
            },
            ensure_ascii=True,
        )
    )
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
