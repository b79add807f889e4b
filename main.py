# -*- coding: utf-8 -*-
"""
main.py

Operator entry point.

    python main.py init-db     create tables + seed default departments
    python main.py sweep       run one SLA escalation sweep (cron / scheduler)
    python main.py             interactive menu

The HTTP API itself runs through uvicorn (see app_fastapi.py).
"""

import argparse
import json
import sys
from typing import List, Optional

from core.logging import logger
from db.init_db import init_db
from db.session import SessionLocal
from services.sla_service import run_sla_sweep


def run_init_db() -> int:
    init_db()
    print("database ready")
    return 0


def run_sweep() -> int:
    db = SessionLocal()
    try:
        report = run_sla_sweep(db)
    finally:
        db.close()

    print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    return 0


COMMANDS = {
    "init-db": run_init_db,
    "sweep": run_sweep,
}


def interactive() -> int:
    print("=" * 60)
    print(" Civic issue pipeline - operator console")
    print("=" * 60)
    print(" 1) create tables / seed departments")
    print(" 2) run SLA escalation sweep")
    print(" 0) exit")

    while True:
        try:
            choice = input("\nchoice (1/2/0) > ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return 0

        if choice == "1":
            run_init_db()
        elif choice == "2":
            run_sweep()
        elif choice == "0":
            return 0
        else:
            print("please enter 1, 2 or 0")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Civic issue pipeline operator commands")
    parser.add_argument("command", nargs="?", choices=sorted(COMMANDS), help="command to run")
    args = parser.parse_args(argv)

    if args.command is None:
        return interactive()

    logger.info(f"running command: {args.command}")
    return COMMANDS[args.command]()


if __name__ == "__main__":
    sys.exit(main())
