from __future__ import annotations

import argparse

from .config import configure_logging
from .db import SessionLocal, init_db
from .directory import atomic
from .errors import RelayError
from .numbers import NumberAllocator


def run(args: argparse.Namespace) -> int:
    """Execute one pool command against the database. Returns an exit code."""
    allocator = NumberAllocator()
    db = SessionLocal()
    try:
        if args.command == "list":
            allocator.load(db)
            for number in allocator.available(db):
                print(f"available  {number}")
            for user_id, number in allocator.assigned(db):
                print(f"assigned   {number}  user={user_id}")
            return 0

        with atomic(db):
            if args.command == "add":
                print(f"added {allocator.add_to_pool(db, args.number)}")
            elif args.command == "remove":
                print(f"removed {allocator.remove_from_pool(db, args.number)}")
            elif args.command == "assign":
                print(f"user {args.user_id} -> {allocator.assign(db, args.user_id)}")
            elif args.command == "release":
                released = allocator.release(db, args.user_id)
                print(f"user {args.user_id} released {released or 'nothing'}")
        return 0
    except RelayError as exc:
        print(f"error: {exc}")
        return 1
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the virtual number pool.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="Show available and assigned numbers.")
    add = sub.add_parser("add", help="Add a number to the pool.")
    add.add_argument("number")
    remove = sub.add_parser("remove", help="Remove an unassigned number from the pool.")
    remove.add_argument("number")
    assign = sub.add_parser("assign", help="Assign a number to a user (idempotent).")
    assign.add_argument("user_id", type=int)
    release = sub.add_parser("release", help="Return a user's number to the pool.")
    release.add_argument("user_id", type=int)
    return parser


def main() -> None:
    configure_logging()
    init_db()
    raise SystemExit(run(build_parser().parse_args()))


if __name__ == "__main__":
    main()
