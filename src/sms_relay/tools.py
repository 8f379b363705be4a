from __future__ import annotations

import argparse
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from .db import Message, SessionLocal


def _format_str(value: str | None) -> str:
    """Normalise None/whitespace for display."""
    if value is None:
        return ""
    return value.strip()


def iter_recent_messages(limit: int) -> Iterable[Message]:
    """Yield recent messages, newest first, with their deliveries loaded."""
    db = SessionLocal()
    try:
        messages = db.scalars(
            select(Message)
            .options(selectinload(Message.deliveries))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        ).all()
        yield from messages
    finally:
        db.close()


def print_recent_messages(limit: int) -> None:
    """Print recent messages and their per-recipient outcomes."""
    for message in iter_recent_messages(limit):
        print("-" * 80)
        sender = message.sender_user_id if message.sender_user_id is not None else message.sender_phone
        print(
            f"Message #{message.id} | conv={message.conversation_id} | {message.direction} "
            f"| from={sender or '-'} | status={message.status} | at={message.created_at}"
        )
        print(f"  {_format_str(message.body)}")
        for d in message.deliveries:
            detail = d.provider_message_id or _format_str(d.error)
            print(f"    -> {d.to_number}  {d.status}  {detail}")


def export_recent_messages_csv(limit: int, csv_path: str) -> None:
    """
    Export recent messages to CSV, one row per delivery.

    Inbound messages (no deliveries) get a single row with empty delivery columns.
    """
    import csv

    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(
            [
                "message_id",
                "created_at",
                "conversation_id",
                "direction",
                "sender_user_id",
                "sender_phone",
                "status",
                "body",
                "to_number",
                "delivery_status",
                "provider_message_id",
                "error",
            ]
        )
        for message in iter_recent_messages(limit):
            head = [
                message.id,
                message.created_at.isoformat() if message.created_at else "",
                message.conversation_id,
                message.direction,
                message.sender_user_id if message.sender_user_id is not None else "",
                message.sender_phone or "",
                message.status,
                _format_str(message.body),
            ]
            if not message.deliveries:
                writer.writerow(head + ["", "", "", ""])
            for d in message.deliveries:
                writer.writerow(
                    head + [d.to_number, d.status, d.provider_message_id or "", _format_str(d.error)]
                )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Inspect recent messages and deliveries stored in the sms-relay database."
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Number of most recent messages to show/export (default: 20).",
    )
    parser.add_argument(
        "--csv",
        type=str,
        default="",
        help="Optional path to export messages as CSV. If omitted, only prints to stdout.",
    )
    args = parser.parse_args()

    if args.csv:
        export_recent_messages_csv(limit=args.limit, csv_path=args.csv)
        print(f"Exported {args.limit} messages to {args.csv}")
    else:
        print_recent_messages(limit=args.limit)


if __name__ == "__main__":
    main()
