from __future__ import annotations

import csv

from conftest import FakeGateway, make_user
from sqlalchemy.orm import Session

from sms_relay.cli import build_parser, run
from sms_relay.directory import ParticipantDirectory
from sms_relay.fanout import FanoutEngine
from sms_relay.tools import export_recent_messages_csv, print_recent_messages


def cli(*argv: str) -> int:
    return run(build_parser().parse_args(list(argv)))


def test_pool_commands(db: Session, capsys) -> None:
    user = make_user(db, "u")

    assert cli("add", "910-555-0001") == 0
    assert cli("assign", str(user.id)) == 0
    assert cli("list") == 0
    out = capsys.readouterr().out
    assert "added +19105550001" in out
    assert f"user {user.id} -> +19105550001" in out
    assert f"assigned   +19105550001  user={user.id}" in out

    assert cli("remove", "+19105550001") == 1
    assert "error:" in capsys.readouterr().out

    assert cli("release", str(user.id)) == 0
    assert cli("remove", "+19105550001") == 0
    assert cli("list") == 0
    out = capsys.readouterr().out
    assert "removed +19105550001" in out
    assert "available" not in out


def test_assign_without_pool_or_prefix_fails(db: Session, capsys) -> None:
    user = make_user(db, "u")

    assert cli("assign", str(user.id)) == 1
    assert "error:" in capsys.readouterr().out


def test_inspect_tools(
    db: Session,
    directory: ParticipantDirectory,
    fanout: FanoutEngine,
    gateway: FakeGateway,
    tmp_path,
    capsys,
) -> None:
    user = make_user(db, "u")
    conversation = directory.create_sms(db, user.id, "+18777804236")
    gateway.fail_to = {"+18777804236"}
    fanout.send(db, conversation, user.id, "hello")

    print_recent_messages(limit=5)
    out = capsys.readouterr().out
    assert "hello" in out
    assert "+18777804236  failed  Attempt to send to unsubscribed recipient" in out

    path = tmp_path / "messages.csv"
    export_recent_messages_csv(limit=5, csv_path=str(path))
    with open(path, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 1
    assert rows[0]["to_number"] == "+18777804236"
    assert rows[0]["delivery_status"] == "failed"
