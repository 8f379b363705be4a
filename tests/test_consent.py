from __future__ import annotations

import pytest
from conftest import make_contact, make_user
from sqlalchemy.orm import Session

from sms_relay.consent import ConsentGate
from sms_relay.db import Conversation
from sms_relay.directory import ParticipantDirectory
from sms_relay.errors import ConsentDenied
from sms_relay.identity import ExternalContact, InternalUser

SUBJECT = 42


def subject_conversation(db: Session, subject_id: int | None = SUBJECT) -> Conversation:
    conversation = Conversation(kind="group", name="Care team", subject_id=subject_id)
    db.add(conversation)
    db.commit()
    return conversation


def test_no_subject_always_allowed(db: Session) -> None:
    conversation = subject_conversation(db, subject_id=None)
    assert ConsentGate().may_add(db, conversation, ExternalContact("+18777804236"))


def test_missing_contact_denies(db: Session) -> None:
    conversation = subject_conversation(db)
    gate = ConsentGate()
    assert not gate.may_add(db, conversation, ExternalContact("+18777804236"))
    with pytest.raises(ConsentDenied):
        gate.require(db, conversation, ExternalContact("+18777804236"))


def test_contact_without_grant_denies(db: Session) -> None:
    make_contact(db, phone="+18777804236")
    conversation = subject_conversation(db)
    assert not ConsentGate().may_add(db, conversation, ExternalContact("877-780-4236"))


def test_granted_contact_allowed_by_phone_and_by_user(db: Session) -> None:
    gate = ConsentGate()
    user = make_user(db, "nurse")
    by_phone = make_contact(db, phone="+18777804236")
    by_user = make_contact(db, user_id=user.id)
    gate.grant(db, by_phone.id, SUBJECT)
    gate.grant(db, by_user.id, SUBJECT)
    db.commit()
    conversation = subject_conversation(db)

    assert gate.may_add(db, conversation, ExternalContact("(877) 780-4236"))
    assert gate.may_add(db, conversation, InternalUser(user.id))


def test_grant_is_scoped_to_subject(db: Session) -> None:
    gate = ConsentGate()
    contact = make_contact(db, phone="+18777804236")
    gate.grant(db, contact.id, SUBJECT + 1)
    db.commit()
    assert not gate.may_add(db, subject_conversation(db), ExternalContact("+18777804236"))


def test_revoked_grant_denies(db: Session) -> None:
    gate = ConsentGate()
    contact = make_contact(db, phone="+18777804236")
    gate.grant(db, contact.id, SUBJECT)
    db.commit()
    assert gate.revoke(db, contact.id, SUBJECT) == 1
    db.commit()
    assert not gate.may_add(db, subject_conversation(db), ExternalContact("+18777804236"))


def test_add_participant_enforces_consent(db: Session, directory: ParticipantDirectory) -> None:
    creator = make_user(db, "doc")
    created = directory.create_group(db, creator.id, "Care team", [], subject_id=SUBJECT)
    conversation = created.conversation

    with pytest.raises(ConsentDenied):
        directory.add_participant(db, conversation, ExternalContact("+18777804236"))
    assert len(directory.list_active(db, conversation)) == 1

    contact = make_contact(db, phone="+18777804236")
    directory.consent.grant(db, contact.id, SUBJECT)
    db.commit()
    participant = directory.add_participant(db, conversation, ExternalContact("+18777804236"))
    assert participant.kind == "sms"
    assert participant.routing_number == "+18777804236"
