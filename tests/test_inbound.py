from __future__ import annotations

import logging

import pytest
from conftest import FakeGateway, make_user
from sqlalchemy import select
from sqlalchemy.orm import Session

from sms_relay.db import Conversation, Delivery, Message, utcnow
from sms_relay.directory import ParticipantDirectory
from sms_relay.fanout import FanoutEngine
from sms_relay.identity import ExternalContact, InternalUser
from sms_relay.inbound import InboundRouter, RoutedMessage, Unmatched

CONTACT = "+18777804236"
OTHER = "+12125550100"


@pytest.fixture
def router() -> InboundRouter:
    return InboundRouter()


def test_routes_by_sender_number(
    db: Session, directory: ParticipantDirectory, router: InboundRouter
) -> None:
    user = make_user(db, "u")
    conversation = directory.create_sms(db, user.id, CONTACT)

    result = router.route(db, "+1 (877) 780-4236", "+19995550000", "hi", "SM1")

    assert isinstance(result, RoutedMessage)
    assert result.conversation_id == conversation.id
    message = db.get(Message, result.message_id)
    assert message.direction == "in"
    assert message.sender_user_id is None
    assert message.sender_phone == "+1 (877) 780-4236"
    assert message.body == "hi"
    db.refresh(conversation)
    assert conversation.last_message_at is not None


def test_unknown_sender_is_unmatched(db: Session, router: InboundRouter) -> None:
    result = router.route(db, CONTACT, "+19995550000", "hello?", "SM1")

    assert result == Unmatched(from_number=CONTACT, reason="no_conversation")
    assert db.scalars(select(Message)).all() == []


def test_garbage_sender_is_unmatched(db: Session, router: InboundRouter) -> None:
    result = router.route(db, "not a number", "+19995550000", "hello?")

    assert isinstance(result, Unmatched)
    assert result.reason == "invalid_sender"


def test_redelivered_webhook_is_stored_once(
    db: Session, directory: ParticipantDirectory, router: InboundRouter
) -> None:
    user = make_user(db, "u")
    directory.create_sms(db, user.id, CONTACT)

    first = router.route(db, CONTACT, "", "hi", "SM1")
    second = router.route(db, CONTACT, "", "hi", "SM1")

    assert isinstance(second, RoutedMessage)
    assert second.duplicate
    assert second.message_id == first.message_id
    assert len(db.scalars(select(Message)).all()) == 1


def test_inactive_participant_no_longer_matches(
    db: Session, directory: ParticipantDirectory, router: InboundRouter
) -> None:
    user = make_user(db, "u")
    conversation = directory.create_sms(db, user.id, CONTACT)
    directory.remove_participant(db, conversation, CONTACT)

    assert isinstance(router.route(db, CONTACT, "", "hi"), Unmatched)


def test_deactivated_conversation_no_longer_matches(
    db: Session, directory: ParticipantDirectory, router: InboundRouter
) -> None:
    user = make_user(db, "u")
    conversation = directory.create_sms(db, user.id, CONTACT)
    directory.deactivate(db, conversation)

    assert isinstance(router.route(db, CONTACT, "", "hi"), Unmatched)


def test_ambiguous_sender_prefers_conversation_holding_to_number(
    db: Session, directory: ParticipantDirectory, router: InboundRouter
) -> None:
    alice, bob = make_user(db, "alice"), make_user(db, "bob")
    with_alice = directory.create_sms(db, alice.id, CONTACT)
    directory.create_sms(db, bob.id, CONTACT)
    alice_number = directory.allocator.number_for(db, alice.id)

    result = router.route(db, CONTACT, alice_number, "for alice")

    assert result.conversation_id == with_alice.id


def test_ambiguous_sender_falls_back_to_most_recent(
    db: Session, directory: ParticipantDirectory, router: InboundRouter, caplog
) -> None:
    alice, bob = make_user(db, "alice"), make_user(db, "bob")
    with_alice = directory.create_sms(db, alice.id, CONTACT)
    with_bob = directory.create_sms(db, bob.id, CONTACT)

    # Neither has activity yet: newest conversation wins.
    with caplog.at_level(logging.WARNING, logger="sms_relay.inbound"):
        assert router.route(db, CONTACT, "", "one").conversation_id == with_bob.id
    assert "matches 2 conversations" in caplog.text

    with_alice.last_message_at = utcnow()
    with_bob.last_message_at = None
    db.commit()
    assert router.route(db, CONTACT, "", "two").conversation_id == with_alice.id


def test_notifiers_run_and_failures_are_contained(
    db: Session, directory: ParticipantDirectory, caplog
) -> None:
    seen: list[tuple[int, int]] = []

    def record(conversation: Conversation, message: Message) -> None:
        seen.append((conversation.id, message.id))

    def explode(conversation: Conversation, message: Message) -> None:
        raise RuntimeError("socket closed")

    router = InboundRouter(notifiers=[explode, record])
    user = make_user(db, "u")
    conversation = directory.create_sms(db, user.id, CONTACT)

    with caplog.at_level(logging.ERROR, logger="sms_relay.inbound"):
        result = router.route(db, CONTACT, "", "hi")

    assert seen == [(conversation.id, result.message_id)]
    assert "Notifier" in caplog.text


@pytest.mark.parametrize("to_raw", ["alice", ""])
def test_group_reply_is_relayed_to_other_members(
    db: Session,
    directory: ParticipantDirectory,
    fanout: FanoutEngine,
    gateway: FakeGateway,
    to_raw: str,
) -> None:
    alice, bob = make_user(db, "alice"), make_user(db, "bob")
    created = directory.create_group(
        db,
        alice.id,
        "Team",
        [ExternalContact(CONTACT, "Dana"), ExternalContact(OTHER), InternalUser(bob.id)],
    )
    alice_number = directory.allocator.number_for(db, alice.id)
    bob_number = directory.allocator.number_for(db, bob.id)
    router = InboundRouter(fanout=fanout)

    # Texted alice's number directly, or arrived with no usable To.
    to_number = alice_number if to_raw == "alice" else to_raw
    result = router.route(db, CONTACT, to_number, "running late", "SM1")

    assert result.conversation_id == created.conversation.id
    assert sorted(gateway.sent) == sorted(
        [
            (alice_number, OTHER, "[Dana]: running late"),
            (alice_number, bob_number, "[Dana]: running late"),
        ]
    )
    assert result.relayed is not None
    assert [o.to_number for o in result.relayed.outcomes] == [OTHER, bob_number]
    deliveries = db.scalars(select(Delivery).where(Delivery.message_id == result.message_id)).all()
    assert {d.to_number for d in deliveries} == {OTHER, bob_number}
    assert all(d.status == "sent" for d in deliveries)
    assert db.get(Message, result.message_id).status == "received"


def test_one_to_one_reply_is_not_relayed(
    db: Session, directory: ParticipantDirectory, fanout: FanoutEngine, gateway: FakeGateway
) -> None:
    user = make_user(db, "u")
    directory.create_sms(db, user.id, CONTACT)
    router = InboundRouter(fanout=fanout)

    result = router.route(db, CONTACT, directory.allocator.number_for(db, user.id), "hi", "SM1")

    assert result.relayed is not None
    assert len(result.relayed) == 0
    assert gateway.sent == []
    assert db.scalars(select(Delivery)).all() == []


def test_redelivered_reply_is_relayed_once(
    db: Session, directory: ParticipantDirectory, fanout: FanoutEngine, gateway: FakeGateway
) -> None:
    alice = make_user(db, "alice")
    directory.create_group(db, alice.id, "Team", [ExternalContact(CONTACT), ExternalContact(OTHER)])
    router = InboundRouter(fanout=fanout)

    router.route(db, CONTACT, "", "hi", "SM1")
    second = router.route(db, CONTACT, "", "hi", "SM1")

    assert second.duplicate
    assert [to for _, to, _ in gateway.sent] == [OTHER]
