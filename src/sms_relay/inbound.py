from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import Conversation, Message, Participant, utcnow
from .directory import atomic
from .errors import InvalidPhoneNumber
from .fanout import DeliveryReport, FanoutEngine
from .phone import mask, normalize

logger = logging.getLogger(__name__)

Notifier = Callable[[Conversation, Message], None]


@dataclass(frozen=True)
class RoutedMessage:
    conversation_id: int
    message_id: int
    duplicate: bool = False
    # Copies forwarded to the other participants, when relaying is on
    relayed: DeliveryReport | None = None


@dataclass(frozen=True)
class Unmatched:
    from_number: str
    reason: str = "no_conversation"


class InboundRouter:
    """
    Attaches inbound SMS to conversations.

    The sender's number is the routing key: a virtual number can sit in many
    conversations at once, so the ``to`` number alone can't pick one. It is
    only used to break ties when the same external number is active in more
    than one conversation.

    With a ``fanout`` engine the stored message is also forwarded as
    ``[<sender>]: <body>`` to every other active participant, so members of a
    group see what external contacts write.
    """

    def __init__(
        self, notifiers: Sequence[Notifier] = (), fanout: FanoutEngine | None = None
    ) -> None:
        self.notifiers = list(notifiers)
        self.fanout = fanout

    def route(
        self,
        db: Session,
        from_raw: str,
        to_raw: str,
        body: str,
        provider_message_id: str | None = None,
    ) -> RoutedMessage | Unmatched:
        try:
            from_number = normalize(from_raw)
        except InvalidPhoneNumber:
            logger.warning("Inbound SMS %s from unparseable number %r", provider_message_id, from_raw)
            return Unmatched(from_number=from_raw, reason="invalid_sender")

        if provider_message_id:
            seen = db.scalars(
                select(Message).where(Message.provider_message_id == provider_message_id)
            ).first()
            if seen is not None:
                logger.info("Inbound SMS %s already stored, skipping", provider_message_id)
                return RoutedMessage(seen.conversation_id, seen.id, duplicate=True)

        candidates = self._candidates(db, from_number)
        if not candidates:
            logger.warning(
                "Unmatched inbound SMS %s from %s to %s",
                provider_message_id,
                mask(from_number),
                mask(to_raw),
            )
            return Unmatched(from_number=from_number)

        conversation = candidates[0]
        if len(candidates) > 1:
            conversation = self._disambiguate(db, candidates, to_raw)
            logger.warning(
                "Inbound SMS %s from %s matches %d conversations, picked %s",
                provider_message_id,
                mask(from_number),
                len(candidates),
                conversation.id,
            )

        with atomic(db):
            message = Message(
                conversation_id=conversation.id,
                direction="in",
                sender_user_id=None,
                sender_phone=from_raw,
                body=body,
                status="received",
                provider_message_id=provider_message_id,
            )
            db.add(message)
            conversation.last_message_at = utcnow()

        logger.info(
            "Inbound SMS %s attached to conversation %s as message %s",
            provider_message_id,
            conversation.id,
            message.id,
        )
        self._notify(conversation, message)
        relayed = self._relay(db, conversation, message, from_number, to_raw)
        return RoutedMessage(conversation.id, message.id, relayed=relayed)

    def _candidates(self, db: Session, from_number: str) -> list[Conversation]:
        """Active conversations holding ``from_number`` as an active sms participant."""
        holders = select(Participant.conversation_id).where(
            Participant.kind == "sms",
            Participant.routing_number == from_number,
            Participant.is_active.is_(True),
        )
        return list(
            db.scalars(
                select(Conversation)
                .where(Conversation.id.in_(holders), Conversation.is_active.is_(True))
                .order_by(Conversation.id)
            )
        )

    def _disambiguate(
        self, db: Session, candidates: list[Conversation], to_raw: str
    ) -> Conversation:
        """
        Prefer conversations that also hold the ``to`` number, then the most
        recently active one (newest conversation when none has activity).
        """
        scoped = candidates
        try:
            to_number = normalize(to_raw)
        except InvalidPhoneNumber:
            to_number = None

        if to_number is not None:
            holding_to = set(
                db.scalars(
                    select(Participant.conversation_id).where(
                        Participant.conversation_id.in_([c.id for c in candidates]),
                        Participant.routing_number == to_number,
                        Participant.is_active.is_(True),
                    )
                )
            )
            if holding_to:
                scoped = [c for c in candidates if c.id in holding_to]

        picked = db.scalars(
            select(Conversation)
            .where(Conversation.id.in_([c.id for c in scoped]))
            .order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.id.desc())
            .limit(1)
        ).first()
        return picked if picked is not None else scoped[0]

    def _notify(self, conversation: Conversation, message: Message) -> None:
        for notifier in self.notifiers:
            try:
                notifier(conversation, message)
            except Exception:
                logger.exception("Notifier %r failed for message %s", notifier, message.id)

    def _relay(
        self,
        db: Session,
        conversation: Conversation,
        message: Message,
        from_number: str,
        to_raw: str,
    ) -> DeliveryReport | None:
        if self.fanout is None:
            return None

        participants = self.fanout.directory.list_active(db, conversation)
        sender = next(
            (p for p in participants if p.kind == "sms" and p.routing_number == from_number),
            None,
        )
        virtual = [p for p in participants if p.kind == "virtual"]
        if sender is None or not virtual:
            return None

        try:
            to_number = normalize(to_raw)
        except InvalidPhoneNumber:
            to_number = None
        # The user whose number was texted already sees the message in the app.
        relaying = next((p for p in virtual if p.routing_number == to_number), virtual[0])
        return self.fanout.relay(
            db,
            conversation,
            message,
            relaying,
            sender.display_name or from_number,
            exclude=[sender.id],
        )
