from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from .consent import ConsentGate
from .db import Contact, Conversation, Message, Participant, User, utcnow
from .errors import ConversationNotFound, DuplicateParticipant, ParticipantNotFound, UserNotFound
from .identity import ExternalContact, Identity, InternalUser
from .numbers import NumberAllocator, get_allocator
from .phone import is_valid, mask, normalize

logger = logging.getLogger(__name__)


@dataclass
class GroupCreation:
    conversation: Conversation
    # Members left out because the consent gate rejected them
    excluded: list[Identity] = field(default_factory=list)


@contextmanager
def atomic(db: Session) -> Iterator[None]:
    """Commit once on success; roll the whole operation back on any error."""
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


class ParticipantDirectory:
    """Owns conversations and their membership."""

    def __init__(
        self,
        allocator: NumberAllocator | None = None,
        consent: ConsentGate | None = None,
    ) -> None:
        self.allocator = allocator or get_allocator()
        self.consent = consent or ConsentGate()

    # --- lookups ---

    def get_conversation(self, db: Session, conversation_id: int) -> Conversation:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None or not conversation.is_active:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    def list_active(self, db: Session, conversation: Conversation) -> list[Participant]:
        """Active participants in join order; fan-out relies on this order."""
        return list(
            db.scalars(
                select(Participant)
                .where(
                    Participant.conversation_id == conversation.id,
                    Participant.is_active.is_(True),
                )
                .order_by(Participant.joined_at, Participant.id)
            )
        )

    def find_active(
        self, db: Session, conversation: Conversation, identity_key: str
    ) -> Participant | None:
        return db.scalars(
            select(Participant).where(
                Participant.conversation_id == conversation.id,
                Participant.identity == identity_key,
                Participant.is_active.is_(True),
            )
        ).first()

    def conversations_for_user(self, db: Session, user_id: int) -> list[Conversation]:
        member_of = select(Participant.conversation_id).where(
            Participant.kind == "virtual",
            Participant.identity == str(user_id),
            Participant.is_active.is_(True),
        )
        return list(
            db.scalars(
                select(Conversation)
                .where(Conversation.id.in_(member_of), Conversation.is_active.is_(True))
                .order_by(
                    Conversation.last_message_at.desc().nulls_last(),
                    Conversation.created_at.desc(),
                )
            )
        )

    def messages(
        self, db: Session, conversation: Conversation, limit: int = 50, offset: int = 0
    ) -> list[Message]:
        """Newest first."""
        return list(
            db.scalars(
                select(Message)
                .where(Message.conversation_id == conversation.id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
                .offset(offset)
            )
        )

    def find_existing(self, db: Session, kind: str, members: Sequence[Identity]) -> Conversation | None:
        """Active conversation of ``kind`` whose active members are exactly ``members``."""
        keys = {m.key for m in members}
        stmt = select(Conversation).where(
            Conversation.kind == kind, Conversation.is_active.is_(True)
        )
        for key in keys:
            stmt = stmt.where(
                Conversation.id.in_(
                    select(Participant.conversation_id).where(
                        Participant.identity == key, Participant.is_active.is_(True)
                    )
                )
            )
        for conversation in db.scalars(stmt.order_by(Conversation.id)):
            if {p.identity for p in self.list_active(db, conversation)} == keys:
                return conversation
        return None

    # --- factories ---

    def create_direct(self, db: Session, user_a: int, user_b: int) -> Conversation:
        if user_a == user_b:
            raise DuplicateParticipant("A direct conversation needs two different users")
        a, b = InternalUser(user_a), InternalUser(user_b)
        existing = self.find_existing(db, "direct", [a, b])
        if existing is not None:
            return existing

        with atomic(db):
            recipient = self._user(db, user_b)
            conversation = Conversation(kind="direct", name=recipient.display_name)
            db.add(conversation)
            db.flush()
            self._insert(db, conversation, a, role="admin")
            self._insert(db, conversation, b, role="member")
        logger.info("Created direct conversation %s for users %s and %s", conversation.id, user_a, user_b)
        return conversation

    def create_sms(
        self,
        db: Session,
        user_id: int,
        external_number: str,
        display_name: str | None = None,
    ) -> Conversation:
        user = InternalUser(user_id)
        contact = ExternalContact(normalize(external_number), display_name)
        existing = self.find_existing(db, "sms", [user, contact])
        if existing is not None:
            return existing

        with atomic(db):
            self._user(db, user_id)
            conversation = Conversation(
                kind="sms", name=display_name or contact.phone_number
            )
            db.add(conversation)
            db.flush()
            self._insert(db, conversation, user, role="admin")
            self._insert(db, conversation, contact, role="member", display_name=display_name)
        logger.info(
            "Created sms conversation %s between user %s and %s",
            conversation.id,
            user_id,
            mask(contact.phone_number),
        )
        return conversation

    def create_group(
        self,
        db: Session,
        creator_id: int,
        name: str,
        members: Sequence[Identity],
        subject_id: int | None = None,
    ) -> GroupCreation:
        """
        Create a group conversation with the creator as admin.

        With a ``subject_id`` every member other than the creator must pass
        the consent gate; those who don't are left out and reported in
        ``GroupCreation.excluded`` instead of failing the whole creation.
        """
        creator = InternalUser(creator_id)
        excluded: list[Identity] = []
        with atomic(db):
            self._user(db, creator_id)
            conversation = Conversation(kind="group", name=name, subject_id=subject_id)
            db.add(conversation)
            db.flush()
            self._insert(db, conversation, creator, role="admin")

            seen = {creator.key}
            for member in members:
                if member.key in seen:
                    continue
                seen.add(member.key)
                if not self.consent.may_add(db, conversation, member):
                    excluded.append(member)
                    continue
                display = member.display_name if isinstance(member, ExternalContact) else None
                self._insert(db, conversation, member, role="member", display_name=display)

        if excluded:
            logger.warning(
                "Group %s for subject %s created without %d member(s) lacking consent",
                conversation.id,
                subject_id,
                len(excluded),
            )
        return GroupCreation(conversation=conversation, excluded=excluded)

    # --- membership ---

    def add_participant(
        self,
        db: Session,
        conversation: Conversation,
        identity: Identity,
        display_name: str | None = None,
    ) -> Participant:
        if not conversation.is_active:
            raise ConversationNotFound(f"Conversation {conversation.id} not found")
        with atomic(db):
            self.consent.require(db, conversation, identity)
            if self.find_active(db, conversation, identity.key) is not None:
                raise DuplicateParticipant(
                    f"{identity.key} is already in conversation {conversation.id}"
                )
            participant = self._insert(
                db, conversation, identity, role="member", display_name=display_name
            )
        return participant

    def remove_participant(
        self, db: Session, conversation: Conversation, identity_key: str
    ) -> Participant:
        """
        Soft-remove: the row stays for history, marked inactive with a left timestamp.

        ``identity_key`` is matched as given first (a user id or an E.164
        number), then as a phone number in any format.
        """
        with atomic(db):
            participant = self.find_active(db, conversation, identity_key)
            if participant is None and is_valid(identity_key):
                participant = self.find_active(db, conversation, normalize(identity_key))
            if participant is None:
                raise ParticipantNotFound(
                    f"No active participant {identity_key} in conversation {conversation.id}"
                )
            participant.is_active = False
            participant.left_at = utcnow()
        return participant

    def deactivate(self, db: Session, conversation: Conversation) -> None:
        with atomic(db):
            conversation.is_active = False
        logger.info("Deactivated conversation %s", conversation.id)

    # --- internals ---

    def _user(self, db: Session, user_id: int) -> User:
        user = db.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    def _insert(
        self,
        db: Session,
        conversation: Conversation,
        identity: Identity,
        *,
        role: str,
        display_name: str | None = None,
    ) -> Participant:
        if isinstance(identity, InternalUser):
            user = self._user(db, identity.user_id)
            routing_number = self.allocator.assign(db, identity.user_id)
            name = display_name or user.display_name
        else:
            routing_number = normalize(identity.phone_number)
            name = display_name or self._contact_name(db, routing_number) or routing_number

        participant = Participant(
            conversation_id=conversation.id,
            kind=identity.kind,
            identity=identity.key,
            routing_number=routing_number,
            display_name=name,
            role=role,
            joined_at=utcnow(),
        )
        db.add(participant)
        db.flush()
        return participant

    def _contact_name(self, db: Session, number: str) -> str | None:
        contact = db.scalars(
            select(Contact).where(Contact.phone_number == number, Contact.is_active.is_(True))
        ).first()
        if contact is None:
            return None
        return f"{contact.first_name} {contact.last_name}".strip() or None
