from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .db import Conversation, Message, Participant
from .fanout import DeliveryReport, Failed, Sent
from .identity import ExternalContact, Identity, InternalUser


class MemberIn(BaseModel):
    """Either ``user_id`` (app user) or ``phone_number`` (external contact)."""

    user_id: int | None = None
    phone_number: str | None = None
    display_name: str | None = None

    def to_identity(self) -> Identity:
        if self.user_id is not None:
            return InternalUser(self.user_id)
        if not self.phone_number:
            raise ValueError("Member needs user_id or phone_number")
        return ExternalContact(self.phone_number, self.display_name)


class DirectConversationIn(BaseModel):
    user_id: int
    recipient_id: int


class SmsConversationIn(BaseModel):
    user_id: int
    recipient_phone_number: str
    recipient_name: str | None = None


class GroupConversationIn(BaseModel):
    user_id: int
    name: str = Field(min_length=1, max_length=120)
    subject_id: int | None = None
    members: list[MemberIn] = Field(default_factory=list)


class AddParticipantIn(MemberIn):
    pass


class SendMessageIn(BaseModel):
    user_id: int
    body: str = Field(min_length=1, max_length=5000)


class PoolNumberIn(BaseModel):
    phone_number: str


class ParticipantOut(BaseModel):
    id: int
    kind: str
    identity: str
    routing_number: str
    display_name: str | None
    role: str
    is_active: bool
    joined_at: datetime
    left_at: datetime | None

    @classmethod
    def of(cls, p: Participant) -> ParticipantOut:
        return cls(
            id=p.id,
            kind=p.kind,
            identity=p.identity,
            routing_number=p.routing_number,
            display_name=p.display_name,
            role=p.role,
            is_active=p.is_active,
            joined_at=p.joined_at,
            left_at=p.left_at,
        )


class ConversationOut(BaseModel):
    id: int
    kind: str
    name: str | None
    subject_id: int | None
    last_message_at: datetime | None

    @classmethod
    def of(cls, c: Conversation) -> ConversationOut:
        return cls(
            id=c.id,
            kind=c.kind,
            name=c.name,
            subject_id=c.subject_id,
            last_message_at=c.last_message_at,
        )


class MessageOut(BaseModel):
    id: int
    direction: str
    sender_user_id: int | None
    sender_phone: str | None
    body: str
    status: str
    created_at: datetime

    @classmethod
    def of(cls, m: Message) -> MessageOut:
        return cls(
            id=m.id,
            direction=m.direction,
            sender_user_id=m.sender_user_id,
            sender_phone=m.sender_phone,
            body=m.body,
            status=m.status,
            created_at=m.created_at,
        )


def report_payload(report: DeliveryReport) -> dict[str, object]:
    outcomes: list[dict[str, object]] = []
    for o in report.outcomes:
        entry: dict[str, object] = {
            "participant_id": o.participant_id,
            "identity": o.identity_key,
            "to": o.to_number,
        }
        if isinstance(o.result, Sent):
            entry.update(outcome="sent", provider_id=o.result.provider_id)
        elif isinstance(o.result, Failed):
            entry.update(outcome="failed", reason=o.result.reason)
        else:
            entry.update(outcome="pending")
        outcomes.append(entry)
    return {"message_id": report.message_id, "status": report.status, "deliveries": outcomes}


def identity_payload(identity: Identity) -> dict[str, object]:
    if isinstance(identity, InternalUser):
        return {"user_id": identity.user_id}
    return {"phone_number": identity.phone_number, "display_name": identity.display_name}
