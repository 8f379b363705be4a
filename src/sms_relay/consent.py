from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import ConsentRecord, Contact, Conversation, utcnow
from .errors import ConsentDenied, InvalidPhoneNumber
from .identity import ExternalContact, Identity, InternalUser
from .phone import mask, normalize

logger = logging.getLogger(__name__)


class ConsentGate:
    """
    Decides whether an identity may join a conversation about a protected subject.

    Consent is opt-in: a missing contact record or a missing grant both deny.
    """

    def resolve_contact(self, db: Session, identity: Identity) -> Contact | None:
        if isinstance(identity, InternalUser):
            stmt = select(Contact).where(Contact.user_id == identity.user_id)
        else:
            try:
                number = normalize(identity.phone_number)
            except InvalidPhoneNumber:
                return None
            stmt = select(Contact).where(Contact.phone_number == number)
        return db.scalars(stmt.where(Contact.is_active.is_(True)).order_by(Contact.id)).first()

    def may_add(self, db: Session, conversation: Conversation, identity: Identity) -> bool:
        if conversation.subject_id is None:
            return True

        contact = self.resolve_contact(db, identity)
        if contact is None:
            logger.info(
                "No contact record for %s; consent for subject %s denied",
                _describe(identity),
                conversation.subject_id,
            )
            return False

        record = db.scalars(
            select(ConsentRecord).where(
                ConsentRecord.contact_id == contact.id,
                ConsentRecord.subject_id == conversation.subject_id,
                ConsentRecord.granted.is_(True),
                ConsentRecord.revoked_at.is_(None),
            )
        ).first()
        if record is None:
            logger.info(
                "Contact %s has no consent for subject %s", contact.id, conversation.subject_id
            )
            return False
        return True

    def require(self, db: Session, conversation: Conversation, identity: Identity) -> None:
        if not self.may_add(db, conversation, identity):
            raise ConsentDenied(
                f"No consent on record for {_describe(identity)} "
                f"in conversations about subject {conversation.subject_id}"
            )

    def grant(
        self, db: Session, contact_id: int, subject_id: int, notes: str | None = None
    ) -> ConsentRecord:
        record = ConsentRecord(
            contact_id=contact_id,
            subject_id=subject_id,
            granted=True,
            granted_at=utcnow(),
            notes=notes,
        )
        db.add(record)
        db.flush()
        return record

    def revoke(self, db: Session, contact_id: int, subject_id: int) -> int:
        """Stamp every active grant for the pair as revoked. Returns how many were revoked."""
        records = db.scalars(
            select(ConsentRecord).where(
                ConsentRecord.contact_id == contact_id,
                ConsentRecord.subject_id == subject_id,
                ConsentRecord.revoked_at.is_(None),
            )
        ).all()
        now = utcnow()
        for record in records:
            record.revoked_at = now
        db.flush()
        return len(records)


def _describe(identity: Identity) -> str:
    if isinstance(identity, ExternalContact):
        return f"number {mask(identity.phone_number)}"
    return f"user {identity.user_id}"
