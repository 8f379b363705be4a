from __future__ import annotations

import logging
from collections.abc import Collection
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Final

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import get_settings
from .db import Conversation, Delivery, Message, Participant, User, utcnow
from .directory import ParticipantDirectory, atomic
from .errors import ConversationNotFound, ParticipantNotFound, UserNotFound
from .phone import mask
from .twilio_client import GatewayResult, SmsGateway, get_gateway

logger = logging.getLogger(__name__)

# Provider status -> delivery status
PROVIDER_STATUSES: Final[dict[str, str]] = {
    "accepted": "sent",
    "queued": "sent",
    "sending": "sent",
    "sent": "sent",
    "delivered": "delivered",
    "undelivered": "failed",
    "failed": "failed",
}


@dataclass(frozen=True)
class Sent:
    provider_id: str


@dataclass(frozen=True)
class Failed:
    reason: str


@dataclass(frozen=True)
class Pending:
    pass


Outcome = Sent | Failed | Pending


@dataclass(frozen=True)
class DeliveryOutcome:
    participant_id: int
    identity_key: str
    to_number: str
    result: Outcome

    @property
    def ok(self) -> bool:
        return isinstance(self.result, Sent)


@dataclass(frozen=True)
class DeliveryReport:
    message_id: int
    status: str
    outcomes: tuple[DeliveryOutcome, ...]

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> list[DeliveryOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[DeliveryOutcome]:
        return [o for o in self.outcomes if isinstance(o.result, Failed)]


def format_body(sender_name: str, body: str) -> str:
    """Prefix the sender so recipients can tell authors apart on a shared number."""
    return f"[{sender_name}]: {body}"


class FanoutEngine:
    """
    Delivers one conversation message as one SMS per active recipient.

    Local writes happen in two short transactions around the dispatch; no
    transaction is open while the gateway is called.
    """

    def __init__(
        self,
        directory: ParticipantDirectory | None = None,
        gateway: SmsGateway | None = None,
        *,
        max_workers: int | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self.directory = directory or ParticipantDirectory()
        self.gateway = gateway or get_gateway()
        self.max_workers = settings.fanout_max_workers if max_workers is None else max_workers
        self.timeout = settings.delivery_timeout_seconds if timeout is None else timeout

    def send(
        self, db: Session, conversation: Conversation, sender_user_id: int, body: str
    ) -> DeliveryReport:
        if not conversation.is_active:
            raise ConversationNotFound(f"Conversation {conversation.id} not found")
        sender_key = str(sender_user_id)

        with atomic(db):
            sender_user = db.get(User, sender_user_id)
            if sender_user is None:
                raise UserNotFound(f"User {sender_user_id} not found")
            participants = self.directory.list_active(db, conversation)
            sender = next(
                (p for p in participants if p.kind == "virtual" and p.identity == sender_key),
                None,
            )
            if sender is None:
                raise ParticipantNotFound(
                    f"User {sender_user_id} is not an active participant of conversation "
                    f"{conversation.id}"
                )

            # Assigns synchronously if the sender has no number yet.
            self._refresh_routing(db, participants)
            from_number = sender.routing_number

            recipients = [p for p in participants if p.id != sender.id]
            message = Message(
                conversation_id=conversation.id,
                direction="out",
                sender_user_id=sender_user_id,
                body=body,
                status="pending",
            )
            db.add(message)
            db.flush()
            deliveries = self._stage(db, message, recipients, from_number)

        text = format_body(sender.display_name or sender_user.display_name, body)
        results = self._dispatch(from_number, [d.to_number for d in deliveries], text)

        with atomic(db):
            outcomes = self._record_all(recipients, deliveries, results)
            message.status = "sent" if any(o.ok for o in outcomes) else "failed"
            conversation.last_message_at = utcnow()

        self._log_failures(message, outcomes)
        return DeliveryReport(message_id=message.id, status=message.status, outcomes=tuple(outcomes))

    def relay(
        self,
        db: Session,
        conversation: Conversation,
        message: Message,
        relaying: Participant,
        sender_name: str,
        exclude: Collection[int] = (),
    ) -> DeliveryReport:
        """
        Forward an already stored message to the other active participants.

        Used for inbound SMS: ``relaying`` is the virtual participant whose
        number the SMS arrived on, and the copies go out from that number.
        ``message.status`` is left as it is.
        """
        skip = {relaying.id, *exclude}
        with atomic(db):
            participants = self.directory.list_active(db, conversation)
            self._refresh_routing(db, participants)
            from_number = relaying.routing_number
            recipients = [p for p in participants if p.id not in skip]
            deliveries = self._stage(db, message, recipients, from_number)

        if not recipients:
            return DeliveryReport(message_id=message.id, status=message.status, outcomes=())

        text = format_body(sender_name, message.body)
        results = self._dispatch(from_number, [d.to_number for d in deliveries], text)
        with atomic(db):
            outcomes = self._record_all(recipients, deliveries, results)

        logger.info(
            "Relayed message %s to %d participant(s) of conversation %s",
            message.id,
            len(outcomes),
            conversation.id,
        )
        self._log_failures(message, outcomes)
        return DeliveryReport(message_id=message.id, status=message.status, outcomes=tuple(outcomes))

    def _refresh_routing(self, db: Session, participants: list[Participant]) -> None:
        """
        Point every virtual participant at the number its user holds now.

        A released number can go to someone else, so the stored routing
        number is never trusted for app users.
        """
        for p in participants:
            if p.kind != "virtual":
                continue
            current = self.directory.allocator.assign(db, int(p.identity))
            if p.routing_number != current:
                logger.info(
                    "Participant %s routing number changed %s -> %s",
                    p.id,
                    mask(p.routing_number),
                    mask(current),
                )
                p.routing_number = current

    @staticmethod
    def _stage(
        db: Session, message: Message, recipients: list[Participant], from_number: str
    ) -> list[Delivery]:
        deliveries = [
            Delivery(
                message_id=message.id,
                participant_id=p.id,
                from_number=from_number,
                to_number=p.routing_number,
            )
            for p in recipients
        ]
        db.add_all(deliveries)
        return deliveries

    def _record_all(
        self,
        recipients: list[Participant],
        deliveries: list[Delivery],
        results: list[GatewayResult],
    ) -> list[DeliveryOutcome]:
        return [
            DeliveryOutcome(
                participant_id=participant.id,
                identity_key=participant.identity,
                to_number=delivery.to_number,
                result=self._record(delivery, result),
            )
            for participant, delivery, result in zip(recipients, deliveries, results)
        ]

    @staticmethod
    def _log_failures(message: Message, outcomes: list[DeliveryOutcome]) -> None:
        failures = sum(1 for o in outcomes if not o.ok)
        if failures:
            logger.warning(
                "Message %s: %d of %d deliveries failed", message.id, failures, len(outcomes)
            )

    def _dispatch(self, from_number: str, to_numbers: list[str], text: str) -> list[GatewayResult]:
        """Send concurrently and wait for every attempt, up to the delivery timeout."""
        if not to_numbers:
            return []

        workers = max(1, min(len(to_numbers), self.max_workers))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout")
        try:
            futures: list[Future[GatewayResult]] = [
                executor.submit(self.gateway.send_sms, from_number, to, text) for to in to_numbers
            ]
            # Attempts are queued behind at most len/workers others.
            rounds = -(-len(to_numbers) // workers)
            wait(futures, timeout=self.timeout * rounds)
            return [self._result(future, to) for future, to in zip(futures, to_numbers)]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _result(self, future: Future[GatewayResult], to: str) -> GatewayResult:
        if not future.done():
            future.cancel()
            logger.warning("SMS to %s timed out after %.1fs", mask(to), self.timeout)
            return GatewayResult(None, "failed", "timeout", "Delivery timed out")
        exc = future.exception()
        if exc is not None:
            logger.warning("SMS to %s raised %r", mask(to), exc)
            return GatewayResult(None, "failed", "exception", str(exc))
        return future.result()

    @staticmethod
    def _record(delivery: Delivery, result: GatewayResult) -> Outcome:
        if result.ok:
            delivery.status = PROVIDER_STATUSES.get(result.status, "sent")
            delivery.provider_message_id = result.delivery_id
            return Sent(provider_id=result.delivery_id or "")
        delivery.status = "failed"
        delivery.provider_message_id = result.delivery_id
        reason = result.error_message or result.error_code or "unknown error"
        delivery.error = reason[:255]
        return Failed(reason=reason)

    def apply_status_callback(
        self, db: Session, provider_id: str, provider_status: str, error_code: str | None = None
    ) -> Delivery | None:
        """Update a delivery from the provider's status webhook. Unknown ids are ignored."""
        status = PROVIDER_STATUSES.get(provider_status.lower())
        with atomic(db):
            delivery = db.scalars(
                select(Delivery).where(Delivery.provider_message_id == provider_id)
            ).first()
            if delivery is None or status is None:
                return delivery
            delivery.status = status
            if error_code:
                delivery.error = f"provider error {error_code}"
        return delivery
