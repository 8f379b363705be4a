from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import get_settings
from .db import User, VirtualNumber, utcnow
from .errors import AllocationExhausted, AlreadyAssigned, UserNotFound
from .phone import normalize

logger = logging.getLogger(__name__)

E164_MAX_DIGITS = 15


class NumberAllocator:
    """
    Assigns virtual numbers to internal users.

    The store is the source of truth: ``virtual_numbers.number`` and
    ``virtual_numbers.user_id`` are both unique, and a violation of either
    is handled as a lost race. The in-memory ``available``/``assigned``
    mirrors are seeded by :meth:`load` and only used to skip candidates that
    are already known to be taken.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(
        self,
        *,
        prefix: str | None = None,
        country_code: str | None = None,
        max_attempts: int | None = None,
        rng: Callable[[int], str] | None = None,
    ) -> None:
        settings = get_settings()
        self.prefix = settings.virtual_number_prefix if prefix is None else prefix
        self.country_code = settings.default_country_code if country_code is None else country_code
        self.max_attempts = settings.allocation_max_attempts if max_attempts is None else max_attempts
        self._rng = rng or _random_digits
        self._lock = threading.Lock()
        self._available: set[str] = set()
        self._assigned: dict[int, str] = {}

    # --- cache ---

    def load(self, db: Session) -> None:
        """Rebuild the in-memory mirrors from the store."""
        rows = db.execute(select(VirtualNumber.number, VirtualNumber.user_id)).all()
        with self._lock:
            self._available = {number for number, user_id in rows if user_id is None}
            self._assigned = {user_id: number for number, user_id in rows if user_id is not None}
        logger.info(
            "Loaded %d available and %d assigned virtual numbers",
            len(self._available),
            len(self._assigned),
        )

    def seed(self, db: Session, raw_numbers: Iterable[str]) -> list[str]:
        """Make sure the configured numbers exist in the pool; assigned ones are left alone."""
        added: list[str] = []
        for raw in raw_numbers:
            number = normalize(raw, self.country_code)
            existing = db.scalar(select(VirtualNumber).where(VirtualNumber.number == number))
            if existing is None:
                db.add(VirtualNumber(number=number))
                added.append(number)
        db.flush()
        with self._lock:
            self._available.update(added)
        return added

    def _remember(self, user_id: int, number: str) -> None:
        with self._lock:
            self._available.discard(number)
            self._assigned[user_id] = number

    def _forget(self, user_id: int, number: str) -> None:
        with self._lock:
            self._assigned.pop(user_id, None)
            self._available.add(number)

    def _known_taken(self, number: str) -> bool:
        with self._lock:
            return number in self._available or number in self._assigned.values()

    # --- queries ---

    def number_for(self, db: Session, user_id: int) -> str | None:
        return db.scalar(select(VirtualNumber.number).where(VirtualNumber.user_id == user_id))

    def available(self, db: Session) -> list[str]:
        return list(
            db.scalars(
                select(VirtualNumber.number)
                .where(VirtualNumber.user_id.is_(None))
                .order_by(VirtualNumber.id)
            )
        )

    def assigned(self, db: Session) -> list[tuple[int, str]]:
        rows = db.execute(
            select(VirtualNumber.user_id, VirtualNumber.number)
            .where(VirtualNumber.user_id.is_not(None))
            .order_by(VirtualNumber.assigned_at, VirtualNumber.id)
        ).all()
        return [(user_id, number) for user_id, number in rows]

    # --- mutations ---

    def assign(self, db: Session, user_id: int) -> str:
        """
        Return the user's virtual number, assigning one if needed.

        Pooled numbers are claimed first, in pool order. Once the pool is
        empty, numbers are synthesized from the configured prefix. Every
        attempt (a lost claim or a unique-constraint collision) counts
        against ``max_attempts``.
        """
        current = self.number_for(db, user_id)
        if current is not None:
            return current

        if db.get(User, user_id) is None:
            raise UserNotFound(f"User {user_id} not found")

        attempts = 0
        while attempts < self.max_attempts:
            attempts += 1
            pooled = db.scalar(
                select(VirtualNumber)
                .where(VirtualNumber.user_id.is_(None))
                .order_by(VirtualNumber.id)
                .limit(1)
            )
            if pooled is not None:
                number = self._claim_pooled(db, pooled, user_id)
            elif self.prefix:
                number = self._insert_synthesized(db, user_id)
            else:
                break

            if number is not None:
                self._remember(user_id, number)
                logger.info("Assigned virtual number %s to user %s", number, user_id)
                return number

            # The user may have been assigned by a concurrent request.
            current = self.number_for(db, user_id)
            if current is not None:
                self._remember(user_id, current)
                return current

        logger.error(
            "Could not assign a virtual number to user %s after %d attempts", user_id, attempts
        )
        raise AllocationExhausted(
            f"No virtual number available for user {user_id} after {attempts} attempts"
        )

    def _claim_pooled(self, db: Session, pooled: VirtualNumber, user_id: int) -> str | None:
        try:
            with db.begin_nested():
                result = db.execute(
                    update(VirtualNumber)
                    .where(VirtualNumber.id == pooled.id, VirtualNumber.user_id.is_(None))
                    .values(user_id=user_id, assigned_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            logger.debug("User %s already holds a number, claim of %s dropped", user_id, pooled.number)
            return None
        if result.rowcount != 1:
            logger.debug("Pooled number %s was claimed concurrently", pooled.number)
            return None
        db.expire(pooled)
        return pooled.number

    def _insert_synthesized(self, db: Session, user_id: int) -> str | None:
        candidate = self._candidate()
        if self._known_taken(candidate):
            logger.debug("Candidate %s already known, retrying", candidate)
            return None
        try:
            with db.begin_nested():
                db.add(VirtualNumber(number=candidate, user_id=user_id, assigned_at=utcnow()))
                db.flush()
        except IntegrityError:
            logger.debug("Candidate %s collided in store, retrying", candidate)
            return None
        return candidate

    def _candidate(self) -> str:
        prefix_digits = "".join(ch for ch in self.prefix if ch.isdigit())
        head = self.country_code + prefix_digits
        # NANP numbers are always 11 digits; elsewhere fill to 12.
        total = 11 if self.country_code == "1" else 12
        suffix_len = max(total - len(head), 1)
        return "+" + (head + self._rng(suffix_len))[:E164_MAX_DIGITS]

    def add_to_pool(self, db: Session, raw_number: str) -> str:
        number = normalize(raw_number, self.country_code)
        existing = db.scalar(select(VirtualNumber).where(VirtualNumber.number == number))
        if existing is not None:
            if existing.user_id is not None:
                raise AlreadyAssigned(f"{number} is assigned to user {existing.user_id}")
            return number
        db.add(VirtualNumber(number=number))
        db.flush()
        with self._lock:
            self._available.add(number)
        logger.info("Added %s to the virtual number pool", number)
        return number

    def remove_from_pool(self, db: Session, raw_number: str) -> str:
        number = normalize(raw_number, self.country_code)
        existing = db.scalar(select(VirtualNumber).where(VirtualNumber.number == number))
        if existing is None:
            return number
        if existing.user_id is not None:
            raise AlreadyAssigned(f"Cannot remove {number}: assigned to user {existing.user_id}")
        db.delete(existing)
        db.flush()
        with self._lock:
            self._available.discard(number)
        logger.info("Removed %s from the virtual number pool", number)
        return number

    def release(self, db: Session, user_id: int) -> str | None:
        """Return the user's number to the pool. No-op when the user holds none."""
        row = db.scalar(select(VirtualNumber).where(VirtualNumber.user_id == user_id))
        if row is None:
            return None
        number = row.number
        row.user_id = None
        row.assigned_at = None
        db.flush()
        self._forget(user_id, number)
        logger.info("Released virtual number %s from user %s", number, user_id)
        return number


def _random_digits(length: int) -> str:
    return "".join(random.choice("0123456789") for _ in range(length))


_allocator: NumberAllocator | None = None


def get_allocator() -> NumberAllocator:
    """Process-wide allocator, created lazily from settings."""
    global _allocator
    if _allocator is None:
        _allocator = NumberAllocator()
    return _allocator


def reset_allocator() -> None:
    global _allocator
    _allocator = None
