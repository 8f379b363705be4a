from __future__ import annotations

from dataclasses import dataclass

from .phone import normalize


@dataclass(frozen=True)
class InternalUser:
    """An app user, reached through their virtual number."""

    user_id: int

    @property
    def kind(self) -> str:
        return "virtual"

    @property
    def key(self) -> str:
        return str(self.user_id)


@dataclass(frozen=True)
class ExternalContact:
    """Someone outside the app, reached on their real number."""

    phone_number: str
    display_name: str | None = None

    @property
    def kind(self) -> str:
        return "sms"

    @property
    def key(self) -> str:
        return normalize(self.phone_number)


Identity = InternalUser | ExternalContact
