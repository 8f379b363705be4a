from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from .config import get_settings
from .phone import mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    delivery_id: str | None
    status: str
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.delivery_id is not None and self.error_code is None and self.status != "failed"


class SmsGateway(Protocol):
    def send_sms(self, from_: str, to: str, body: str) -> GatewayResult: ...


class TwilioGateway:
    """
    Sends one SMS per call through the Twilio REST API.

    Failures come back as a failed GatewayResult; nothing raises, so one
    recipient can never take down the others in a fan-out.
    """

    def __init__(
        self,
        client: Client | None = None,
        *,
        timeout: float | None = None,
        status_callback: str | None = None,
    ) -> None:
        settings = get_settings()
        self.timeout = settings.delivery_timeout_seconds if timeout is None else timeout
        self.client = client or get_twilio_client(self.timeout)
        self.status_callback = status_callback

    def send_sms(self, from_: str, to: str, body: str) -> GatewayResult:
        kwargs: dict[str, str] = {"to": to, "from_": from_, "body": body}
        if self.status_callback:
            kwargs["status_callback"] = self.status_callback
        try:
            message = self.client.messages.create(**kwargs)
        except TwilioRestException as exc:
            logger.warning("Twilio rejected SMS to %s: %s (%s)", mask(to), exc.msg, exc.code)
            return GatewayResult(None, "failed", str(exc.code), str(exc.msg))
        except (TwilioException, OSError) as exc:
            logger.warning("Twilio SMS to %s failed: %s", mask(to), exc)
            return GatewayResult(None, "failed", "transport", str(exc))

        error_code = str(message.error_code) if message.error_code else None
        return GatewayResult(message.sid, message.status or "queued", error_code, message.error_message)


class ConsoleGateway:
    """Stand-in used when Twilio is not configured: logs the SMS and reports success."""

    def send_sms(self, from_: str, to: str, body: str) -> GatewayResult:
        logger.info("Mock SMS %s -> %s: %s", mask(from_), mask(to), body)
        return GatewayResult(f"mock-{uuid.uuid4().hex}", "sent")


def get_twilio_client(timeout: float | None = None) -> Client:
    settings = get_settings()

    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise RuntimeError(
            "Twilio credentials are not configured (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)"
        )

    http_client = TwilioHttpClient(timeout=timeout) if timeout is not None else None
    return Client(settings.twilio_account_sid, settings.twilio_auth_token, http_client=http_client)


@lru_cache
def get_gateway() -> SmsGateway:
    """Twilio when credentials are present, otherwise the console mock."""
    settings = get_settings()
    if settings.twilio_account_sid and settings.twilio_auth_token:
        callback = None
        if settings.public_base_url:
            callback = settings.public_base_url.rstrip("/") + "/sms/status"
        return TwilioGateway(status_callback=callback)
    logger.warning("Twilio not configured, outbound SMS will only be logged")
    return ConsoleGateway()


def validate_signature(url: str, params: Mapping[str, str], signature: str | None) -> bool:
    """Check an X-Twilio-Signature header against the configured auth token."""
    settings = get_settings()
    if not settings.twilio_auth_token or not signature:
        return False
    return RequestValidator(settings.twilio_auth_token).validate(url, dict(params), signature)
