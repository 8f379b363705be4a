from __future__ import annotations


class RelayError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 400
    code: str = "relay_error"


class InvalidPhoneNumber(RelayError, ValueError):
    status_code = 422
    code = "invalid_phone_number"


class AllocationExhausted(RelayError):
    """No virtual number could be assigned within the attempt bound. Retry later."""

    status_code = 503
    code = "allocation_exhausted"


class AlreadyAssigned(RelayError):
    status_code = 409
    code = "already_assigned"


class ConsentDenied(RelayError):
    status_code = 403
    code = "consent_denied"


class DuplicateParticipant(RelayError):
    status_code = 409
    code = "duplicate_participant"


class ParticipantNotFound(RelayError):
    status_code = 404
    code = "participant_not_found"


class ConversationNotFound(RelayError):
    status_code = 404
    code = "conversation_not_found"


class UserNotFound(RelayError):
    status_code = 404
    code = "user_not_found"
