from __future__ import annotations

import re
from typing import Final

from .config import get_settings
from .errors import InvalidPhoneNumber

E164_MIN_DIGITS: Final[int] = 8
E164_MAX_DIGITS: Final[int] = 15

# Length of a national significant number for calling codes where we can
# tell a national number apart from one that already carries the code.
NATIONAL_LENGTHS: Final[dict[str, int]] = {
    "1": 10,  # NANP
    "7": 10,
    "33": 9,
    "44": 10,
    "49": 11,
    "61": 9,
}

_SCHEMES: Final[tuple[str, ...]] = ("tel:", "sms:", "sip:")
_NON_DIGITS = re.compile(r"\D")


def normalize(raw: str, country_code: str | None = None) -> str:
    """
    Canonicalise a phone number to E.164 (``+<digits>``).

    - drop whitespace, punctuation and a ``tel:``/``sms:``/``sip:`` scheme
    - ``00`` international prefix becomes ``+``
    - a bare national number for the default calling code gets the code
    - anything else without ``+`` is taken to already carry a country code

    Raises InvalidPhoneNumber when the digit count falls outside E.164 bounds.
    Idempotent: normalize(normalize(x)) == normalize(x).
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidPhoneNumber("Phone number is empty")

    cc = country_code if country_code is not None else get_settings().default_country_code
    cleaned = raw.strip()
    for scheme in _SCHEMES:
        if cleaned.lower().startswith(scheme):
            cleaned = cleaned[len(scheme) :].strip()

    had_plus = cleaned.startswith("+")
    digits = _NON_DIGITS.sub("", cleaned)
    if not had_plus and digits.startswith("00"):
        digits = digits[2:]
        had_plus = True

    if not had_plus and len(digits) == NATIONAL_LENGTHS.get(cc, -1):
        digits = cc + digits

    if not E164_MIN_DIGITS <= len(digits) <= E164_MAX_DIGITS:
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r}")
    if digits.startswith("0"):
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r} (no country code)")

    # +1 is shared by every NANP country, so its length is fixed.
    if digits.startswith("1") and len(digits) != 11:
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r} (+1 takes 10 more digits)")

    return "+" + digits


def is_valid(raw: str, country_code: str | None = None) -> bool:
    try:
        normalize(raw, country_code)
    except InvalidPhoneNumber:
        return False
    return True


def mask(number: str | None) -> str:
    """Hide all but the last four digits, for logs."""
    if not number:
        return "-"
    if len(number) <= 4:
        return "*" * len(number)
    return "*" * (len(number) - 4) + number[-4:]
