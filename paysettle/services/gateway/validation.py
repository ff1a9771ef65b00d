"""Payment instrument checks applied before a payment row is created."""

import re
from datetime import date

_VPA_RE = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z0-9]+$")
_SEPARATORS_RE = re.compile(r"[\s-]")


def sanitize_card_number(number: str) -> str:
    return _SEPARATORS_RE.sub("", number)


def validate_vpa(vpa: str) -> bool:
    return bool(_VPA_RE.match(vpa))


def validate_luhn(number: str) -> bool:
    """Luhn checksum over 13-19 digits; spaces and dashes are ignored."""

    digits = sanitize_card_number(number)
    if not digits.isdigit() or not 13 <= len(digits) <= 19:
        return False
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def detect_card_network(number: str) -> str:
    digits = sanitize_card_number(number)
    if digits.startswith("4"):
        return "visa"
    if re.match(r"^5[1-5]", digits):
        return "mastercard"
    if re.match(r"^3[47]", digits):
        return "amex"
    if re.match(r"^(60|65|8[1-9])", digits):
        return "rupay"
    return "unknown"


def validate_expiry(month: str | int, year: str | int, today: date | None = None) -> bool:
    """True when the card expires this month or later; two-digit years are 20xx."""

    today = today or date.today()
    try:
        exp_month = int(month)
        exp_year = int(year)
    except (TypeError, ValueError):
        return False
    if not 1 <= exp_month <= 12:
        return False
    if exp_year < 100:
        exp_year += 2000
    return (exp_year, exp_month) >= (today.year, today.month)
