"""Public identifiers for orders, payments and refunds."""

import secrets
import string

_ALPHABET = string.ascii_letters + string.digits


def generate_id(prefix: str, length: int = 16) -> str:
    """Return `prefix` followed by `length` random alphanumerics, e.g. `pay_Ab12...`."""

    return prefix + "".join(secrets.choice(_ALPHABET) for _ in range(length))
