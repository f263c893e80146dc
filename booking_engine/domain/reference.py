# booking_engine/domain/reference.py

import hashlib
import json
import re
import secrets
import time
from typing import Any, Callable

from booking_engine.domain.exceptions import ValidationError


REFERENCE_PREFIX = "BK"
MAX_REFERENCE_LENGTH = 64
_REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def _random_suffix() -> str:
    return secrets.token_hex(4).upper()


class ReferenceGenerator:
    """
    Produces booking references.

    A client-supplied reference is taken as-is so that the client can retry
    the same logical booking. Otherwise a reference is minted from the
    current time in milliseconds plus 8 random hex characters, e.g.
    ``BK1718000000000A1B2C3D4``.
    """

    def __init__(
        self,
        prefix: str = REFERENCE_PREFIX,
        clock: Callable[[], int] = _epoch_millis,
        suffix: Callable[[], str] = _random_suffix,
    ):
        self.prefix = prefix
        self._clock = clock
        self._suffix = suffix

    def generate(self, client_reference: str | None = None) -> str:
        if client_reference is not None:
            reference = client_reference.strip()
            self._validate(reference)
            return reference

        return f"{self.prefix}{self._clock()}{self._suffix()}"

    @staticmethod
    def _validate(reference: str) -> None:
        if not reference or len(reference) > MAX_REFERENCE_LENGTH:
            raise ValidationError(
                f"Booking reference must be 1-{MAX_REFERENCE_LENGTH} characters"
            )
        if not _REFERENCE_PATTERN.match(reference):
            raise ValidationError(
                "Booking reference may only contain letters, digits, '-' and '_'"
            )


def request_fingerprint(payload: dict[str, Any]) -> str:
    """Stable sha256 of a request payload, used to spot reused references."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
