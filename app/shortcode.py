"""Short code generation and custom code validation.

Random codes are drawn with nanoid, which reads from ``os.urandom``, over the
62-symbol alphanumeric alphabet. The generator never checks uniqueness: the
``links``/``short_code_registry`` unique constraints decide, and
``LinkStore.create`` redraws on collision up to a fixed ceiling.
"""

import re

from nanoid import generate

from app.config import Settings
from app.errors import ValidationError

__all__ = ["ALPHABET", "RESERVED_CODES", "ShortCodeGenerator"]

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"

# Single-segment routes served by this app; a code equal to one is unreachable.
RESERVED_CODES = frozenset({"links", "usage", "plans", "health", "metrics", "docs", "redoc", "webhooks", "admin"})

_CUSTOM_CODE_RE = re.compile(r"^[A-Za-z0-9]+$")


class ShortCodeGenerator:
    def __init__(self, length: int = 6, min_custom_length: int = 3, max_custom_length: int = 20) -> None:
        assert length > 0, f"length must be positive, got {length!r}"
        assert 0 < min_custom_length <= max_custom_length
        self.length = length
        self.min_custom_length = min_custom_length
        self.max_custom_length = max_custom_length

    @classmethod
    def from_settings(cls, settings: Settings) -> "ShortCodeGenerator":
        return cls(
            length=settings.SHORT_CODE_LENGTH,
            min_custom_length=settings.CUSTOM_CODE_MIN_LENGTH,
            max_custom_length=settings.CUSTOM_CODE_MAX_LENGTH,
        )

    def generate(self, custom_code: str | None = None) -> str:
        """Return ``custom_code`` verbatim once validated, else a fresh random code."""
        if custom_code is not None:
            return self.validate_custom_code(custom_code)
        while True:
            candidate = generate(ALPHABET, self.length)
            if candidate not in RESERVED_CODES:
                return candidate

    def validate_custom_code(self, custom_code: str) -> str:
        if not (self.min_custom_length <= len(custom_code) <= self.max_custom_length):
            raise ValidationError(
                f"Custom code must be between {self.min_custom_length} and {self.max_custom_length} characters"
            )
        if not _CUSTOM_CODE_RE.match(custom_code):
            raise ValidationError("Custom code must be alphanumeric")
        if custom_code in RESERVED_CODES:
            raise ValidationError(f"Custom code '{custom_code}' is reserved")
        return custom_code
