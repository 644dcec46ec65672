import re
from typing import Any, Optional

from smart_library.errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmailValidator:
    """Light email checks; delivery is never verified."""

    @staticmethod
    def normalize_email(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(_EMAIL_RE.match(EmailValidator.normalize_email(email)))


class TextValidator:
    """Basic text validation and sanitization for catalog fields."""

    @staticmethod
    def require(value: Optional[str], field_name: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValidationError(f"{field_name} is required")
        return cleaned

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags; descriptions come from external catalogs
        cleaned = re.sub(r"<[^>]*>", "", text)
        return cleaned.strip()


class CopyCountValidator:
    """Checks that copy counters are integers with 0 <= available <= total."""

    @staticmethod
    def coerce(value: Any, field_name: str) -> int:
        if isinstance(value, bool):
            raise ValidationError(f"{field_name} must be a whole number")
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field_name} must be a whole number") from None
        if number != value and not isinstance(value, str):
            raise ValidationError(f"{field_name} must be a whole number")
        if number < 0:
            raise ValidationError(f"{field_name} cannot be negative")
        return number

    @staticmethod
    def validate(total_copies: Any, available_copies: Any) -> tuple:
        total = CopyCountValidator.coerce(total_copies, "totalCopies")
        available = CopyCountValidator.coerce(available_copies, "availableCopies")
        if available > total:
            raise ValidationError("availableCopies cannot exceed totalCopies")
        return total, available
