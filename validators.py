import math
import re
from datetime import datetime
from typing import Optional, Union

from errors import LendingValidationError
from loan import as_utc, parse_iso

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class EmailValidator:
    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(EMAIL_PATTERN.match(email.strip()))


class TextValidator:
    """Small helpers for borrower-supplied text."""

    @staticmethod
    def is_present(value) -> bool:
        if value is None:
            return False
        if isinstance(value, str):
            return bool(value.strip())
        return True

    @staticmethod
    def clean_optional(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class DateValidator:
    @staticmethod
    def parse_due_date(raw: Union[str, datetime]) -> datetime:
        """Parse an ISO date or datetime. Date-only values mean midnight UTC."""
        try:
            parsed = parse_iso(raw)
        except (TypeError, ValueError) as exc:
            raise LendingValidationError("Invalid due date format") from exc
        if parsed is None:
            raise LendingValidationError("Invalid due date format")
        return parsed

    @staticmethod
    def require_future(due_date: datetime, now: datetime) -> None:
        if as_utc(due_date) <= as_utc(now):
            raise LendingValidationError("Due date must be in the future")


FINE_MESSAGE = "Fine must be a non-negative number"
FINE_RATE_MESSAGE = "finePerDay must be a non-negative number"


def validate_amount(value, message: str = FINE_MESSAGE) -> float:
    """Coerce a fine or rate to a finite, non-negative float."""
    if isinstance(value, bool):
        raise LendingValidationError(message)
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise LendingValidationError(message) from exc
    if not math.isfinite(amount) or amount < 0:
        raise LendingValidationError(message)
    return amount


def validate_fine(value) -> Optional[float]:
    """Fine overrides; None means no override."""
    if value is None:
        return None
    return validate_amount(value, FINE_MESSAGE)
