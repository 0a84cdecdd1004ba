# src/services/validation_service.py
"""
Input Hardening Filter for CaseVault.

Every untrusted string is trimmed and stripped of markup before anything else
looks at it. Validation failures are returned in the result, never raised;
callers must check ``valid`` before using the sanitized value for anything
security-relevant.
"""

from typing import Optional, Dict, Any, Mapping, Tuple, Union
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
import logging
import re

from src.core.exceptions import InputValidationError
from src.services.html_sanitizer import plain_text, sanitize_markup, strip_markup

logger = logging.getLogger(__name__)


class ValidationKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    AMOUNT = "amount"
    TEXT = "text"
    MARKUP = "markup"

    @classmethod
    def parse(cls, kind: Union["ValidationKind", str]) -> "ValidationKind":
        """Resolve a kind name; ``html`` means markup, unknown names mean text"""
        if isinstance(kind, cls):
            return kind
        normalized = str(kind).strip().lower()
        if normalized == "html":
            return cls.MARKUP
        try:
            return cls(normalized)
        except ValueError:
            logger.debug(f"Unknown validation kind '{kind}', treating as text")
            return cls.TEXT


@dataclass
class ValidationResult:
    """Result of input validation"""
    valid: bool
    sanitized: str
    error_type: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "sanitized": self.sanitized,
            "error_type": self.error_type,
            "message": self.message,
        }


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_CHARACTERS = re.compile(r"^[0-9+()\-]+$")
NAME_PATTERN = re.compile(r"^(?:[^\W\d_]|[\s\-'])+$")
AMOUNT_PATTERN = re.compile(r"^[0-9]+(?:\.[0-9]{1,2})?$")

MIN_PHONE_DIGITS = 10

ERROR_MESSAGES = {
    "invalid_email": "Please enter a valid email address",
    "invalid_phone": "Please enter a valid phone number",
    "invalid_name": "Name can only contain letters, spaces, hyphens, and apostrophes",
    "invalid_amount": "Please enter a valid amount (positive number with up to 2 decimal places)",
}


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def is_valid_phone(value: str) -> bool:
    compact = re.sub(r"\s", "", value)
    if not PHONE_CHARACTERS.match(compact):
        return False
    return sum(ch.isdigit() for ch in compact) >= MIN_PHONE_DIGITS


def is_valid_name(value: str) -> bool:
    return bool(value.strip()) and bool(NAME_PATTERN.match(value))


def is_valid_amount(value: str) -> bool:
    if not AMOUNT_PATTERN.match(value):
        return False
    try:
        return Decimal(value) > 0
    except InvalidOperation:
        return False


class ValidationService:
    """
    Centralized sanitization and validation for all untrusted input.

    Order of work:
    1. Trim whitespace
    2. Remove markup (allow-list only for markup fields)
    3. Trim again and normalize (email is lower-cased)
    4. Check the shape required by the kind
    """

    _CHECKS = {
        ValidationKind.EMAIL: (is_valid_email, "invalid_email"),
        ValidationKind.PHONE: (is_valid_phone, "invalid_phone"),
        ValidationKind.NAME: (is_valid_name, "invalid_name"),
        ValidationKind.AMOUNT: (is_valid_amount, "invalid_amount"),
    }

    def __init__(self):
        self.logger = logger

    def sanitize(self, raw_value: Optional[str], kind: Union[ValidationKind, str]) -> str:
        """Sanitize without validating"""
        kind = ValidationKind.parse(kind)
        value = (raw_value or "").strip()

        if kind is ValidationKind.MARKUP:
            value = sanitize_markup(value)
        else:
            value = strip_markup(value)

        # Removing tags can expose new leading/trailing whitespace
        value = value.strip()

        if kind is ValidationKind.EMAIL:
            value = value.lower()
        return value

    def search_term(self, raw_value: Optional[str]) -> str:
        """Markup-free, unescaped search text for store lookups"""
        return plain_text((raw_value or "").strip()).strip()

    def validate(self, raw_value: Optional[str], kind: Union[ValidationKind, str]) -> ValidationResult:
        """
        Sanitize and validate one value.

        Args:
            raw_value: Untrusted input
            kind: One of email, phone, name, amount, text, markup

        Returns:
            ValidationResult with the sanitized value and validity
        """
        kind = ValidationKind.parse(kind)
        sanitized = self.sanitize(raw_value, kind)

        check = self._CHECKS.get(kind)
        if check is None:
            return ValidationResult(valid=True, sanitized=sanitized)

        predicate, error_type = check
        if predicate(sanitized):
            return ValidationResult(valid=True, sanitized=sanitized)

        return ValidationResult(
            valid=False,
            sanitized=sanitized,
            error_type=error_type,
            message=ERROR_MESSAGES[error_type],
        )

    def validate_fields(
        self,
        fields: Mapping[str, Tuple[Optional[str], Union[ValidationKind, str]]]
    ) -> Dict[str, ValidationResult]:
        """Validate a whole form, keyed by field name"""
        return {name: self.validate(value, kind) for name, (value, kind) in fields.items()}

    def require_valid(
        self,
        field: str,
        raw_value: Optional[str],
        kind: Union[ValidationKind, str]
    ) -> str:
        """
        Validate and return the sanitized value, raising on failure.

        Raises:
            InputValidationError: With the field-level message
        """
        result = self.validate(raw_value, kind)
        if not result.valid:
            raise InputValidationError(
                result.message or "Invalid input",
                field=field,
                details={"error_type": result.error_type}
            )
        return result.sanitized


# Shared default instance
validation_service = ValidationService()


def validate_and_sanitize_input(raw_value: Optional[str], kind: Union[ValidationKind, str]) -> ValidationResult:
    """Module-level shortcut for ``ValidationService.validate``"""
    return validation_service.validate(raw_value, kind)
