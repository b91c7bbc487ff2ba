import re
from typing import Optional

class ISBNValidator:
    """ISBN normalisation shared by the catalog, copies and CSV import."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        # hyphens and spaces are presentation only
        cleaned = "".join(ch for ch in str(raw) if ch.isalnum())
        return cleaned.upper()

class TextValidator:
    """Basic text validations and sanitization."""

    @staticmethod
    def _is_non_empty_alpha(text: Optional[str]) -> bool:
        if text is None:
            return False
        t = text.strip()
        if not t:
            return False
        # allow spaces and letters, basic punctuation; reject purely numeric
        return any(c.isalpha() for c in t)

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        return bool(title.strip())

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        return TextValidator._is_non_empty_alpha(name)

class EmailValidator:
    _pattern = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(EmailValidator._pattern.match(email.strip()))

# Upper bound on copies generated by one request or CSV row
MAX_COPIES_PER_REQUEST = 500

def parse_quantity(raw: Optional[str], default: int = 1) -> int:
    """Parse a CSV quantity cell. Blank means `default`; junk, negatives or values over the cap raise ValueError."""
    if raw is None or str(raw).strip() == "":
        return default
    value = int(str(raw).strip())
    if value < 0:
        raise ValueError(f"Quantity cannot be negative: {value}")
    if value > MAX_COPIES_PER_REQUEST:
        raise ValueError(f"Quantity cannot exceed {MAX_COPIES_PER_REQUEST}: {value}")
    return value
