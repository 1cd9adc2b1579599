import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalization and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # weighted 10..1 sum must be divisible by 11; only the check digit may be X
            if not s[:-1].isdigit():
                return False
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            total = sum((10 - i) * int(ch) for i, ch in enumerate(s[:-1])) + check_val
            return total % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class TextValidator:
    """Basic checks for free-text catalog fields."""

    @staticmethod
    def is_non_empty(text: Optional[str]) -> bool:
        return text is not None and bool(text.strip())

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return TextValidator.is_non_empty(title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if not TextValidator.is_non_empty(author):
            return False
        return not author.strip().isdigit()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        cleaned = re.sub(r"<[^>]*>", "", text)
        return re.sub(r"\s+", " ", cleaned).strip()


class EmailValidator:
    @staticmethod
    def normalize_email(raw: Optional[str]) -> str:
        return (raw or "").strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        return bool(email) and len(email) <= 254 and _EMAIL_RE.match(email) is not None
