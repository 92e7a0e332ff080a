"""
Input parsing helpers shared by the lifecycle managers.

Parsers collect problems into a {field: message} dict so a single BadRequest
can report every invalid field at once.
"""
import re
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from .errors import BadRequest


class _Unset:
    """Marker for a patch field the caller did not send."""

    def __repr__(self):
        return 'UNSET'

    def __bool__(self):
        return False


UNSET = _Unset()

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
SPECIAL_CHAR_RE = re.compile(r'[!@#$%^&*()_+\-=\[\]{};\':"\\|,.<>/?]')


class FieldErrors:

    def __init__(self):
        self.errors: Dict[str, str] = {}

    def add(self, field: str, message: str):
        self.errors.setdefault(field, message)

    def raise_if_any(self, message: str = "Validation error"):
        if self.errors:
            raise BadRequest(message, details=dict(self.errors))


def parse_datetime(value, field: str, errors: FieldErrors) -> Optional[datetime]:
    """Accept ISO-8601 strings or datetimes; returns naive UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            errors.add(field, f"{field} must be an ISO-8601 date")
            return None
    else:
        errors.add(field, f"{field} is required")
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_string(value, field: str, errors: FieldErrors, max_length: int = 255,
                 required: bool = True) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            errors.add(field, f"{field} is required")
        return None
    if not isinstance(value, str):
        errors.add(field, f"{field} must be a string")
        return None
    value = value.strip()
    if len(value) > max_length:
        errors.add(field, f"{field} must be at most {max_length} characters")
        return None
    return value


def parse_choice(value, field: str, choices: Iterable, errors: FieldErrors) -> Optional[str]:
    allowed = [getattr(c, 'value', c) for c in choices]
    if value not in allowed:
        errors.add(field, f"{field} must be one of: {', '.join(allowed)}")
        return None
    return value


def parse_bool(value, field: str, errors: FieldErrors) -> Optional[bool]:
    if not isinstance(value, bool):
        errors.add(field, f"{field} must be a boolean")
        return None
    return value


def parse_string_list(value, field: str, errors: FieldErrors, min_items: int = 0) -> Optional[List[str]]:
    if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
        errors.add(field, f"{field} must be a list of non-empty strings")
        return None
    items = [v.strip() for v in value]
    if len(items) < min_items:
        errors.add(field, f"At least {min_items} {field} entry is required")
        return None
    return items


def is_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def parse_optional_url(value, field: str, errors: FieldErrors) -> Optional[str]:
    if value in (None, ''):
        return None
    if not isinstance(value, str) or not is_url(value):
        errors.add(field, f"{field} must be a valid URL or empty")
        return None
    return value


def parse_url_list(value, field: str, errors: FieldErrors) -> Optional[List[str]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) and is_url(v) for v in value):
        errors.add(field, f"{field} must be a list of URLs")
        return None
    return value


def parse_email(value, errors: FieldErrors) -> Optional[str]:
    if not isinstance(value, str) or not EMAIL_RE.match(value.strip()):
        errors.add('email', "Invalid email address")
        return None
    return value.strip().lower()


def password_strength_errors(password) -> List[str]:
    if not isinstance(password, str):
        return ["Password is required"]
    problems = []
    if len(password) < 8:
        problems.append("Password must be at least 8 characters long")
    if not re.search(r'[A-Z]', password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r'[a-z]', password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r'[0-9]', password):
        problems.append("Password must contain at least one number")
    if not SPECIAL_CHAR_RE.search(password):
        problems.append("Password must contain at least one special character")
    return problems


def parse_page(args) -> tuple:
    """(page, limit) from query args, clamped to 1..100 per page."""
    try:
        page = max(1, int(args.get('page', 1)))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = min(100, max(1, int(args.get('limit', 20))))
    except (TypeError, ValueError):
        limit = 20
    return page, limit
