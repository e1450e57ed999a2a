"""
Field validation engine.

``validate_field`` is the single entry point used both by the public
per-field check (called by the renderer while a respondent navigates) and by
the submission coordinator before anything is persisted.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .utils import format_number, parse_number, to_text

logger = logging.getLogger(__name__)

PATTERNS = {
    'email': re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'),
    'phone': re.compile(r'^[+]?[(]?[0-9]{1,4}[)]?[-\s.]?[(]?[0-9]{1,5}[)]?[-\s.]?[0-9]{3,10}$'),
    'url': re.compile(
        r'^https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_+.~#?&/=]*)$'
    ),
    'cpf': re.compile(r'^\d{3}\.?\d{3}\.?\d{3}-?\d{2}$'),
    'cnpj': re.compile(r'^\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2}$'),
}

DEFAULT_MESSAGES = {
    'email': 'Enter a valid email address (e.g. name@email.com)',
    'phone': 'Enter a valid phone number (e.g. (11) 99999-9999)',
    'url': 'Enter a valid URL (e.g. https://example.com)',
    'cpf': 'Enter a valid CPF',
    'cnpj': 'Enter a valid CNPJ',
    'required': 'This field is required',
    'invalid': 'Invalid format',
}

# field types whose answers always carry an implied format check
TYPE_FORMATS = ('email', 'phone', 'url')


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        if self.valid:
            return {'valid': True}
        return {'valid': False, 'error': self.error}


def get_default_validation(field_type: str) -> Optional[dict]:
    if field_type in TYPE_FORMATS:
        return {'format': field_type, 'messages': {'format': DEFAULT_MESSAGES[field_type]}}
    return None


def merge_rules(field_type: str, rule: Optional[dict]) -> dict:
    """Shallow merge of the type default with the stored rule; ``messages`` merges one level deeper."""
    default = get_default_validation(field_type) or {}
    rule = rule or {}
    merged = {**default, **rule}
    merged['messages'] = {**default.get('messages', {}), **_messages(rule)}
    return merged


def _messages(rule: Optional[dict]) -> dict:
    messages = (rule or {}).get('messages')
    return messages if isinstance(messages, dict) else {}


def _bound(rule: dict, key: str) -> Optional[float]:
    value = rule.get(key)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return parse_number(str(value))


def _compile(pattern: Any):
    try:
        return re.compile(str(pattern))
    except re.error:
        logger.warning('Skipping invalid validation pattern %r', pattern)
        return None


def validate_field(value: Any, field_type: str, required: bool, validations: Optional[dict] = None) -> ValidationResult:
    """
    Validate one answer against its field type and stored rule.

    Checks run in a fixed order and the first failure wins: required, format,
    minLength, maxLength, min, max, pattern. An empty optional answer is
    always valid.
    """
    if not isinstance(validations, dict):
        validations = None

    text = to_text(value).strip()
    is_empty = value is None or text == ''

    if required and is_empty:
        return ValidationResult(False, _messages(validations).get('required') or DEFAULT_MESSAGES['required'])

    if is_empty:
        return ValidationResult(True)

    merged = merge_rules(field_type, validations)
    messages = merged['messages']

    fmt = merged.get('format')
    if fmt:
        pattern = PATTERNS.get(fmt)
        if pattern is not None and not pattern.match(text):
            return ValidationResult(False, messages.get('format') or DEFAULT_MESSAGES.get(fmt, DEFAULT_MESSAGES['invalid']))

    min_length = _bound(merged, 'minLength')
    if min_length is not None and len(text) < min_length:
        return ValidationResult(False, messages.get('minLength') or f'Minimum of {format_number(min_length)} characters')

    max_length = _bound(merged, 'maxLength')
    if max_length is not None and len(text) > max_length:
        return ValidationResult(False, messages.get('maxLength') or f'Maximum of {format_number(max_length)} characters')

    number = parse_number(text)
    if number is not None:
        minimum = _bound(merged, 'min')
        if minimum is not None and number < minimum:
            return ValidationResult(False, messages.get('min') or f'Minimum value: {format_number(minimum)}')

        maximum = _bound(merged, 'max')
        if maximum is not None and number > maximum:
            return ValidationResult(False, messages.get('max') or f'Maximum value: {format_number(maximum)}')

    if merged.get('pattern'):
        regex = _compile(merged['pattern'])
        if regex is not None and not regex.search(text):
            return ValidationResult(False, messages.get('pattern') or DEFAULT_MESSAGES['invalid'])

    return ValidationResult(True)
