import hashlib
import json
import logging
import math
import re
import secrets
import string
import unicodedata
from typing import Any, Optional

logger = logging.getLogger(__name__)

_SLUG_ALPHABET = string.ascii_lowercase + string.digits
_NUMBER_RE = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')


def generate_slug(title: str) -> str:
    """Human readable slug with a random suffix, e.g. ``customer-survey-k3x9qa``."""
    base = unicodedata.normalize('NFD', title.lower())
    base = ''.join(c for c in base if not unicodedata.combining(c))
    base = re.sub(r'[^a-z0-9]+', '-', base).strip('-')
    suffix = ''.join(secrets.choice(_SLUG_ALPHABET) for _ in range(6))
    return f'{base}-{suffix}' if base else suffix


def to_text(value: Any) -> str:
    """
    Coerce an answer value to the string the validators and tag rules compare.

    None becomes ``''``, booleans are lower-cased, integral floats drop the
    ``.0``, lists are joined with commas and mappings become compact JSON.
    """
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float):
        return format_number(value)
    if isinstance(value, (list, tuple)):
        return ','.join(to_text(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(',', ':'), ensure_ascii=False)
    return str(value)


def parse_number(text: str) -> Optional[float]:
    """Return the finite number ``text`` spells, or None when it is not numeric."""
    text = text.strip()
    if not _NUMBER_RE.match(text):
        return None
    number = float(text)
    if not math.isfinite(number):
        return None
    return number


def format_number(number: Any) -> str:
    if isinstance(number, float) and number.is_integer():
        return str(int(number))
    return str(number)


def answers_key(answers: dict) -> str:
    """Stable content hash of an answer set; field order does not matter."""
    canonical = json.dumps(answers, sort_keys=True, separators=(',', ':'), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def parse_json_object(raw: Optional[str], what: str = 'value') -> dict:
    """Parse stored JSON text into a dict; anything malformed yields ``{}``."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning('Ignoring malformed %s: %r', what, raw)
        return {}
    if not isinstance(parsed, dict):
        logger.warning('Ignoring non-object %s: %r', what, raw)
        return {}
    return parsed
