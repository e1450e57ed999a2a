"""
Public response submission.

``submit_response`` runs the whole pipeline for one respondent payload:
published-form lookup, validation of every field, duplicate detection,
persistence, automatic tagging and webhook hand-off. Steps always run in that
order and webhook delivery never holds up the caller.

Duplicate detection is optimistic: the recent-duplicate lookup and the insert
are not serialised in process. Two identical submissions racing each other
are caught by the ``(form_id, answers_key, dedup_bucket)`` unique constraint,
and the loser is answered as a replay of the winner.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud
from .exceptions import FormNotFound, SubmissionValidationError
from .tag_rules import evaluate_tag_rules
from .utils import answers_key
from .validators import validate_field

load_dotenv()

DEDUP_WINDOW_SECONDS = int(os.getenv('DEDUP_WINDOW_SECONDS', '60'))

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    response_id: str
    deduplicated: bool
    tag_ids: tuple = ()

    def to_dict(self) -> dict:
        return {'success': True, 'responseId': self.response_id, 'deduplicated': self.deduplicated}


def collect_validation_errors(fields, answers: dict) -> list:
    """Validate every field of the form, including ones missing from ``answers``."""
    errors = []
    for field in fields:
        result = validate_field(answers.get(field.id), field.type, bool(field.required), field.validations)
        if not result.valid:
            errors.append({'fieldId': field.id, 'field': field.title, 'error': result.error or 'Invalid field'})
    return errors


def submit_response(
    db: Session,
    form_id: str,
    answers: dict,
    metadata: Optional[dict] = None,
    dispatcher=None,
    now: Optional[datetime] = None,
    window_seconds: int = DEDUP_WINDOW_SECONDS,
) -> SubmissionResult:
    """
    Accept one respondent submission.

    Raises FormNotFound for unknown and unpublished forms alike, and
    SubmissionValidationError listing every failing field. Storage errors
    propagate unchanged.
    """
    form = crud.get_published_form(db, form_id)
    if form is None:
        raise FormNotFound(form_id)

    errors = collect_validation_errors(form.fields, answers)
    if errors:
        logger.info('Submission to form %s rejected: %d invalid field(s)', form_id, len(errors))
        raise SubmissionValidationError(errors)

    key = answers_key(answers)
    duplicate = crud.find_recent_duplicate(db, form_id, key, window_seconds, now=now)
    if duplicate is not None:
        logger.info('Submission to form %s deduplicated as response %s', form_id, duplicate.id)
        return SubmissionResult(duplicate.id, True)

    try:
        response = crud.create_response(db, form_id, answers, metadata, window_seconds, now=now)
    except IntegrityError:
        duplicate = crud.find_recent_duplicate(db, form_id, key, window_seconds, now=now)
        if duplicate is None:
            raise
        logger.info('Concurrent submission to form %s resolved to response %s', form_id, duplicate.id)
        return SubmissionResult(duplicate.id, True)

    tag_ids = evaluate_tag_rules(answers, form.tag_rules)
    for tag_id in tag_ids:
        crud.create_response_tag(db, response.id, tag_id)

    if dispatcher is not None:
        for webhook in crud.get_active_webhooks(db, form_id):
            try:
                dispatcher.dispatch(webhook, response.id, answers)
            except Exception:
                logger.exception('Could not queue webhook %s for response %s', webhook.id, response.id)

    logger.info('Response %s accepted for form %s (%d tag(s))', response.id, form_id, len(tag_ids))
    return SubmissionResult(response.id, False, tuple(tag_ids))
