from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple
import json
import logging

from . import models
from .exceptions import FieldOrderConflict, InvalidStatusTransition
from .models import FormStatus, utcnow
from .schemas import parse_field_properties, parse_validation_rule
from .utils import answers_key, generate_slug

logger = logging.getLogger(__name__)

DEFAULT_TAG_COLOR = '#6366f1'
FORM_UPDATABLE = ('title', 'description', 'theme', 'welcome_screen', 'thank_you_screen', 'settings', 'slug')


# ---- forms ----

def _unique_slug(db: Session, title: str) -> str:
    while True:
        slug = generate_slug(title)
        if not db.query(models.Form.id).filter(models.Form.slug == slug).first():
            return slug


def create_form(db: Session, user_id: str, title: str, description: Optional[str] = None) -> models.Form:
    title = title.strip()
    form = models.Form(
        user_id=user_id,
        title=title,
        description=description or None,
        slug=_unique_slug(db, title),
        status=FormStatus.DRAFT.value,
    )
    db.add(form)
    db.commit()
    db.refresh(form)
    return form


def get_forms(db: Session, user_id: str, status: Optional[str] = None, search: Optional[str] = None) -> List[models.Form]:
    q = db.query(models.Form).filter(models.Form.user_id == user_id)
    if status and status != 'ALL':
        q = q.filter(models.Form.status == status)
    if search:
        q = q.filter(models.Form.title.contains(search))
    return q.order_by(models.Form.updated_at.desc()).all()


def get_response_stats(db: Session, form_ids: Iterable[str]) -> dict:
    """Map form id -> (total responses, completed responses)."""
    form_ids = list(form_ids)
    if not form_ids:
        return {}
    rows = (
        db.query(
            models.Response.form_id,
            func.count(models.Response.id),
            func.count(models.Response.completed_at),
        )
        .filter(models.Response.form_id.in_(form_ids))
        .group_by(models.Response.form_id)
        .all()
    )
    return {form_id: (total, completed) for form_id, total, completed in rows}


def get_form(db: Session, form_id: str, user_id: Optional[str] = None) -> Optional[models.Form]:
    q = db.query(models.Form).filter(models.Form.id == form_id)
    if user_id is not None:
        q = q.filter(models.Form.user_id == user_id)
    return q.first()


def get_published_form(db: Session, form_id: str) -> Optional[models.Form]:
    return (
        db.query(models.Form)
        .options(selectinload(models.Form.fields), selectinload(models.Form.tag_rules))
        .filter(models.Form.id == form_id, models.Form.status == FormStatus.PUBLISHED.value)
        .first()
    )


def get_published_form_by_slug(db: Session, slug: str) -> Optional[models.Form]:
    return (
        db.query(models.Form)
        .filter(models.Form.slug == slug, models.Form.status == FormStatus.PUBLISHED.value)
        .first()
    )


def set_form_status(db: Session, form: models.Form, status: FormStatus) -> models.Form:
    status = FormStatus(status)
    if not form.can_transition_to(status):
        raise InvalidStatusTransition(form.status, status.value)
    if form.status != status.value:
        logger.info('Form %s: %s -> %s', form.id, form.status, status.value)
        form.status = status.value
        db.commit()
        db.refresh(form)
    return form


def update_form(db: Session, form: models.Form, updates: dict) -> models.Form:
    status = updates.pop('status', None)
    if status is not None and not form.can_transition_to(FormStatus(status)):
        raise InvalidStatusTransition(form.status, FormStatus(status).value)
    for key in FORM_UPDATABLE:
        if key in updates:
            setattr(form, key, updates[key])
    if status is not None:
        form.status = FormStatus(status).value
    db.commit()
    db.refresh(form)
    return form


def delete_form(db: Session, form: models.Form) -> None:
    db.delete(form)
    db.commit()


def duplicate_form(db: Session, form: models.Form) -> models.Form:
    title = f'{form.title} (Copy)'
    copy = models.Form(
        user_id=form.user_id,
        title=title,
        description=form.description,
        slug=_unique_slug(db, title),
        status=FormStatus.DRAFT.value,
        theme=form.theme,
        welcome_screen=form.welcome_screen,
        thank_you_screen=form.thank_you_screen,
        settings=form.settings,
    )
    for field in form.fields:
        copy.fields.append(
            models.Field(
                type=field.type,
                title=field.title,
                description=field.description,
                required=field.required,
                hidden=field.hidden,
                order=field.order,
                properties=field.properties,
                validations=field.validations,
                logic=field.logic,
            )
        )
    db.add(copy)
    db.commit()
    db.refresh(copy)
    return copy


# ---- fields ----

def get_field(db: Session, field_id: str) -> Optional[models.Field]:
    return db.query(models.Field).filter(models.Field.id == field_id).first()


def create_field(db: Session, form: models.Form, data: dict) -> models.Field:
    taken = {f.order for f in form.fields}
    order = data.get('order')
    if order is None:
        order = max(taken) + 1 if taken else 0
    elif order in taken:
        raise FieldOrderConflict(f'order {order} is already used in form {form.id}')

    field_type = data['type']
    field = models.Field(
        form_id=form.id,
        type=field_type,
        title=data.get('title') or 'New question',
        description=data.get('description') or None,
        required=bool(data.get('required')),
        hidden=bool(data.get('hidden')),
        order=order,
        properties=parse_field_properties(field_type, data.get('properties')),
        validations=parse_validation_rule(data.get('validations')),
        logic=data.get('logic'),
    )
    db.add(field)
    db.commit()
    db.refresh(field)
    return field


def bulk_update_fields(db: Session, form: models.Form, updates: List[dict]) -> List[models.Field]:
    """Apply reorders and partial edits to several fields in one transaction."""
    by_id = {f.id: f for f in form.fields}
    missing = [u['id'] for u in updates if u['id'] not in by_id]
    if missing:
        raise FieldOrderConflict(f'fields not in form {form.id}: {", ".join(missing)}')

    new_orders = {f.id: f.order for f in form.fields}
    for u in updates:
        new_orders[u['id']] = u['order']
    if len(set(new_orders.values())) != len(new_orders):
        raise FieldOrderConflict('field order values must be unique within a form')

    for u in updates:
        field = by_id[u['id']]
        field.order = u['order']
        for key in ('title', 'description', 'required', 'hidden', 'logic'):
            if u.get(key) is not None:
                setattr(field, key, u[key])
        if u.get('properties') is not None:
            field.properties = parse_field_properties(field.type, u['properties'])
        if u.get('validations') is not None:
            field.validations = parse_validation_rule(u['validations'])
    db.commit()
    return sorted(form.fields, key=lambda f: f.order)


def delete_field(db: Session, field: models.Field) -> None:
    db.delete(field)
    db.commit()


# ---- responses ----

def dedup_bucket(created_at: datetime, window_seconds: int) -> int:
    return int(created_at.timestamp()) // window_seconds


def find_recent_duplicate(
    db: Session, form_id: str, key: str, window_seconds: int, now: Optional[datetime] = None
) -> Optional[models.Response]:
    since = (now or utcnow()) - timedelta(seconds=window_seconds)
    return (
        db.query(models.Response)
        .filter(
            models.Response.form_id == form_id,
            models.Response.answers_key == key,
            models.Response.created_at >= since,
        )
        .order_by(models.Response.created_at.desc())
        .first()
    )


def create_response(
    db: Session,
    form_id: str,
    answers: dict,
    metadata: Optional[dict],
    window_seconds: int,
    now: Optional[datetime] = None,
) -> models.Response:
    """
    Persist a completed response.

    Raises IntegrityError when an identical response for the form landed in
    the same dedup bucket first; the session is rolled back in that case.
    """
    now = now or utcnow()
    response = models.Response(
        form_id=form_id,
        answers=answers,
        answers_key=answers_key(answers),
        dedup_bucket=dedup_bucket(now, window_seconds),
        meta=metadata,
        completed_at=now,
        created_at=now,
    )
    db.add(response)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(response)
    return response


def get_response(db: Session, response_id: str) -> Optional[models.Response]:
    return db.query(models.Response).filter(models.Response.id == response_id).first()


def get_responses(db: Session, form_id: str) -> List[models.Response]:
    return (
        db.query(models.Response)
        .options(selectinload(models.Response.tags).selectinload(models.ResponseTag.tag))
        .filter(models.Response.form_id == form_id)
        .order_by(models.Response.created_at.desc())
        .all()
    )


def delete_response(db: Session, response: models.Response) -> None:
    db.delete(response)
    db.commit()


def delete_form_responses(db: Session, form: models.Form) -> int:
    responses = db.query(models.Response).filter(models.Response.form_id == form.id).all()
    for r in responses:
        db.delete(r)
    db.commit()
    return len(responses)


def remove_duplicate_responses(db: Session, user_id: str) -> dict:
    """Keep the oldest response per (form, answer content) across a user's forms."""
    responses = (
        db.query(models.Response)
        .join(models.Form)
        .filter(models.Form.user_id == user_id)
        .order_by(models.Response.created_at.asc())
        .all()
    )
    seen = set()
    duplicates = []
    for r in responses:
        key = (r.form_id, r.answers_key)
        if key in seen:
            duplicates.append(r)
        else:
            seen.add(key)
    for r in duplicates:
        db.delete(r)
    db.commit()
    logger.info('Removed %d duplicate responses for user %s', len(duplicates), user_id)
    return {
        'totalAnalyzed': len(responses),
        'duplicatesRemoved': len(duplicates),
        'remaining': len(responses) - len(duplicates),
    }


# ---- tags ----

def get_tags(db: Session) -> List[Tuple[models.Tag, int]]:
    return (
        db.query(models.Tag, func.count(models.ResponseTag.response_id))
        .outerjoin(models.ResponseTag, models.ResponseTag.tag_id == models.Tag.id)
        .group_by(models.Tag.id)
        .order_by(models.Tag.name.asc())
        .all()
    )


def get_tag(db: Session, tag_id: str) -> Optional[models.Tag]:
    return db.query(models.Tag).filter(models.Tag.id == tag_id).first()


def create_tag(db: Session, name: str, color: Optional[str] = None) -> models.Tag:
    tag = models.Tag(name=name.strip(), color=color or DEFAULT_TAG_COLOR)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def get_or_create_tag(db: Session, name: str, color: Optional[str] = None) -> models.Tag:
    tag = db.query(models.Tag).filter(models.Tag.name == name.strip()).first()
    if tag:
        return tag
    return create_tag(db, name, color)


def update_tag(db: Session, tag: models.Tag, updates: dict) -> models.Tag:
    for key in ('name', 'color'):
        if updates.get(key) is not None:
            setattr(tag, key, updates[key])
    db.commit()
    db.refresh(tag)
    return tag


def delete_tag(db: Session, tag: models.Tag) -> None:
    db.delete(tag)
    db.commit()


def get_response_tag(db: Session, response_id: str, tag_id: str) -> Optional[models.ResponseTag]:
    return (
        db.query(models.ResponseTag)
        .filter(models.ResponseTag.response_id == response_id, models.ResponseTag.tag_id == tag_id)
        .first()
    )


def create_response_tag(db: Session, response_id: str, tag_id: str) -> Tuple[models.ResponseTag, bool]:
    """
    Attach a tag to a response.

    Returns ``(row, created)``; an already existing pair comes back with
    ``created=False`` instead of raising.
    """
    existing = get_response_tag(db, response_id, tag_id)
    if existing:
        return existing, False
    row = models.ResponseTag(response_id=response_id, tag_id=tag_id)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_response_tag(db, response_id, tag_id)
        if existing is None:
            raise
        return existing, False
    db.refresh(row)
    return row, True


def delete_response_tag(db: Session, row: models.ResponseTag) -> None:
    db.delete(row)
    db.commit()


# ---- tag rules ----

def get_tag_rules(db: Session, form_id: str) -> List[models.TagRule]:
    return (
        db.query(models.TagRule)
        .join(models.Tag)
        .options(selectinload(models.TagRule.tag))
        .filter(models.TagRule.form_id == form_id)
        .order_by(models.Tag.name.asc())
        .all()
    )


def get_tag_rule(db: Session, rule_id: str) -> Optional[models.TagRule]:
    return db.query(models.TagRule).filter(models.TagRule.id == rule_id).first()


def create_tag_rule(db: Session, form_id: str, tag_id: str, field_id: str, operator: str, value) -> models.TagRule:
    rule = models.TagRule(
        form_id=form_id,
        tag_id=tag_id,
        field_id=field_id,
        operator=operator,
        value='' if value is None else str(value),
        active=True,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def update_tag_rule(db: Session, rule: models.TagRule, updates: dict) -> models.TagRule:
    if updates.get('active') is not None:
        rule.active = updates['active']
    if updates.get('value') is not None:
        rule.value = str(updates['value'])
    db.commit()
    db.refresh(rule)
    return rule


def delete_tag_rule(db: Session, rule: models.TagRule) -> None:
    db.delete(rule)
    db.commit()


# ---- webhooks ----

def get_active_webhooks(db: Session, form_id: str) -> List[models.Webhook]:
    return (
        db.query(models.Webhook)
        .filter(models.Webhook.form_id == form_id, models.Webhook.active.is_(True))
        .all()
    )


def get_webhooks(db: Session, form_id: str) -> List[models.Webhook]:
    return db.query(models.Webhook).filter(models.Webhook.form_id == form_id).all()


def upsert_webhook(db: Session, form: models.Form, url: str, headers=None) -> Tuple[models.Webhook, bool]:
    """One webhook per form: update the existing row or create it. Returns ``(webhook, created)``."""
    if isinstance(headers, dict):
        headers = json.dumps(headers)
    existing = db.query(models.Webhook).filter(models.Webhook.form_id == form.id).first()
    if existing:
        existing.url = url
        existing.headers = headers or None
        existing.active = True
        db.commit()
        db.refresh(existing)
        return existing, False
    webhook = models.Webhook(form_id=form.id, url=url, headers=headers or None, active=True)
    db.add(webhook)
    db.commit()
    db.refresh(webhook)
    return webhook, True


def create_webhook_log(
    db: Session,
    webhook_id: str,
    status: int,
    success: bool,
    payload: str,
    response_body: Optional[str],
    attempt: int,
) -> models.WebhookLog:
    log = models.WebhookLog(
        webhook_id=webhook_id,
        status=status,
        success=success,
        payload=payload,
        response=response_body,
        attempt=attempt,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def get_webhook_logs(db: Session, webhook_id: str, limit: Optional[int] = None) -> List[models.WebhookLog]:
    q = (
        db.query(models.WebhookLog)
        .filter(models.WebhookLog.webhook_id == webhook_id)
        .order_by(models.WebhookLog.created_at.desc())
    )
    if limit:
        q = q.limit(limit)
    return q.all()
