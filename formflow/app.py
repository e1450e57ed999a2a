from fastapi import FastAPI, Depends, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional
import logging
import os
from dotenv import load_dotenv

from .database import SessionLocal, init_db
from . import crud, models
from . import schemas
from .exceptions import (
    FieldOrderConflict,
    FormNotFound,
    InvalidFieldProperties,
    InvalidStatusTransition,
    SubmissionValidationError,
    TagAlreadyAssigned,
)
from .submission import submit_response
from .validators import validate_field
from .webhooks import dispatcher

load_dotenv()

CORS_ORIGINS = [o.strip() for o in os.getenv('CORS_ORIGINS', '*').split(',') if o.strip()]

logger = logging.getLogger(__name__)

app = FastAPI(title='FormFlow - Response Collection API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_dispatcher():
    return dispatcher


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # identity is resolved upstream; the gateway forwards the user id
    if not x_user_id:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return x_user_id


@app.on_event('startup')
def on_startup():
    init_db()
    dispatcher.start()


@app.on_event('shutdown')
def on_shutdown():
    dispatcher.shutdown()


@app.exception_handler(RequestValidationError)
def invalid_request(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={'error': 'invalid request', 'detail': jsonable_encoder(exc.errors())})


@app.exception_handler(InvalidStatusTransition)
@app.exception_handler(FieldOrderConflict)
@app.exception_handler(TagAlreadyAssigned)
def conflict(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={'error': str(exc)})


@app.exception_handler(InvalidFieldProperties)
def bad_field_config(request: Request, exc: InvalidFieldProperties):
    return JSONResponse(status_code=400, content={'error': str(exc)})


# ---- serializers ----

def _field_dict(f: models.Field) -> dict:
    return {
        'id': f.id,
        'form_id': f.form_id,
        'type': f.type,
        'title': f.title,
        'description': f.description,
        'required': f.required,
        'hidden': f.hidden,
        'order': f.order,
        'properties': f.properties,
        'validations': f.validations,
        'logic': f.logic,
    }


def _form_dict(f: models.Form, with_fields: bool = False) -> dict:
    data = {
        'id': f.id,
        'title': f.title,
        'description': f.description,
        'slug': f.slug,
        'status': f.status,
        'theme': f.theme,
        'welcome_screen': f.welcome_screen,
        'thank_you_screen': f.thank_you_screen,
        'settings': f.settings,
        'created_at': f.created_at,
        'updated_at': f.updated_at,
    }
    if with_fields:
        data['fields'] = [_field_dict(field) for field in f.fields]
    return data


def _tag_dict(t: models.Tag) -> dict:
    return {'id': t.id, 'name': t.name, 'color': t.color}


def _response_dict(r: models.Response) -> dict:
    return {
        'id': r.id,
        'form_id': r.form_id,
        'answers': r.answers,
        'metadata': r.meta,
        'completed_at': r.completed_at,
        'created_at': r.created_at,
        'tags': [_tag_dict(rt.tag) for rt in r.tags],
    }


def _rule_dict(rule: models.TagRule) -> dict:
    return {
        'id': rule.id,
        'form_id': rule.form_id,
        'field_id': rule.field_id,
        'operator': rule.operator,
        'value': rule.value,
        'active': rule.active,
        'tag': _tag_dict(rule.tag),
    }


def _webhook_dict(w: models.Webhook, logs=None) -> dict:
    data = {'id': w.id, 'form_id': w.form_id, 'url': w.url, 'headers': w.headers, 'active': w.active}
    if logs is not None:
        data['logs'] = [
            {
                'id': log.id,
                'status': log.status,
                'success': log.success,
                'payload': log.payload,
                'response': log.response,
                'attempt': log.attempt,
                'created_at': log.created_at,
            }
            for log in logs
        ]
    return data


def _owned_form(db: Session, form_id: str, user_id: str) -> models.Form:
    form = crud.get_form(db, form_id, user_id)
    if not form:
        raise HTTPException(status_code=404, detail='Form not found')
    return form


# ---- health ----

@app.get('/health')
def health():
    return {'status': 'ok'}


# ---- forms ----

@app.post('/forms', status_code=201)
def create_form(form: schemas.FormCreate, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    if not form.title.strip():
        raise HTTPException(status_code=400, detail='title is required')
    created = crud.create_form(db, user_id, form.title, form.description)
    return {'form': _form_dict(created)}


@app.get('/forms')
def list_forms(
    status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    forms = crud.get_forms(db, user_id, status, search)
    stats = crud.get_response_stats(db, [f.id for f in forms])
    result = []
    for f in forms:
        total, completed = stats.get(f.id, (0, 0))
        item = _form_dict(f)
        item['responses'] = total
        item['completion_rate'] = round(completed / total * 100) if total else 0
        result.append(item)
    return {'forms': result}


@app.get('/forms/{form_id}')
def get_form(form_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    form = _owned_form(db, form_id, user_id)
    data = _form_dict(form, with_fields=True)
    data['responses'] = len(form.responses)
    return {'form': data}


@app.patch('/forms/{form_id}')
def update_form(
    form_id: str,
    updates: schemas.FormUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    form = _owned_form(db, form_id, user_id)
    updated = crud.update_form(db, form, updates.model_dump(exclude_unset=True))
    return {'form': _form_dict(updated)}


@app.post('/forms/{form_id}/status')
def change_form_status(
    form_id: str,
    payload: schemas.StatusChange,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    form = _owned_form(db, form_id, user_id)
    updated = crud.set_form_status(db, form, payload.status)
    return {'form': {'id': updated.id, 'status': updated.status}}


@app.delete('/forms/{form_id}')
def delete_form(form_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    form = _owned_form(db, form_id, user_id)
    crud.delete_form(db, form)
    return {'ok': True}


@app.post('/forms/{form_id}/duplicate', status_code=201)
def duplicate_form(form_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    form = _owned_form(db, form_id, user_id)
    copy = crud.duplicate_form(db, form)
    return {'form': _form_dict(copy, with_fields=True)}


@app.get('/f/{slug}')
def get_public_form(slug: str, db: Session = Depends(get_db)):
    form = crud.get_published_form_by_slug(db, slug)
    if not form:
        raise HTTPException(status_code=404, detail='Form not found')
    data = _form_dict(form)
    data['fields'] = [_field_dict(f) for f in form.fields if not f.hidden]
    return {'form': data}


# ---- fields ----

@app.get('/forms/{form_id}/fields')
def list_fields(form_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    form = _owned_form(db, form_id, user_id)
    return {'fields': [_field_dict(f) for f in form.fields]}


@app.post('/forms/{form_id}/fields', status_code=201)
def create_field(
    form_id: str,
    field: schemas.FieldCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    form = _owned_form(db, form_id, user_id)
    created = crud.create_field(db, form, field.model_dump())
    return {'field': _field_dict(created)}


@app.put('/forms/{form_id}/fields')
def bulk_update_fields(
    form_id: str,
    payload: schemas.BulkFieldUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    form = _owned_form(db, form_id, user_id)
    fields = crud.bulk_update_fields(db, form, [f.model_dump() for f in payload.fields])
    return {'fields': [_field_dict(f) for f in fields]}


@app.delete('/fields/{field_id}')
def delete_field(field_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    field = crud.get_field(db, field_id)
    if not field or field.form.user_id != user_id:
        raise HTTPException(status_code=404, detail='Field not found')
    crud.delete_field(db, field)
    return {'ok': True}


@app.post('/forms/{form_id}/fields/{field_id}/validate')
def validate_single_field(
    form_id: str,
    field_id: str,
    payload: schemas.FieldValuePayload,
    db: Session = Depends(get_db),
):
    """Per-field check used by the renderer on navigation; same rules as submission."""
    form = crud.get_published_form(db, form_id)
    field = next((f for f in form.fields if f.id == field_id), None) if form else None
    if field is None:
        raise HTTPException(status_code=404, detail='Field not found')
    result = validate_field(payload.value, field.type, bool(field.required), field.validations)
    return result.to_dict()


# ---- responses ----

@app.post('/responses')
def submit(
    payload: schemas.SubmitResponse,
    db: Session = Depends(get_db),
    webhook_dispatcher=Depends(get_dispatcher),
):
    metadata = payload.metadata.model_dump(exclude_none=True) if payload.metadata else None
    try:
        result = submit_response(db, payload.formId, payload.answers, metadata, dispatcher=webhook_dispatcher)
    except FormNotFound:
        return JSONResponse(status_code=404, content={'error': 'form not found'})
    except SubmissionValidationError as exc:
        return JSONResponse(
            status_code=422,
            content={'error': 'validation failed', 'validationErrors': exc.errors},
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Submission to form %s failed', payload.formId)
        return JSONResponse(status_code=500, content={'error': 'failed to submit response'})
    return JSONResponse(status_code=200 if result.deduplicated else 201, content=result.to_dict())


@app.get('/responses')
def list_responses(
    form_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    if not form_id:
        raise HTTPException(status_code=400, detail='form_id is required')
    _owned_form(db, form_id, user_id)
    return {'responses': [_response_dict(r) for r in crud.get_responses(db, form_id)]}


@app.post('/responses/dedup')
def dedup_responses(db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    result = crud.remove_duplicate_responses(db, user_id)
    return {'success': True, **result}


def _owned_response(db: Session, response_id: str, user_id: str) -> models.Response:
    response = crud.get_response(db, response_id)
    if not response or response.form.user_id != user_id:
        raise HTTPException(status_code=404, detail='Response not found')
    return response


@app.delete('/responses/{response_id}')
def delete_response(response_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    response = _owned_response(db, response_id, user_id)
    crud.delete_response(db, response)
    return {'ok': True}


@app.delete('/forms/{form_id}/responses')
def delete_form_responses(form_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    form = _owned_form(db, form_id, user_id)
    deleted = crud.delete_form_responses(db, form)
    return {'ok': True, 'deleted': deleted}


@app.post('/responses/{response_id}/tags', status_code=201)
def add_response_tag(
    response_id: str,
    payload: schemas.ResponseTagCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    response = _owned_response(db, response_id, user_id)
    tag_id = payload.tagId
    if not tag_id and payload.tagName and payload.tagName.strip():
        tag_id = crud.get_or_create_tag(db, payload.tagName, payload.tagColor).id
    if not tag_id:
        raise HTTPException(status_code=400, detail='tagId or tagName is required')
    if not crud.get_tag(db, tag_id):
        raise HTTPException(status_code=404, detail='Tag not found')
    row, created = crud.create_response_tag(db, response.id, tag_id)
    if not created:
        raise TagAlreadyAssigned(f'tag {tag_id} is already on response {response.id}')
    return {'response_id': row.response_id, 'tag': _tag_dict(row.tag)}


@app.delete('/responses/{response_id}/tags/{tag_id}')
def remove_response_tag(
    response_id: str,
    tag_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    response = _owned_response(db, response_id, user_id)
    row = crud.get_response_tag(db, response.id, tag_id)
    if not row:
        raise HTTPException(status_code=404, detail='Tag not on response')
    crud.delete_response_tag(db, row)
    return {'ok': True}


# ---- tags ----

@app.get('/tags')
def list_tags(db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    return {'tags': [{**_tag_dict(t), 'responses': count} for t, count in crud.get_tags(db)]}


@app.post('/tags', status_code=201)
def create_tag(payload: schemas.TagCreate, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail='name is required')
    return {'tag': _tag_dict(crud.create_tag(db, payload.name, payload.color))}


@app.get('/tags/rules')
def list_tag_rules(form_id: Optional[str] = None, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    if not form_id:
        raise HTTPException(status_code=400, detail='form_id is required')
    _owned_form(db, form_id, user_id)
    return {'rules': [_rule_dict(r) for r in crud.get_tag_rules(db, form_id)]}


@app.post('/tags/rules', status_code=201)
def create_tag_rule(payload: schemas.TagRuleCreate, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    form = _owned_form(db, payload.formId, user_id)
    if not crud.get_tag(db, payload.tagId):
        raise HTTPException(status_code=404, detail='Tag not found')
    rule = crud.create_tag_rule(db, form.id, payload.tagId, payload.fieldId, payload.operator.value, payload.value)
    return {'rule': _rule_dict(rule)}


def _owned_rule(db: Session, rule_id: str, user_id: str) -> models.TagRule:
    rule = crud.get_tag_rule(db, rule_id)
    if not rule or rule.form.user_id != user_id:
        raise HTTPException(status_code=404, detail='Rule not found')
    return rule


@app.patch('/tags/rules/{rule_id}')
def update_tag_rule(
    rule_id: str,
    payload: schemas.TagRuleUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    rule = crud.update_tag_rule(db, _owned_rule(db, rule_id, user_id), payload.model_dump(exclude_unset=True))
    return {'rule': _rule_dict(rule)}


@app.delete('/tags/rules/{rule_id}')
def delete_tag_rule(rule_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    crud.delete_tag_rule(db, _owned_rule(db, rule_id, user_id))
    return {'ok': True}


@app.patch('/tags/{tag_id}')
def update_tag(tag_id: str, payload: schemas.TagUpdate, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    tag = crud.get_tag(db, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail='Tag not found')
    return {'tag': _tag_dict(crud.update_tag(db, tag, payload.model_dump(exclude_unset=True)))}


@app.delete('/tags/{tag_id}')
def delete_tag(tag_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    tag = crud.get_tag(db, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail='Tag not found')
    crud.delete_tag(db, tag)
    return {'ok': True}


# ---- integrations ----

@app.post('/integrations')
def upsert_integration(
    payload: schemas.IntegrationPayload,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    form = _owned_form(db, payload.formId, user_id)
    if payload.type != 'webhook':
        raise HTTPException(status_code=400, detail='Unsupported integration type')
    webhook, created = crud.upsert_webhook(db, form, payload.url, payload.headers)
    return JSONResponse(status_code=201 if created else 200, content=jsonable_encoder({'webhook': _webhook_dict(webhook)}))


@app.get('/integrations')
def list_integrations(form_id: Optional[str] = None, db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    if not form_id:
        raise HTTPException(status_code=400, detail='form_id is required')
    _owned_form(db, form_id, user_id)
    webhooks = crud.get_webhooks(db, form_id)
    return {'webhooks': [_webhook_dict(w, crud.get_webhook_logs(db, w.id, limit=10)) for w in webhooks]}
