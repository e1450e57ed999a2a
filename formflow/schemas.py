from pydantic import BaseModel, ConfigDict, Field as PydField, ValidationError
from typing import Dict, List, Optional, Any, Literal, Union

from .exceptions import InvalidFieldProperties
from .models import FieldType, FormStatus, TagRuleOperator


class ValidationMessages(BaseModel):
    model_config = ConfigDict(extra='ignore')

    required: Optional[str] = None
    format: Optional[str] = None
    minLength: Optional[str] = None
    maxLength: Optional[str] = None
    min: Optional[str] = None
    max: Optional[str] = None
    pattern: Optional[str] = None


class ValidationRule(BaseModel):
    model_config = ConfigDict(extra='ignore')

    format: Optional[Literal['email', 'phone', 'url', 'cpf', 'cnpj']] = None
    minLength: Optional[int] = None
    maxLength: Optional[int] = None
    min: Optional[float] = None
    max: Optional[float] = None
    # kept as plain text; an uncompilable pattern is tolerated at validation time
    pattern: Optional[str] = None
    messages: Optional[ValidationMessages] = None


# ---- per-type field properties ----

class FieldProperties(BaseModel):
    model_config = ConfigDict(extra='allow')

    placeholder: Optional[str] = None


class TextProperties(FieldProperties):
    minLength: Optional[int] = None
    maxLength: Optional[int] = None


class Choice(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    label: str
    value: Optional[str] = None


class ChoiceProperties(FieldProperties):
    choices: List[Choice] = []
    allowMultiple: Optional[bool] = None


class ScaleProperties(FieldProperties):
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None


class MatrixProperties(FieldProperties):
    rows: List[str] = []
    columns: List[str] = []


class FileUploadProperties(FieldProperties):
    maxFileSize: Optional[int] = None
    acceptedFileTypes: Optional[List[str]] = None


class CalendlyProperties(FieldProperties):
    calendlyUrl: Optional[str] = None
    prefillNameFieldId: Optional[str] = None
    prefillEmailFieldId: Optional[str] = None
    buttonText: Optional[str] = None


PROPERTIES_BY_TYPE = {
    FieldType.short_text: TextProperties,
    FieldType.long_text: TextProperties,
    FieldType.multiple_choice: ChoiceProperties,
    FieldType.checkbox: ChoiceProperties,
    FieldType.dropdown: ChoiceProperties,
    FieldType.rating: ScaleProperties,
    FieldType.nps: ScaleProperties,
    FieldType.matrix: MatrixProperties,
    FieldType.file_upload: FileUploadProperties,
    FieldType.calendly: CalendlyProperties,
}


def parse_field_properties(field_type: str, raw: Optional[dict]) -> Optional[dict]:
    """Check ``raw`` against the properties model of ``field_type`` and return it in wire shape."""
    if raw is None:
        return None
    model = PROPERTIES_BY_TYPE.get(FieldType(field_type), FieldProperties)
    try:
        parsed = model.model_validate(raw)
    except ValidationError as exc:
        raise InvalidFieldProperties(f'invalid properties for {field_type}: {exc.errors()}') from exc
    return parsed.model_dump(exclude_none=True)


def parse_validation_rule(raw: Optional[dict]) -> Optional[dict]:
    if raw is None:
        return None
    try:
        parsed = ValidationRule.model_validate(raw)
    except ValidationError as exc:
        raise InvalidFieldProperties(f'invalid validations: {exc.errors()}') from exc
    return parsed.model_dump(exclude_none=True)


# ---- forms & fields ----

class FieldCreate(BaseModel):
    type: FieldType
    title: Optional[str] = None
    description: Optional[str] = None
    required: Optional[bool] = False
    hidden: Optional[bool] = False
    order: Optional[int] = None
    properties: Optional[Dict[str, Any]] = None
    validations: Optional[Dict[str, Any]] = None
    logic: Optional[Dict[str, Any]] = None


class FieldUpdate(BaseModel):
    id: str
    order: int
    title: Optional[str] = None
    description: Optional[str] = None
    required: Optional[bool] = None
    hidden: Optional[bool] = None
    properties: Optional[Dict[str, Any]] = None
    validations: Optional[Dict[str, Any]] = None
    logic: Optional[Dict[str, Any]] = None


class BulkFieldUpdate(BaseModel):
    fields: List[FieldUpdate]


class FormCreate(BaseModel):
    title: str
    description: Optional[str] = None


class FormUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[FormStatus] = None
    theme: Optional[Dict[str, Any]] = None
    welcome_screen: Optional[Dict[str, Any]] = None
    thank_you_screen: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    slug: Optional[str] = PydField(default=None, pattern=r'^[a-z0-9]+(-[a-z0-9]+)*$')


class StatusChange(BaseModel):
    status: FormStatus


# ---- public submission ----

class ResponseMetadata(BaseModel):
    model_config = ConfigDict(extra='allow')

    userAgent: Optional[str] = None
    startedAt: Optional[str] = None
    duration: Optional[float] = None


class SubmitResponse(BaseModel):
    formId: str
    answers: Dict[str, Any]
    metadata: Optional[ResponseMetadata] = None


class FieldValuePayload(BaseModel):
    value: Any = None


# ---- tags ----

class TagCreate(BaseModel):
    name: str
    color: Optional[str] = None


class TagUpdate(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


class ResponseTagCreate(BaseModel):
    tagId: Optional[str] = None
    tagName: Optional[str] = None
    tagColor: Optional[str] = None


class TagRuleCreate(BaseModel):
    formId: str
    tagId: str
    fieldId: str
    operator: TagRuleOperator
    value: Any


class TagRuleUpdate(BaseModel):
    active: Optional[bool] = None
    value: Optional[Any] = None


# ---- integrations ----

class IntegrationPayload(BaseModel):
    type: str
    formId: str
    url: str
    headers: Optional[Union[str, Dict[str, str]]] = None
