from sqlalchemy import (
    Column,
    String,
    Integer,
    ForeignKey,
    Boolean,
    DateTime,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
import uuid
from .database import Base


def gen_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FormStatus(str, enum.Enum):
    DRAFT = 'DRAFT'
    PUBLISHED = 'PUBLISHED'
    CLOSED = 'CLOSED'


# allowed status moves; CLOSED is terminal
STATUS_TRANSITIONS = {
    FormStatus.DRAFT: {FormStatus.PUBLISHED},
    FormStatus.PUBLISHED: {FormStatus.CLOSED, FormStatus.DRAFT},
    FormStatus.CLOSED: set(),
}


class FieldType(str, enum.Enum):
    short_text = 'short_text'
    long_text = 'long_text'
    multiple_choice = 'multiple_choice'
    checkbox = 'checkbox'
    dropdown = 'dropdown'
    rating = 'rating'
    nps = 'nps'
    yes_no = 'yes_no'
    date = 'date'
    email = 'email'
    phone = 'phone'
    url = 'url'
    file_upload = 'file_upload'
    matrix = 'matrix'
    signature = 'signature'
    statement = 'statement'
    question_group = 'question_group'
    calendly = 'calendly'


class TagRuleOperator(str, enum.Enum):
    equals = 'equals'
    contains = 'contains'
    gt = 'gt'
    lt = 'lt'
    empty = 'empty'
    not_empty = 'not_empty'


class Form(Base):
    __tablename__ = 'forms'
    id = Column(String, primary_key=True, default=gen_id)
    user_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    slug = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, default=FormStatus.DRAFT.value, nullable=False)
    theme = Column(JSON, nullable=True)
    welcome_screen = Column(JSON, nullable=True)
    thank_you_screen = Column(JSON, nullable=True)
    settings = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    fields = relationship(
        'Field', back_populates='form', cascade='all, delete-orphan', order_by='Field.order'
    )
    responses = relationship('Response', back_populates='form', cascade='all, delete-orphan')
    tag_rules = relationship('TagRule', back_populates='form', cascade='all, delete-orphan')
    webhooks = relationship('Webhook', back_populates='form', cascade='all, delete-orphan')

    def can_transition_to(self, status: FormStatus) -> bool:
        current = FormStatus(self.status)
        return status == current or status in STATUS_TRANSITIONS[current]


class Field(Base):
    __tablename__ = 'fields'
    id = Column(String, primary_key=True, default=gen_id)
    form_id = Column(String, ForeignKey('forms.id', ondelete='CASCADE'), nullable=False, index=True)
    type = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    required = Column(Boolean, default=False)
    hidden = Column(Boolean, default=False)
    order = Column(Integer, default=0)
    properties = Column(JSON, nullable=True)
    validations = Column(JSON, nullable=True)
    logic = Column(JSON, nullable=True)
    form = relationship('Form', back_populates='fields')


class Response(Base):
    __tablename__ = 'responses'
    __table_args__ = (
        UniqueConstraint('form_id', 'answers_key', 'dedup_bucket', name='uq_responses_dedup'),
    )
    id = Column(String, primary_key=True, default=gen_id)
    form_id = Column(String, ForeignKey('forms.id', ondelete='CASCADE'), nullable=False, index=True)
    answers = Column(JSON, nullable=False)
    answers_key = Column(String(64), nullable=False, index=True)
    dedup_bucket = Column(Integer, nullable=False)
    meta = Column('metadata', JSON, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    form = relationship('Form', back_populates='responses')
    tags = relationship('ResponseTag', back_populates='response', cascade='all, delete-orphan')


class Tag(Base):
    __tablename__ = 'tags'
    id = Column(String, primary_key=True, default=gen_id)
    name = Column(String, nullable=False, index=True)
    color = Column(String, default='#6366f1')
    created_at = Column(DateTime(timezone=True), default=utcnow)
    responses = relationship('ResponseTag', back_populates='tag', cascade='all, delete-orphan')
    rules = relationship('TagRule', back_populates='tag', cascade='all, delete-orphan')


class ResponseTag(Base):
    __tablename__ = 'response_tags'
    response_id = Column(String, ForeignKey('responses.id', ondelete='CASCADE'), primary_key=True)
    tag_id = Column(String, ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    response = relationship('Response', back_populates='tags')
    tag = relationship('Tag', back_populates='responses')


class TagRule(Base):
    __tablename__ = 'tag_rules'
    id = Column(String, primary_key=True, default=gen_id)
    form_id = Column(String, ForeignKey('forms.id', ondelete='CASCADE'), nullable=False, index=True)
    field_id = Column(String, nullable=False)
    operator = Column(String, nullable=False)
    value = Column(String, default='')
    tag_id = Column(String, ForeignKey('tags.id', ondelete='CASCADE'), nullable=False)
    active = Column(Boolean, default=True)
    form = relationship('Form', back_populates='tag_rules')
    tag = relationship('Tag', back_populates='rules')


class Webhook(Base):
    __tablename__ = 'webhooks'
    id = Column(String, primary_key=True, default=gen_id)
    form_id = Column(String, ForeignKey('forms.id', ondelete='CASCADE'), nullable=False, index=True)
    url = Column(String, nullable=False)
    # raw JSON text; parsed at delivery time so a bad value never blocks saving
    headers = Column(Text, nullable=True)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    form = relationship('Form', back_populates='webhooks')
    logs = relationship(
        'WebhookLog',
        back_populates='webhook',
        cascade='all, delete-orphan',
        order_by='WebhookLog.created_at.desc()',
    )


class WebhookLog(Base):
    __tablename__ = 'webhook_logs'
    id = Column(String, primary_key=True, default=gen_id)
    webhook_id = Column(String, ForeignKey('webhooks.id', ondelete='CASCADE'), nullable=False, index=True)
    status = Column(Integer, nullable=False)
    success = Column(Boolean, default=False)
    payload = Column(Text, nullable=False)
    response = Column(Text, nullable=True)
    attempt = Column(Integer, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    webhook = relationship('Webhook', back_populates='logs')
