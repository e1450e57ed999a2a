"""
Outbound webhook delivery.

Every delivery attempt is an APScheduler job with a predictable id, so retries
waiting on their backoff can be listed and are dropped when the scheduler
shuts down. Failures stay inside the job: they are logged and written to the
delivery log, never raised back to the submission that triggered them.
"""
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .database import SessionLocal
from .utils import parse_json_object

load_dotenv()

WEBHOOK_TIMEOUT_SECONDS = float(os.getenv('WEBHOOK_TIMEOUT_SECONDS', '10'))
WEBHOOK_MAX_ATTEMPTS = int(os.getenv('WEBHOOK_MAX_ATTEMPTS', '3'))
WEBHOOK_RETRY_DELAY_SECONDS = float(os.getenv('WEBHOOK_RETRY_DELAY_SECONDS', '5'))

EVENT_RESPONSE_SUBMITTED = 'response.submitted'
JOB_PREFIX = 'webhook:'

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookTarget:
    """Detached copy of a webhook row, safe to hand to a worker thread."""

    id: str
    url: str
    headers: Optional[str] = None

    @classmethod
    def from_model(cls, webhook) -> 'WebhookTarget':
        return cls(id=webhook.id, url=webhook.url, headers=webhook.headers)


def build_payload(response_id: str, answers: dict) -> Dict[str, Any]:
    timestamp = datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')
    return {
        'event': EVENT_RESPONSE_SUBMITTED,
        'responseId': response_id,
        'answers': answers,
        'timestamp': timestamp,
    }


def build_headers(raw_headers: Optional[str]) -> Dict[str, str]:
    headers = {'Content-Type': 'application/json'}
    custom = parse_json_object(raw_headers, 'webhook headers')
    headers.update({str(k): str(v) for k, v in custom.items()})
    return headers


class WebhookDispatcher:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        scheduler=None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        max_attempts: int = WEBHOOK_MAX_ATTEMPTS,
        retry_delay: float = WEBHOOK_RETRY_DELAY_SECONDS,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler if scheduler is not None else BackgroundScheduler(timezone='UTC')
        self.transport = transport
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info('Webhook dispatcher started')

    def shutdown(self):
        """Stop the worker; deliveries still waiting on a retry delay are discarded."""
        if self.scheduler.running:
            pending = len(self.pending_deliveries())
            self.scheduler.shutdown(wait=False)
            logger.info('Webhook dispatcher stopped, %d pending deliveries dropped', pending)

    def pending_deliveries(self) -> List[Any]:
        return [job for job in self.scheduler.get_jobs() if job.id.startswith(JOB_PREFIX)]

    def dispatch(self, webhook, response_id: str, answers: dict, attempt: int = 1):
        """Queue a delivery of ``response.submitted`` to ``webhook``; returns immediately."""
        target = webhook if isinstance(webhook, WebhookTarget) else WebhookTarget.from_model(webhook)
        return self._schedule(target, response_id, answers, attempt, delay=0)

    def _schedule(self, target: WebhookTarget, response_id: str, answers: dict, attempt: int, delay: float):
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay)
        return self.scheduler.add_job(
            self.deliver,
            trigger='date',
            run_date=run_date,
            args=[target, response_id, answers, attempt],
            id=f'{JOB_PREFIX}{target.id}:{response_id}:{attempt}',
            replace_existing=True,
            misfire_grace_time=None,
        )

    def deliver(self, target: WebhookTarget, response_id: str, answers: dict, attempt: int = 1) -> bool:
        """Make one POST attempt, record it, and queue the next attempt if it failed."""
        payload = build_payload(response_id, answers)
        body = json.dumps(payload)

        # header values that cannot be encoded surface as ValueError from httpx
        try:
            headers = build_headers(target.headers)
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                res = client.post(target.url, content=body, headers=headers)
            status, success, response_body = res.status_code, res.is_success, res.text
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            status, success, response_body = 0, False, f'{type(exc).__name__}: {exc}'

        if success:
            logger.info('Webhook %s delivered response %s (attempt %d, HTTP %d)', target.id, response_id, attempt, status)
        else:
            logger.warning(
                'Webhook %s failed for response %s (attempt %d/%d, status %d)',
                target.id, response_id, attempt, self.max_attempts, status,
            )

        self._record(target.id, status, success, body, response_body, attempt)

        if not success:
            if attempt < self.max_attempts:
                self._schedule(target, response_id, answers, attempt + 1, delay=attempt * self.retry_delay)
            else:
                logger.error('Webhook %s gave up on response %s after %d attempts', target.id, response_id, attempt)
        return success

    def _record(self, webhook_id: str, status: int, success: bool, payload: str, response_body: str, attempt: int):
        try:
            with self.session_factory() as db:
                crud.create_webhook_log(db, webhook_id, status, success, payload, response_body, attempt)
        except SQLAlchemyError:
            logger.exception('Could not record delivery log for webhook %s (attempt %d)', webhook_id, attempt)


dispatcher = WebhookDispatcher()
