"""
Tests for webhook delivery, logging and the retry schedule.
"""
import json
from datetime import datetime, timezone

import httpx
import pytest

from formflow import crud, models
from formflow.webhooks import WebhookDispatcher, WebhookTarget, build_headers

pytestmark = pytest.mark.integration


@pytest.fixture
def webhook(db_session, published_form):
    hook, _ = crud.upsert_webhook(db_session, published_form, 'https://hooks.example.com/in', '{"X-Secret": "s3cr3t"}')
    return hook


def make_dispatcher(session_factory, scheduler, handler):
    return WebhookDispatcher(
        session_factory=session_factory,
        scheduler=scheduler,
        transport=httpx.MockTransport(handler),
        timeout=1.0,
    )


def logs_for(db_session, webhook_id):
    db_session.expire_all()
    return (
        db_session.query(models.WebhookLog)
        .filter_by(webhook_id=webhook_id)
        .order_by(models.WebhookLog.attempt)
        .all()
    )


class TestHeaders:
    def test_custom_headers_merge_over_content_type(self):
        headers = build_headers('{"Authorization": "Bearer x"}')
        assert headers == {'Content-Type': 'application/json', 'Authorization': 'Bearer x'}

    @pytest.mark.parametrize('raw', [None, '', '{not json', '["a"]'])
    def test_malformed_headers_are_ignored(self, raw):
        assert build_headers(raw) == {'Content-Type': 'application/json'}


class TestDelivery:
    def test_dispatch_only_queues_a_job(self, session_factory, recording_scheduler, webhook):
        dispatcher = make_dispatcher(session_factory, recording_scheduler, lambda request: httpx.Response(200))

        dispatcher.dispatch(webhook, 'resp-1', {'q': 'a'})

        assert [job.id for job in dispatcher.pending_deliveries()] == [f'webhook:{webhook.id}:resp-1:1']

    def test_successful_delivery_is_logged_once(self, db_session, session_factory, recording_scheduler, webhook):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, text='thanks')

        dispatcher = make_dispatcher(session_factory, recording_scheduler, handler)
        dispatcher.dispatch(webhook, 'resp-1', {'q': 'a'})

        assert recording_scheduler.run_next() is True
        assert recording_scheduler.jobs == []

        body = json.loads(seen[0].content)
        assert set(body) == {'event', 'responseId', 'answers', 'timestamp'}
        assert body['event'] == 'response.submitted'
        assert body['responseId'] == 'resp-1'
        assert body['answers'] == {'q': 'a'}
        assert seen[0].headers['content-type'] == 'application/json'
        assert seen[0].headers['x-secret'] == 's3cr3t'

        logs = logs_for(db_session, webhook.id)
        assert len(logs) == 1
        assert (logs[0].status, logs[0].success, logs[0].response, logs[0].attempt) == (200, True, 'thanks', 1)

    def test_server_error_is_retried_three_times_in_total(self, db_session, session_factory, recording_scheduler, webhook):
        dispatcher = make_dispatcher(session_factory, recording_scheduler, lambda request: httpx.Response(500, text='boom'))
        dispatcher.dispatch(webhook, 'resp-1', {'q': 'a'})

        recording_scheduler.run_next()
        start = datetime.now(timezone.utc)
        second = recording_scheduler.jobs[0]
        assert second.args[3] == 2
        assert 4 <= (second.run_date - start).total_seconds() <= 5

        recording_scheduler.run_next()
        start = datetime.now(timezone.utc)
        third = recording_scheduler.jobs[0]
        assert third.args[3] == 3
        assert 9 <= (third.run_date - start).total_seconds() <= 10

        recording_scheduler.run_next()
        assert recording_scheduler.jobs == []

        logs = logs_for(db_session, webhook.id)
        assert [log.attempt for log in logs] == [1, 2, 3]
        assert all(log.status == 500 and log.success is False for log in logs)

    def test_transport_error_is_logged_with_status_zero(self, db_session, session_factory, recording_scheduler, webhook):
        def handler(request):
            raise httpx.ConnectTimeout('timed out', request=request)

        dispatcher = make_dispatcher(session_factory, recording_scheduler, handler)
        target = WebhookTarget.from_model(webhook)

        assert dispatcher.deliver(target, 'resp-1', {}, attempt=3) is False
        assert recording_scheduler.jobs == []

        log = logs_for(db_session, webhook.id)[0]
        assert log.status == 0
        assert log.success is False
        assert 'ConnectTimeout' in log.response

    def test_recovery_on_retry_stops_the_schedule(self, db_session, session_factory, recording_scheduler, webhook):
        statuses = iter([503, 204])
        dispatcher = make_dispatcher(session_factory, recording_scheduler, lambda request: httpx.Response(next(statuses)))
        dispatcher.dispatch(webhook, 'resp-1', {})

        recording_scheduler.run_next()
        recording_scheduler.run_next()

        assert recording_scheduler.jobs == []
        assert [(log.attempt, log.success) for log in logs_for(db_session, webhook.id)] == [(1, False), (2, True)]

    def test_unencodable_header_is_logged_and_retried(self, db_session, session_factory, recording_scheduler, published_form):
        hook, _ = crud.upsert_webhook(db_session, published_form, 'https://hooks.example.com/in', '{"X-Name": "José"}')
        dispatcher = make_dispatcher(session_factory, recording_scheduler, lambda request: httpx.Response(200))

        assert dispatcher.deliver(WebhookTarget.from_model(hook), 'resp-1', {}) is False

        log = logs_for(db_session, hook.id)[0]
        assert (log.status, log.success, log.attempt) == (0, False, 1)
        assert [job.args[3] for job in recording_scheduler.jobs] == [2]
