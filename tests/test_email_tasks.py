"""
Tests for the Celery publishing tasks (run in-process, no broker)
"""

from unittest.mock import patch

import pytest

from herald.core.delivery_dispatcher import DeliveryDispatcher
from herald.services.email_publisher import EmailPublisher
from herald.services.publish_events import RecordingPublishEvents
from herald.tasks.email_sender import publish_email, publish_email_runs, split_runs

from conftest import FakeTransport


@pytest.fixture
def payload(smtp_settings):
    return {
        "requestId": "req-1",
        "credentials": smtp_settings,
        "runs": [
            {"runId": "speakers", "targets": {"mode": "groups", "groups": ["Speakers"]},
             "subject": "Speaker briefing", "html": "<p>Hi speakers</p>"},
            {"runId": "everyone", "targets": {"mode": "all"},
             "subject": "Launch party", "html": "<p>Hi all</p>"},
        ],
    }


@pytest.fixture
def transport():
    return FakeTransport(message_id="<task@example.com>")


@pytest.fixture
def fake_publisher(email_store, transport, attachment_resolver):
    def build(store=None, events=None):
        return EmailPublisher(
            store=email_store,
            dispatcher=DeliveryDispatcher(transport, timeout=1),
            attachment_resolver=attachment_resolver,
            events=RecordingPublishEvents(),
        )
    return build


class TestPublishEmail:

    def test_publishes_every_run(self, payload, fake_publisher, transport):
        with patch("herald.tasks.email_sender.build_publisher", side_effect=fake_publisher):
            result = publish_email(payload)

        assert result["success"] is True
        assert result["requestId"] == "req-1"
        assert result["postId"] == "<task@example.com>, <task@example.com>"
        assert [r["runId"] for r in result["runs"]] == ["speakers", "everyone"]
        assert len(transport.calls) == 2

    def test_configuration_error_is_returned(self, payload, fake_publisher, transport):
        payload["credentials"] = {}

        with patch("herald.tasks.email_sender.build_publisher", side_effect=fake_publisher):
            result = publish_email(payload)

        assert result["success"] is False
        assert "Missing" in result["error"]
        assert transport.calls == []

    def test_unexpected_error_is_returned_not_raised(self, payload):
        with patch("herald.tasks.email_sender.build_publisher", side_effect=RuntimeError("store offline")):
            result = publish_email(payload)

        assert result == {"requestId": "req-1", "success": False, "error": "store offline", "runs": []}


class TestPublishEmailRuns:

    def test_split_runs_shares_credentials(self, payload):
        parts = list(split_runs(payload))

        assert [p["requestId"] for p in parts] == ["req-1:speakers", "req-1:everyone"]
        assert all(len(p["runs"]) == 1 for p in parts)
        assert all(p["credentials"] == payload["credentials"] for p in parts)
        assert len(payload["runs"]) == 2

    def test_fans_out_one_task_per_run(self, payload):
        with patch("herald.tasks.email_sender.group") as group_mock:
            group_mock.return_value.apply_async.return_value.id = "group-1"
            result = publish_email_runs(payload)

        signatures = list(group_mock.call_args.args[0])
        assert [s.task for s in signatures] == [publish_email.name, publish_email.name]
        assert [s.args[0]["runs"][0]["runId"] for s in signatures] == ["speakers", "everyone"]
        assert result == {"groupId": "group-1", "runs": 2}

    def test_no_runs(self, payload):
        payload["runs"] = []

        with patch("herald.tasks.email_sender.group") as group_mock:
            result = publish_email_runs(payload)

        assert result["success"] is False
        group_mock.assert_not_called()
