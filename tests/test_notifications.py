"""Tests for execution outcome notifications."""

import logging
from unittest.mock import MagicMock, patch

import httpx
import pytest

from src.engine.entities import Execution, ExecutionStatus
from src.infra.notifications import (
    DISCORD_COLOR_ERROR,
    DISCORD_COLOR_SUCCESS,
    USER_AGENT,
    WEBHOOK_MAX_RETRIES,
    CompositeNotifier,
    LoggingNotifier,
    WebhookNotifier,
    build_discord_embed_payload,
    build_execution_payload,
    build_notifier,
    is_discord_webhook_url,
    send_webhook_sync,
)

DISCORD_URL = "https://discord.com/api/webhooks/123/abc"
PLAIN_URL = "https://example.com/webhook"


@pytest.fixture
def sample_execution():
    """A completed execution."""
    return Execution(
        execution_id="exec-123",
        job_id="job-1",
        status=ExecutionStatus.COMPLETED,
        parameters={"target": "reports"},
        created_at="2026-01-01T10:00:00.000000+00:00",
        start_time="2026-01-01T10:00:01.000000+00:00",
        end_time="2026-01-01T10:00:03.000000+00:00",
        duration_ms=2000,
        result={"rows": 10},
    )


@pytest.fixture
def failed_execution(sample_execution):
    sample_execution.status = ExecutionStatus.FAILED
    sample_execution.result = None
    sample_execution.error_message = "boom"
    sample_execution.error_phase = "run"
    return sample_execution


def mock_http_client(*responses):
    """Patchable httpx.Client whose post() yields the given responses or raises them."""
    mock_client = MagicMock()
    mock_client.post.side_effect = list(responses)
    client_cls = MagicMock()
    client_cls.return_value.__enter__.return_value = mock_client
    client_cls.return_value.__exit__.return_value = None
    return client_cls, mock_client


def ok_response(status_code=200, text="ok"):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


class TestBuildExecutionPayload:
    """Tests for build_execution_payload."""

    def test_builds_complete_payload(self, sample_execution):
        payload = build_execution_payload(sample_execution, ExecutionStatus.COMPLETED)

        assert payload["event"] == "COMPLETED"
        assert payload["status"] == "COMPLETED"
        assert payload["execution_id"] == "exec-123"
        assert payload["job_id"] == "job-1"
        assert payload["schedule_id"] is None
        assert payload["parameters"] == {"target": "reports"}
        assert payload["duration_ms"] == 2000
        assert payload["result"] == {"rows": 10}
        assert payload["error_message"] is None
        assert "timestamp" in payload

    def test_payload_with_error(self, failed_execution):
        payload = build_execution_payload(failed_execution, ExecutionStatus.FAILED)

        assert payload["status"] == "FAILED"
        assert payload["error_message"] == "boom"
        assert payload["error_phase"] == "run"


class TestDiscordFormat:
    """Tests for Discord detection and embeds."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://discord.com/api/webhooks/1/x",
            "https://www.discord.com/api/webhooks/1/x",
            "https://discordapp.com/api/webhooks/1/x",
        ],
    )
    def test_detects_discord_urls(self, url):
        assert is_discord_webhook_url(url) is True

    @pytest.mark.parametrize("url", ["", None, PLAIN_URL, "https://discord.com/other"])
    def test_rejects_other_urls(self, url):
        assert is_discord_webhook_url(url) is False

    def test_completed_embed(self, sample_execution):
        payload = build_discord_embed_payload(sample_execution, ExecutionStatus.COMPLETED)

        embed = payload["embeds"][0]
        assert embed["title"] == "Execution Completed"
        assert embed["color"] == DISCORD_COLOR_SUCCESS
        names = [f["name"] for f in embed["fields"]]
        assert names == ["Job ID", "Execution ID", "Duration"]
        assert embed["footer"]["text"] == USER_AGENT

    def test_failed_embed_truncates_error(self, failed_execution):
        failed_execution.error_message = "x" * 5000

        payload = build_discord_embed_payload(failed_execution, ExecutionStatus.FAILED)

        embed = payload["embeds"][0]
        assert embed["title"] == "Execution Failed"
        assert embed["color"] == DISCORD_COLOR_ERROR
        error_field = embed["fields"][-1]
        assert error_field["name"] == "Error"
        assert len(error_field["value"]) == 1000

    def test_cancelled_embed_title(self, sample_execution):
        sample_execution.duration_ms = None

        payload = build_discord_embed_payload(sample_execution, ExecutionStatus.CANCELLED)

        embed = payload["embeds"][0]
        assert embed["title"] == "Execution Cancelled"
        assert [f["name"] for f in embed["fields"]] == ["Job ID", "Execution ID"]


class TestSendWebhookSync:
    """Tests for send_webhook_sync."""

    def test_successful_webhook(self):
        client_cls, mock_client = mock_http_client(ok_response(200))

        with patch("httpx.Client", client_cls):
            success, error = send_webhook_sync(PLAIN_URL, {"a": 1})

        assert success is True
        assert error is None
        mock_client.post.assert_called_once()
        _, kwargs = mock_client.post.call_args
        assert kwargs["json"] == {"a": 1}
        assert kwargs["headers"]["User-Agent"] == USER_AGENT
        assert kwargs["headers"]["Content-Type"] == "application/json"

    def test_extra_headers_merged(self):
        client_cls, mock_client = mock_http_client(ok_response(204))

        with patch("httpx.Client", client_cls):
            success, _ = send_webhook_sync(PLAIN_URL, {}, headers={"X-Execution-ID": "e1"})

        assert success is True
        _, kwargs = mock_client.post.call_args
        assert kwargs["headers"]["X-Execution-ID"] == "e1"

    def test_http_error_retries_and_fails(self):
        responses = [ok_response(404, "Not Found")] * WEBHOOK_MAX_RETRIES
        client_cls, mock_client = mock_http_client(*responses)

        with patch("httpx.Client", client_cls), patch("time.sleep") as mock_sleep:
            success, error = send_webhook_sync(PLAIN_URL, {})

        assert success is False
        assert error == "HTTP 404: Not Found"
        assert mock_client.post.call_count == WEBHOOK_MAX_RETRIES
        assert mock_sleep.call_count == WEBHOOK_MAX_RETRIES - 1

    def test_timeout_reported(self):
        client_cls, _ = mock_http_client(httpx.TimeoutException("timed out"))

        with patch("httpx.Client", client_cls):
            success, error = send_webhook_sync(PLAIN_URL, {}, timeout=5, max_retries=1)

        assert success is False
        assert error == "Timeout after 5s"

    def test_request_error_reported(self):
        client_cls, _ = mock_http_client(httpx.ConnectError("refused"))

        with patch("httpx.Client", client_cls):
            success, error = send_webhook_sync(PLAIN_URL, {}, max_retries=1)

        assert success is False
        assert error.startswith("Request error:")
        assert "refused" in error

    def test_unexpected_error_reported(self):
        client_cls, _ = mock_http_client(RuntimeError("weird"))

        with patch("httpx.Client", client_cls):
            success, error = send_webhook_sync(PLAIN_URL, {}, max_retries=1)

        assert success is False
        assert error == "Unexpected error: weird"

    def test_succeeds_after_retry_with_backoff(self):
        client_cls, mock_client = mock_http_client(
            httpx.ConnectError("refused"),
            ok_response(500, "err"),
            ok_response(200),
        )

        with patch("httpx.Client", client_cls), patch("time.sleep") as mock_sleep:
            success, error = send_webhook_sync(PLAIN_URL, {}, max_retries=3)

        assert success is True
        assert error is None
        assert mock_client.post.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    def test_backoff_capped(self):
        responses = [ok_response(503, "busy")] * 6
        client_cls, _ = mock_http_client(*responses)

        with patch("httpx.Client", client_cls), patch("time.sleep") as mock_sleep:
            send_webhook_sync(PLAIN_URL, {}, max_retries=6)

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]


class TestWebhookNotifier:
    """Tests for WebhookNotifier."""

    def test_default_events(self):
        notifier = WebhookNotifier(PLAIN_URL)

        assert notifier.events == {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }

    def test_skips_unsubscribed_status(self, sample_execution):
        notifier = WebhookNotifier(
            PLAIN_URL, events=[ExecutionStatus.FAILED], background=False
        )

        with patch("src.infra.notifications.send_webhook_sync") as mock_send:
            notifier.notify(sample_execution, ExecutionStatus.COMPLETED)

        mock_send.assert_not_called()

    def test_plain_url_sends_execution_headers(self, failed_execution):
        notifier = WebhookNotifier(PLAIN_URL, background=False, max_retries=2)

        with patch("src.infra.notifications.send_webhook_sync") as mock_send:
            notifier.notify(failed_execution, ExecutionStatus.FAILED)

        mock_send.assert_called_once()
        args, kwargs = mock_send.call_args
        assert args[0] == PLAIN_URL
        assert args[1]["execution_id"] == "exec-123"
        assert kwargs["headers"] == {
            "X-Execution-ID": "exec-123",
            "X-Execution-Event": "FAILED",
        }
        assert kwargs["max_retries"] == 2

    def test_discord_url_sends_embed_without_headers(self, sample_execution):
        notifier = WebhookNotifier(DISCORD_URL, background=False)

        with patch("src.infra.notifications.send_webhook_sync") as mock_send:
            notifier.notify(sample_execution, ExecutionStatus.COMPLETED)

        args, kwargs = mock_send.call_args
        assert "embeds" in args[1]
        assert kwargs["headers"] == {}

    def test_background_delivery_uses_thread(self, sample_execution):
        notifier = WebhookNotifier(PLAIN_URL)

        with patch("src.infra.notifications.threading.Thread") as mock_thread:
            notifier.notify(sample_execution, ExecutionStatus.COMPLETED)

        mock_thread.assert_called_once()
        assert mock_thread.call_args.kwargs["daemon"] is True
        mock_thread.return_value.start.assert_called_once()


class TestLoggingNotifier:
    def test_failed_logged_as_warning(self, failed_execution):
        with patch("src.infra.notifications.logger") as mock_logger:
            LoggingNotifier().notify(failed_execution, ExecutionStatus.FAILED)

        level, message = mock_logger.log.call_args.args
        assert level == logging.WARNING
        assert "FAILED" in message
        assert "exec-123" in message

    def test_completed_logged_at_configured_level(self, sample_execution):
        with patch("src.infra.notifications.logger") as mock_logger:
            LoggingNotifier(level=logging.DEBUG).notify(
                sample_execution, ExecutionStatus.COMPLETED
            )

        assert mock_logger.log.call_args.args[0] == logging.DEBUG


class TestCompositeNotifier:
    def test_child_failure_does_not_stop_others(self, sample_execution):
        broken = MagicMock()
        broken.notify.side_effect = RuntimeError("down")
        healthy = MagicMock()

        composite = CompositeNotifier([broken, healthy])
        composite.notify(sample_execution, ExecutionStatus.COMPLETED)

        broken.notify.assert_called_once_with(sample_execution, ExecutionStatus.COMPLETED)
        healthy.notify.assert_called_once_with(sample_execution, ExecutionStatus.COMPLETED)


class TestBuildNotifier:
    def test_logging_only_without_url(self):
        notifier = build_notifier(None)

        assert isinstance(notifier, CompositeNotifier)
        assert [type(n) for n in notifier.notifiers] == [LoggingNotifier]

    def test_adds_webhook_when_configured(self):
        notifier = build_notifier(PLAIN_URL)

        assert [type(n) for n in notifier.notifiers] == [LoggingNotifier, WebhookNotifier]
        assert notifier.notifiers[1].url == PLAIN_URL
