"""
Notification dispatchers for terminal execution outcomes.

- WebhookNotifier: HTTP POST (httpx) with retries and exponential backoff,
  sent from a background thread so the worker never waits on the network
- LoggingNotifier: writes the outcome to the log
- CompositeNotifier: fans out to several dispatchers

Delivery failures are logged and never reach the execution lifecycle.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import httpx

from src.engine.entities import Execution, ExecutionStatus
from src.engine.lifecycle import NotificationDispatcher

logger = logging.getLogger(__name__)

# Webhook configuration
WEBHOOK_TIMEOUT_SECONDS = 30
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_RETRY_BASE_DELAY = 1.0  # seconds
WEBHOOK_RETRY_MAX_DELAY = 10.0  # seconds

USER_AGENT = "JobCore/1.0"

# Discord embed colors
DISCORD_COLOR_SUCCESS = 0x57F287
DISCORD_COLOR_ERROR = 0xED4245
DISCORD_COLOR_NEUTRAL = 0x95A5A6


def build_execution_payload(execution: Execution, status: ExecutionStatus) -> dict:
    """
    Build webhook payload from an execution.

    Args:
        execution: Terminal execution
        status: Status being announced

    Returns:
        Dictionary payload for webhook POST
    """
    return {
        "event": status.value,
        "execution_id": execution.execution_id,
        "job_id": execution.job_id,
        "schedule_id": execution.schedule_id,
        "status": status.value,
        "parameters": execution.parameters,
        "created_at": execution.created_at,
        "start_time": execution.start_time,
        "end_time": execution.end_time,
        "duration_ms": execution.duration_ms,
        "result": execution.result,
        "error_message": execution.error_message,
        "error_phase": execution.error_phase,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def is_discord_webhook_url(url: str) -> bool:
    """Check if URL is a Discord webhook URL."""
    if not url:
        return False
    discord_patterns = [
        "https://discord.com/api/webhooks/",
        "https://www.discord.com/api/webhooks/",
        "https://discordapp.com/api/webhooks/",
        "https://www.discordapp.com/api/webhooks/",
    ]
    return any(url.startswith(pattern) for pattern in discord_patterns)


def build_discord_embed_payload(execution: Execution, status: ExecutionStatus) -> Dict[str, Any]:
    """Build a Discord-compatible payload with one embed."""
    if status == ExecutionStatus.COMPLETED:
        color, title = DISCORD_COLOR_SUCCESS, "Execution Completed"
    elif status == ExecutionStatus.FAILED:
        color, title = DISCORD_COLOR_ERROR, "Execution Failed"
    else:
        color, title = DISCORD_COLOR_NEUTRAL, f"Execution {status.value.title()}"

    fields = [
        {"name": "Job ID", "value": execution.job_id, "inline": True},
        {"name": "Execution ID", "value": execution.execution_id, "inline": True},
    ]
    if execution.duration_ms is not None:
        fields.append({"name": "Duration", "value": f"{execution.duration_ms} ms", "inline": True})
    if execution.error_message:
        fields.append({"name": "Error", "value": execution.error_message[:1000], "inline": False})

    return {
        "embeds": [
            {
                "title": title,
                "color": color,
                "fields": fields,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "footer": {"text": USER_AGENT},
            }
        ]
    }


def send_webhook_sync(
    url: str,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    max_retries: int = WEBHOOK_MAX_RETRIES,
) -> tuple[bool, Optional[str]]:
    """
    POST a payload with retry logic.

    Args:
        url: Webhook URL to POST to
        payload: JSON body
        headers: Extra request headers
        timeout: Request timeout in seconds
        max_retries: Maximum number of attempts

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    request_headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    request_headers.update(headers or {})
    last_error: Optional[str] = None

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload, headers=request_headers)

            if 200 <= response.status_code < 300:
                logger.info(
                    f"Webhook sent to {url} "
                    f"(attempt {attempt + 1}/{max_retries}, status={response.status_code})"
                )
                return True, None

            last_error = f"HTTP {response.status_code}: {response.text[:200]}"
            logger.warning(
                f"Webhook failed to {url} "
                f"(attempt {attempt + 1}/{max_retries}): {last_error}"
            )

        except httpx.TimeoutException:
            last_error = f"Timeout after {timeout}s"
            logger.warning(f"Webhook timeout to {url} (attempt {attempt + 1}/{max_retries})")

        except httpx.RequestError as e:
            last_error = f"Request error: {str(e)}"
            logger.warning(
                f"Webhook request error to {url} "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )

        except Exception as e:
            last_error = f"Unexpected error: {str(e)}"
            logger.error(
                f"Webhook unexpected error to {url} "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )

        # Exponential backoff before retry
        if attempt < max_retries - 1:
            delay = min(
                WEBHOOK_RETRY_BASE_DELAY * (2 ** attempt),
                WEBHOOK_RETRY_MAX_DELAY,
            )
            logger.debug(f"Retrying webhook in {delay}s...")
            time.sleep(delay)

    logger.error(f"Webhook failed after {max_retries} attempts to {url}: {last_error}")
    return False, last_error


class WebhookNotifier(NotificationDispatcher):
    """
    Fire-and-forget webhook delivery.

    Only statuses in `events` are announced. Discord URLs get the embed
    format, everything else the plain execution payload.
    """

    def __init__(
        self,
        url: str,
        events: Optional[Iterable[ExecutionStatus]] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        max_retries: int = WEBHOOK_MAX_RETRIES,
        background: bool = True,
    ):
        self.url = url
        self.events = frozenset(
            events
            if events is not None
            else (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)
        )
        self.timeout = timeout
        self.max_retries = max_retries
        self.background = background

    def build_payload(self, execution: Execution, status: ExecutionStatus) -> Dict[str, Any]:
        if is_discord_webhook_url(self.url):
            return build_discord_embed_payload(execution, status)
        return build_execution_payload(execution, status)

    def notify(self, execution: Execution, status: ExecutionStatus) -> None:
        if status not in self.events:
            return

        payload = self.build_payload(execution, status)
        headers = {}
        if not is_discord_webhook_url(self.url):
            headers = {
                "X-Execution-ID": execution.execution_id,
                "X-Execution-Event": status.value,
            }

        if not self.background:
            self._deliver(payload, headers)
            return

        thread = threading.Thread(
            target=self._deliver,
            args=(payload, headers),
            name=f"webhook-{execution.execution_id[:8]}",
            daemon=True,
        )
        thread.start()

    def _deliver(self, payload: Dict[str, Any], headers: Dict[str, str]) -> None:
        send_webhook_sync(
            self.url,
            payload,
            headers=headers,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )


class LoggingNotifier(NotificationDispatcher):
    """Writes terminal outcomes to the log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def notify(self, execution: Execution, status: ExecutionStatus) -> None:
        level = logging.WARNING if status == ExecutionStatus.FAILED else self.level
        logger.log(
            level,
            f"Execution {status.value}: job={execution.job_id} "
            f"execution={execution.execution_id} duration_ms={execution.duration_ms} "
            f"error={execution.error_message}",
        )


class CompositeNotifier(NotificationDispatcher):
    """Dispatches to each child; one failing child does not stop the rest."""

    def __init__(self, notifiers: Iterable[NotificationDispatcher]):
        self.notifiers = list(notifiers)

    def notify(self, execution: Execution, status: ExecutionStatus) -> None:
        for notifier in self.notifiers:
            try:
                notifier.notify(execution, status)
            except Exception as e:
                logger.error(
                    f"Notifier {type(notifier).__name__} failed for "
                    f"execution {execution.execution_id}: {e}"
                )


def build_notifier(webhook_url: Optional[str]) -> NotificationDispatcher:
    """Default dispatcher: always log, POST to the webhook when configured."""
    notifiers: list[NotificationDispatcher] = [LoggingNotifier()]
    if webhook_url:
        notifiers.append(WebhookNotifier(webhook_url))
    return CompositeNotifier(notifiers)
