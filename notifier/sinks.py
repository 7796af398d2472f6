#!/usr/bin/env python3
"""
Delivery Sinks - outbound transports for each notification channel.

Each sink makes one delivery attempt in ``send()``. ``deliver()`` wraps it in
a bounded tenacity retry (network-class and 5xx-class failures only), whose
sleeps wake early when the call's cancel event is set. The circuit breaker
only ever sees the aggregate outcome of ``deliver()``.

Sinks:
- EmailSink: SMTP via smtplib
- PushSink: HTTP push gateway via requests
- ChatWebhookSink: Slack-style incoming webhook via requests
- InAppSink / WebSocketSink: hand off to an injected publisher callable

Usage:
    sinks = build_sinks(config.delivery, in_app_publisher=store.save)
    sinks['email'].deliver(delivery, cancel_event)
"""

import logging
import os
import smtplib
import threading
import time
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from core.config_loader import DeliveryConfig, EmailConfig, SinkConfig
from notifier.exceptions import (
    DispatchCancelledError, SinkRejectedError, SinkTransportError,
)
from notifier.models import Delivery

logger = logging.getLogger(__name__)

Publisher = Callable[[str, Dict[str, Any]], None]

PRIORITY_COLORS = {
    'low': '#28a745',
    'medium': '#17a2b8',
    'high': '#ffc107',
    'urgent': '#fd7e14',
    'critical': '#dc3545',
}

CHAT_EMOJIS = {
    'task_assigned': ':clipboard:',
    'task_completed': ':white_check_mark:',
    'task_overdue': ':warning:',
    'task_escalated': ':rotating_light:',
    'workflow_completed': ':gear:',
    'workflow_failed': ':x:',
    'system_announcement': ':loudspeaker:',
    'security_alert': ':shield:',
    'approval_request': ':raised_hand:',
    'deadline_reminder': ':alarm_clock:',
}

PUSH_SOUNDS = {
    'high': 'alert',
    'urgent': 'urgent',
    'critical': 'critical',
}

EMAIL_SUBJECT_PREFIXES = {
    'high': '[HIGH] ',
    'urgent': '[URGENT] ',
    'critical': '[CRITICAL] ',
}

PUSH_TITLE_MAX = 50
PUSH_BODY_MAX = 120


def _is_dry_run_mode() -> bool:
    """Check if network sinks should run in dry-run (log-only) mode."""
    return os.environ.get('NOTIFICATION_DRY_RUN', '').lower() in ('true', '1', 'yes')


def _mask_email(email: str) -> str:
    """
    Mask email address for safe logging (PII protection).

    Shows only domain, e.g., "***@example.com"
    """
    if '@' not in email:
        return "***"
    _, domain = email.rsplit('@', 1)
    return f"***@{domain}"


def truncate_text(text: str, max_length: int) -> str:
    if not text or len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def _is_retryable_error(exc: BaseException) -> bool:
    """
    Only transport failures are retried.

    Rejections (4xx-class, bad recipient) and cancellation never are.
    """
    return isinstance(exc, SinkTransportError)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class DeliverySink(ABC):
    """
    Abstract base class for all delivery sinks.

    Subclasses implement ``send()`` as a single attempt that either returns or
    raises SinkTransportError (retryable) or SinkRejectedError (final).
    """

    def __init__(self, name: str, config: Optional[SinkConfig] = None):
        self.name = name
        self.config = config or SinkConfig()

    @abstractmethod
    def send(self, delivery: Delivery, cancel_event: threading.Event) -> None:
        pass

    def _wait(self, retry_state) -> float:
        exponential = wait_exponential(
            multiplier=self.config.backoff_initial_seconds,
            max=self.config.backoff_max_seconds,
        )
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, 'retry_after', None)
        if retry_after is not None:
            return min(retry_after, self.config.backoff_max_seconds)
        return exponential(retry_state)

    def deliver(self, delivery: Delivery, cancel_event: Optional[threading.Event] = None) -> None:
        """Send with bounded, cancellable retries."""
        cancel_event = cancel_event or threading.Event()
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_attempts) | stop_when_event_set(cancel_event),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable_error),
            sleep=cancel_event.wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if cancel_event.is_set():
                    raise DispatchCancelledError(f"[{self.name}] delivery cancelled")
                self.send(delivery, cancel_event)


class HttpSink(DeliverySink):
    """Shared requests.Session handling and HTTP error classification."""

    def __init__(self, name: str, config: Optional[SinkConfig] = None, session: Optional[requests.Session] = None):
        super().__init__(name, config)
        self.session = session or requests.Session()

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> requests.Response:
        try:
            response = self.session.post(
                url, json=payload, headers=headers, timeout=self.config.attempt_timeout_seconds
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise SinkTransportError(self.name, f"Network error: {e}") from e
        except requests.RequestException as e:
            raise SinkRejectedError(self.name, f"Request failed: {e}") from e

        if response.status_code >= 500:
            raise SinkTransportError(
                self.name,
                f"Server error {response.status_code}",
                retry_after=_parse_retry_after(response.headers.get('Retry-After')),
            )
        if response.status_code >= 400:
            raise SinkRejectedError(
                self.name,
                f"Rejected with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response


class EmailSink(DeliverySink):
    """Email delivery via SMTP."""

    def __init__(self, email_config: Optional[EmailConfig] = None, config: Optional[SinkConfig] = None):
        super().__init__('email', config)
        self.email_config = email_config or EmailConfig()

    def validate_config(self) -> bool:
        return bool(self.email_config.smtp_server)

    def build_message(self, delivery: Delivery, recipient: str) -> MIMEMultipart:
        request = delivery.request
        prefix = EMAIL_SUBJECT_PREFIXES.get(request.priority_hint.value, '')

        msg = MIMEMultipart()
        msg['From'] = self.email_config.from_email
        msg['To'] = recipient
        msg['Subject'] = f"{prefix}{request.title}"

        lines = [request.title, "", request.body]
        action_url = request.payload.get('action_url')
        if action_url:
            lines.extend(["", f"Action required: {action_url}"])
        lines.extend(["", "---", "You can manage your notification preferences in your account settings."])
        msg.attach(MIMEText("\n".join(lines), 'plain', 'utf-8'))
        return msg

    def send(self, delivery: Delivery, cancel_event: threading.Event) -> None:
        recipient = delivery.context.email or delivery.request.payload.get('email')
        if not recipient:
            raise SinkRejectedError(self.name, "Recipient has no email address")

        if _is_dry_run_mode():
            logger.info(f"[DRY RUN] Email to {_mask_email(recipient)}: {delivery.request.title}")
            return

        if not self.validate_config():
            raise SinkRejectedError(self.name, "Email not configured - SMTP server not set")

        msg = self.build_message(delivery, recipient)
        cfg = self.email_config
        try:
            with smtplib.SMTP(cfg.smtp_server, cfg.smtp_port, timeout=self.config.attempt_timeout_seconds) as server:
                if cfg.use_tls:
                    server.starttls()
                if cfg.username and cfg.password:
                    server.login(cfg.username, cfg.password)
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            raise SinkRejectedError(self.name, f"SMTP authentication failed: {e.smtp_code}") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise SinkRejectedError(self.name, f"Recipient refused: {_mask_email(recipient)}") from e
        except smtplib.SMTPResponseException as e:
            if e.smtp_code >= 500:
                raise SinkRejectedError(self.name, f"SMTP permanent error {e.smtp_code}", status_code=e.smtp_code) from e
            raise SinkTransportError(self.name, f"SMTP transient error {e.smtp_code}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise SinkTransportError(self.name, f"SMTP connection error: {e}") from e

        logger.info(f"Email sent to {_mask_email(recipient)}")


class PushSink(HttpSink):
    """Mobile push via an HTTP push gateway."""

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        config: Optional[SinkConfig] = None,
        session: Optional[requests.Session] = None
    ):
        super().__init__('push', config, session)
        self.gateway_url = gateway_url
        self.api_key = api_key

    def build_payload(self, delivery: Delivery) -> Dict[str, Any]:
        request = delivery.request
        priority = request.priority_hint.value
        return {
            'recipient_id': request.recipient_id,
            'title': truncate_text(request.title, PUSH_TITLE_MAX),
            'body': truncate_text(request.body, PUSH_BODY_MAX),
            'sound': PUSH_SOUNDS.get(priority, 'default'),
            'priority': 'high' if delivery.score >= 75 else 'normal',
            'data': {**request.payload, 'type': request.type},
        }

    def send(self, delivery: Delivery, cancel_event: threading.Event) -> None:
        payload = self.build_payload(delivery)
        if _is_dry_run_mode():
            logger.info(f"[DRY RUN] Push to {delivery.request.recipient_id}: {payload['title']}")
            return
        if not self.gateway_url:
            raise SinkRejectedError(self.name, "Push gateway not configured - PUSH_GATEWAY_URL not set")

        headers = {'Authorization': f"Bearer {self.api_key}"} if self.api_key else None
        self._post_json(self.gateway_url, payload, headers)
        logger.info(f"Push sent to {delivery.request.recipient_id}")


class ChatWebhookSink(HttpSink):
    """Team chat delivery through the recipient's incoming webhook."""

    def __init__(self, config: Optional[SinkConfig] = None, session: Optional[requests.Session] = None):
        super().__init__('chat', config, session)

    @staticmethod
    def build_payload(delivery: Delivery) -> Dict[str, Any]:
        request = delivery.request
        priority = request.priority_hint.value
        emoji = CHAT_EMOJIS.get(request.type, ':bell:')
        return {
            'text': f"{emoji} *{request.title}*\n{request.body}",
            'attachments': [{
                'color': PRIORITY_COLORS.get(priority, '#6c757d'),
                'fields': [
                    {'title': 'Priority', 'value': priority.upper(), 'short': True},
                    {'title': 'Type', 'value': request.type.replace('_', ' ').upper(), 'short': True},
                ],
                'ts': int(request.created_at),
            }],
        }

    def send(self, delivery: Delivery, cancel_event: threading.Event) -> None:
        webhook_url = delivery.preference.webhook_url
        if not webhook_url:
            raise SinkRejectedError(self.name, "No chat webhook configured for recipient")

        payload = self.build_payload(delivery)
        if _is_dry_run_mode():
            logger.info(f"[DRY RUN] Chat message: {payload['text'][:100]}")
            return

        self._post_json(webhook_url, payload)
        logger.info(f"Chat message sent for {delivery.request.recipient_id}")


def _log_publisher(recipient_id: str, message: Dict[str, Any]) -> None:
    logger.debug(f"No publisher configured, dropping {message.get('event')} for {recipient_id}")


class PublisherSink(DeliverySink):
    """Delegates to an injected publisher (persistence or socket transport)."""

    event = "notification"

    def __init__(self, name: str, publisher: Optional[Publisher] = None, config: Optional[SinkConfig] = None):
        super().__init__(name, config)
        self.publisher = publisher or _log_publisher

    def build_message(self, delivery: Delivery) -> Dict[str, Any]:
        request = delivery.request
        return {
            'event': self.event,
            'type': request.type,
            'title': request.title,
            'message': request.body,
            'priority': request.priority_hint.value,
            'score': delivery.score,
            'data': dict(request.payload),
            'created_at': request.created_at,
        }

    def send(self, delivery: Delivery, cancel_event: threading.Event) -> None:
        try:
            self.publisher(delivery.request.recipient_id, self.build_message(delivery))
        except (ConnectionError, TimeoutError) as e:
            raise SinkTransportError(self.name, str(e)) from e
        except ValueError as e:
            raise SinkRejectedError(self.name, str(e)) from e


class InAppSink(PublisherSink):
    event = "notification"

    def __init__(self, publisher: Optional[Publisher] = None, config: Optional[SinkConfig] = None):
        super().__init__('in_app', publisher, config)


class WebSocketSink(PublisherSink):
    event = "notification:new"

    def __init__(self, publisher: Optional[Publisher] = None, config: Optional[SinkConfig] = None):
        super().__init__('websocket', publisher, config)

    def build_message(self, delivery: Delivery) -> Dict[str, Any]:
        message = super().build_message(delivery)
        message['timestamp'] = time.time()
        return message


def build_sinks(
    config: DeliveryConfig,
    in_app_publisher: Optional[Publisher] = None,
    websocket_publisher: Optional[Publisher] = None,
    session: Optional[requests.Session] = None
) -> Dict[str, DeliverySink]:
    """Build the default sink set, keyed by sink name."""
    session = session or requests.Session()
    return {
        'in_app': InAppSink(in_app_publisher, config.sink_config('in_app')),
        'websocket': WebSocketSink(websocket_publisher, config.sink_config('websocket')),
        'email': EmailSink(config.email, config.sink_config('email')),
        'push': PushSink(config.push_gateway_url, config.push_api_key, config.sink_config('push'), session),
        'chat': ChatWebhookSink(config.sink_config('chat'), session),
    }
