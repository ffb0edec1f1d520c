"""
NOTIFICATION DISPATCH
=====================

Adapters for the external notification collaborator:

    send(recipient, channel, template_type, template_data) -> NotificationResult

Dispatchers report failures in the result instead of raising, so callers
decide what a failure means (the consent flow treats it as fatal to the
state change, the importer only logs it).
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import requests
from flask import current_app

logger = logging.getLogger(__name__)

CONSENT_INVITATION = 'consent_invitation'
ACCOUNT_ACTIVATION = 'account_activation'


@dataclass
class NotificationResult:
    success: bool
    error: Optional[str] = None
    channel: str = 'email'


class NotificationDispatcher(Protocol):
    def send(self, recipient: str, channel: str, template_type: str,
             template_data: dict) -> NotificationResult:
        ...


class HttpNotificationDispatcher:
    """POSTs the message to a delivery endpoint with a per-call timeout."""

    def __init__(self, url, timeout=5.0, session=None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, recipient, channel, template_type, template_data):
        payload = {
            'recipient': recipient,
            'channel': channel,
            'templateType': template_type,
            'templateData': template_data,
        }
        try:
            response = self.session.post(self.url, json=payload, timeout=(self.timeout, self.timeout))
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout:
            return NotificationResult(False, f"Notification timed out after {self.timeout}s", channel)
        except requests.exceptions.RequestException as e:
            return NotificationResult(False, f"Notification request failed: {e}", channel)
        except ValueError:
            return NotificationResult(False, "Notification endpoint returned invalid JSON", channel)

        return _parse_delivery_response(data, channel)


def _parse_delivery_response(data, channel):
    # Either a top-level success flag or a per-channel result block
    if not isinstance(data, dict):
        return NotificationResult(False, "Unexpected notification response", channel)

    channel_result = (data.get('results') or {}).get(channel) or {}
    if data.get('success') is True or channel_result.get('success') is True:
        return NotificationResult(True, None, channel)

    error = data.get('error') or channel_result.get('error') or 'Failed to send notification'
    return NotificationResult(False, error, channel)


class LogNotificationDispatcher:
    """Logs instead of delivering. Only for tests and explicit log-only setups."""

    def send(self, recipient, channel, template_type, template_data):
        logger.info("Notification %s via %s to %s: %s", template_type, channel, recipient, template_data)
        return NotificationResult(True, None, channel)


class UnconfiguredNotificationDispatcher:
    """Fails every send so nothing is reported as delivered without an endpoint."""

    def send(self, recipient, channel, template_type, template_data):
        logger.error("Notification %s to %s not sent: NOTIFICATION_URL is not configured",
                     template_type, recipient)
        return NotificationResult(False, "No notification endpoint configured", channel)


def log_only_enabled(config):
    return bool(config.get('TESTING') or config.get('NOTIFICATION_LOG_ONLY'))


def get_notifier():
    """Dispatcher configured for the current app"""
    config = current_app.config
    url = config.get('NOTIFICATION_URL')
    if url:
        return HttpNotificationDispatcher(url, timeout=config.get('NOTIFICATION_TIMEOUT_SECONDS', 5.0))
    if log_only_enabled(config):
        return LogNotificationDispatcher()
    logger.warning("NOTIFICATION_URL is not set; notifications will fail until it is configured")
    return UnconfiguredNotificationDispatcher()
