"""
Notification gateway.

Delivery transport (email, SMS, push) lives outside the scheduling core. The
core only hands over scheduled, idempotent deliveries and retracts them.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

CHANNELS = ('email', 'sms', 'push')


class NotificationError(Exception):
    """Raised by gateways when a delivery cannot be queued or retracted."""


class NotificationGateway(ABC):
    @abstractmethod
    def schedule_send(
        self,
        channel: str,
        recipient: str,
        template: str,
        fire_at: datetime,
        context: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Queue a delivery for ``fire_at`` and return the gateway's job id.

        Repeating a call with the same ``idempotency_key`` must not queue a second delivery.
        Raises NotificationError when the delivery is refused.
        """

    @abstractmethod
    def retract(self, job_id: str) -> None:
        """Drop a queued delivery. Retracting an unknown or already sent job is a no-op."""


class LoggingNotificationGateway(NotificationGateway):
    """Records deliveries in memory and in the log; used when no transport is configured."""

    def __init__(self):
        self.jobs: dict[str, dict[str, Any]] = {}
        self._keys: dict[str, str] = {}

    def schedule_send(
        self,
        channel: str,
        recipient: str,
        template: str,
        fire_at: datetime,
        context: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        if channel not in CHANNELS:
            raise NotificationError(f'Unsupported notification channel: {channel}')
        if not recipient or not recipient.strip():
            raise NotificationError(f'Missing recipient for {template} notification')

        if idempotency_key and idempotency_key in self._keys:
            return self._keys[idempotency_key]

        job_id = uuid.uuid4().hex
        self.jobs[job_id] = {
            'channel': channel,
            'recipient': recipient,
            'template': template,
            'fire_at': fire_at,
            'context': context or {},
        }
        if idempotency_key:
            self._keys[idempotency_key] = job_id

        logger.info('Queued %s notification %s for %s at %s (%s)', channel, template, recipient, fire_at, job_id)
        return job_id

    def retract(self, job_id: str) -> None:
        if self.jobs.pop(job_id, None) is not None:
            logger.info('Retracted notification %s', job_id)
