"""Delivery channels: live push, email and Telegram chat bot."""
import logging
import smtplib
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import requests

from .errors import DeliveryFailure

logger = logging.getLogger(__name__)

LIVE_PUSH = "live_push"
EMAIL = "email"
CHAT = "chat"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single delivery attempt."""
    channel: str
    recipient: str
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls, channel, recipient):
        return cls(channel, recipient, True)

    @classmethod
    def failed(cls, channel, recipient, error):
        return cls(channel, recipient, False, str(error))


class LivePushChannel:
    """Hub of live client connections, each with a queue of pending events."""

    name = LIVE_PUSH

    def __init__(self, max_pending=100):
        self.max_pending = max_pending
        self._queues = {}
        self._lock = threading.Lock()

    def connect(self, connection_id=None):
        """Register a connection and return its id."""
        connection_id = connection_id or uuid.uuid4().hex
        with self._lock:
            self._queues.setdefault(connection_id, deque(maxlen=self.max_pending))
        logger.info("Client connected: %s", connection_id)
        return connection_id

    def disconnect(self, connection_id):
        """Forget a connection. Returns False if it was unknown."""
        with self._lock:
            known = self._queues.pop(connection_id, None) is not None
        if known:
            logger.info("Client disconnected: %s", connection_id)
        return known

    def is_connected(self, connection_id):
        with self._lock:
            return connection_id in self._queues

    def connection_count(self):
        with self._lock:
            return len(self._queues)

    def deliver(self, connection_id, event):
        """Queue an event for a connection."""
        with self._lock:
            pending = self._queues.get(connection_id)
            if pending is None:
                return DeliveryResult.failed(
                    self.name, connection_id, "connection is not active")
            pending.append(event.to_dict())
        logger.debug("Queued live event for %s", connection_id)
        return DeliveryResult.ok(self.name, connection_id)

    def drain(self, connection_id):
        """Return and clear pending events, or None for an unknown connection."""
        with self._lock:
            pending = self._queues.get(connection_id)
            if pending is None:
                return None
            events = list(pending)
            pending.clear()
        return events


class EmailChannel:
    """Sends notification emails over SMTP."""

    name = EMAIL

    def __init__(self, config):
        """Initialize the email channel with configuration."""
        self.config = config
        self.enabled = bool(config.SMTP_HOST)
        if not self.enabled:
            logger.info("SMTP_HOST not set, email notifications disabled")

    def _send(self, recipient, subject, text, html):
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.config.SMTP_FROM or self.config.SMTP_USERNAME
        msg["To"] = recipient
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        with smtplib.SMTP(self.config.SMTP_HOST, self.config.SMTP_PORT, timeout=10) as server:
            server.starttls()
            if self.config.SMTP_USERNAME:
                server.login(self.config.SMTP_USERNAME, self.config.SMTP_PASSWORD)
            server.sendmail(msg["From"], [recipient], msg.as_string())

    def deliver(self, recipient, subject, text, html):
        """Send one email and report the outcome."""
        if not self.enabled:
            return DeliveryResult.failed(self.name, recipient, "email channel not configured")
        try:
            self._send(recipient, subject, text, html)
            logger.info("Email sent to %s: %s", recipient, subject)
            return DeliveryResult.ok(self.name, recipient)
        except Exception as e:
            logger.error("Failed to send email to %s: %s", recipient, e)
            return DeliveryResult.failed(self.name, recipient, e)


class TelegramChannel:
    """Sends chat messages through the Telegram Bot API."""

    name = CHAT

    def __init__(self, config, session=None):
        """Initialize the chat channel with configuration."""
        self.config = config
        self.bot_token = config.TELEGRAM_BOT_TOKEN
        self._session = session
        self._local = threading.local()
        self.available = bool(self.bot_token)
        if not self.available:
            logger.info("TELEGRAM_BOT_TOKEN not set, chat notifications disabled")

    @property
    def session(self):
        # One session per delivery worker thread
        if self._session is not None:
            return self._session
        if not hasattr(self._local, "session"):
            self._local.session = requests.Session()
        return self._local.session

    def _post(self, chat_id, text):
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
        }
        try:
            resp = self.session.post(url, json=payload, timeout=5)
        except requests.RequestException as e:
            raise DeliveryFailure(f"Telegram request failed: {e}") from e
        if resp.status_code != 200:
            raise DeliveryFailure(
                f"Telegram returned status {resp.status_code}: {resp.text[:200]}")

    def deliver(self, chat_id, text):
        """Send one chat message and report the outcome."""
        if not self.available:
            # An unconfigured bot is not an error
            logger.debug("Chat bot unavailable, skipping message to %s", chat_id)
            return DeliveryResult.ok(self.name, chat_id)
        try:
            self._post(chat_id, text)
            logger.info("Telegram message sent to %s", chat_id)
            return DeliveryResult.ok(self.name, chat_id)
        except Exception as e:
            logger.error("Failed to send Telegram message to %s: %s", chat_id, e)
            return DeliveryResult.failed(self.name, chat_id, e)
