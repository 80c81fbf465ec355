from __future__ import annotations

import json
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Iterable, Optional

import requests

from .entities import EntityGateway
from .models import ChannelOptions, Message

LOGGER = logging.getLogger(__name__)


def _smtp_connection():
    host = os.getenv("SMTP_HOST")
    port = int(os.getenv("SMTP_PORT", "587"))
    username = os.getenv("SMTP_USERNAME")
    password = os.getenv("SMTP_PASSWORD")
    use_tls = os.getenv("SMTP_USE_TLS", "1") not in {"0", "false", "False"}

    if not host:
        return None

    server = smtplib.SMTP(host, port, timeout=10)
    try:
        if use_tls:
            server.starttls()
        if username and password:
            server.login(username, password)
    except Exception:
        server.quit()
        raise
    return server


class _RecipientNotifier:
    name = ""

    def __init__(self, gateway: EntityGateway, user_type: str = "user") -> None:
        self.gateway = gateway
        self.user_type = user_type

    def recipient(self, message: Message) -> Optional[Any]:
        return self.gateway.load(self.user_type, message.user_id)


class EmailNotifier(_RecipientNotifier):
    """Send the notification via SMTP email."""

    name = "email"

    def deliver(self, message: Message) -> bool:
        account = self.recipient(message)
        address = getattr(account, "email", None)
        if not address:
            LOGGER.info("Skipping email notification for user %s: no address", message.user_id)
            return False

        sender = os.getenv("NOTIFY_FROM_EMAIL") or os.getenv("SMTP_DEFAULT_SENDER")
        if not sender:
            LOGGER.warning("Skipping email notification: NOTIFY_FROM_EMAIL not configured")
            return False

        email = EmailMessage()
        email["Subject"] = message.subject
        email["From"] = sender
        email["To"] = address
        email.set_content(message.body_text)
        if message.body_html:
            email.add_alternative(message.body_html, subtype="html")

        try:
            server = _smtp_connection()
            if server is None:
                LOGGER.warning("SMTP_HOST not configured; email suppressed")
                return False
            with server:
                server.send_message(email)
            LOGGER.info("Sent email notification '%s' to %s", message.subject, address)
            return True
        except Exception as exc:  # pragma: no cover - network dependant
            LOGGER.exception("Failed to send email notification: %s", exc)
            return False


class DiscordNotifier(_RecipientNotifier):
    """Send the notification to the recipient's Discord webhook."""

    name = "discord"

    def deliver(self, message: Message) -> bool:
        account = self.recipient(message)
        webhook_url = getattr(account, "discord_webhook", None) or os.getenv("DISCORD_WEBHOOK_URL")
        if not webhook_url:
            LOGGER.info("Skipping discord notification for user %s: no webhook", message.user_id)
            return False

        payload = {
            "username": os.getenv("DISCORD_BOT_NAME", "Notify Bot"),
            "content": f"**{message.subject}**\n{message.body_text}",
        }
        headers = {"Content-Type": "application/json"}

        try:
            resp = requests.post(webhook_url, headers=headers, data=json.dumps(payload), timeout=5)
            if resp.status_code >= 400:
                LOGGER.error("Discord webhook responded with %s: %s", resp.status_code, resp.text[:120])
                return False
            LOGGER.info("Sent discord notification '%s' to %s", message.subject, webhook_url)
            return True
        except requests.RequestException as exc:
            LOGGER.exception("Failed to send discord notification: %s", exc)
            return False


class NotifierInvoker:
    """Sends one message clone through one named channel.

    Failures are reported, never retried. A delivery record is written when
    the channel options ask for one on the outcome that happened.
    """

    def __init__(self, notifiers: Iterable[Any] = (), message_store=None) -> None:
        self.notifiers: Dict[str, Any] = {}
        self.message_store = message_store
        for notifier in notifiers:
            self.register(notifier)

    def register(self, notifier: Any) -> None:
        self.notifiers[notifier.name] = notifier

    def invoke(self, message: Message, options: Optional[ChannelOptions], channel: str) -> bool:
        options = options or ChannelOptions()
        notifier = self.notifiers.get(channel)
        if notifier is None:
            LOGGER.warning("No notifier registered for channel '%s'", channel)
            delivered = False
        else:
            try:
                delivered = bool(notifier.deliver(message))
            except Exception:
                LOGGER.exception("Notifier '%s' failed for user %s", channel, message.user_id)
                delivered = False

        if not delivered:
            LOGGER.info("Notification '%s' was not delivered to %s via %s", message.subject, message.user_id, channel)

        wants_record = options.save_on_success if delivered else options.save_on_failure
        if wants_record and self.message_store is not None:
            self.message_store.save_delivery_record(message, channel, delivered)
        return delivered
