"""Outbound notifications: email always, WhatsApp/Viber (Infobip) when configured.

Dispatch is fire-and-forget from the settlement code's point of view: it runs
after the state change is committed, and ``notify`` logs failures instead of
raising them.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

import httpx
import pytz

from groupbooking.config import settings
from groupbooking.database import as_utc
from groupbooking.services.fees import format_cents

logger = logging.getLogger(__name__)


class Channel:
    email = "email"
    whatsapp = "whatsapp"
    viber = "viber"


@dataclass(frozen=True)
class Message:
    kind: str
    channel: str
    to: str
    subject: str
    body: str
    # WhatsApp templates take positional placeholders instead of free text.
    template_params: tuple[str, ...] = field(default=())


class NotificationDispatcher(ABC):
    @abstractmethod
    def send(self, message: Message) -> None: ...


class HttpNotificationDispatcher(NotificationDispatcher):
    """Sends email through an HTTP email API and chat messages through Infobip."""

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(timeout=settings.NOTIFY_TIMEOUT_SECONDS)

    def send(self, message: Message) -> None:
        if message.channel == Channel.email:
            self._send_email(message)
        elif message.channel in (Channel.whatsapp, Channel.viber):
            self._send_infobip(message)
        else:
            raise ValueError(f"Unknown channel: {message.channel}")

    def _send_email(self, message: Message) -> None:
        resp = self._client.post(
            settings.EMAIL_API_URL,
            headers={"Authorization": f"Bearer {settings.EMAIL_API_KEY}"},
            json={
                "from": settings.EMAIL_FROM,
                "to": message.to,
                "subject": message.subject,
                "text": message.body,
            },
        )
        resp.raise_for_status()

    def _send_infobip(self, message: Message) -> None:
        if not settings.INFOBIP_API_KEY or not settings.INFOBIP_BASE_URL:
            logger.info("Infobip not configured, skipping %s to %s", message.channel, message.to)
            return
        headers = {
            "Authorization": f"App {settings.INFOBIP_API_KEY}",
            "Accept": "application/json",
        }
        if message.channel == Channel.viber:
            url = f"{settings.INFOBIP_BASE_URL}/viber/2/message"
            payload = {"messages": [{
                "sender": settings.INFOBIP_VIBER_SENDER,
                "destinations": [{"to": message.to}],
                "viber": {"text": message.body, "validityPeriod": 86400},
            }]}
        else:
            url = f"{settings.INFOBIP_BASE_URL}/whatsapp/1/message/template"
            payload = {"messages": [{
                "from": settings.INFOBIP_WA_SENDER,
                "to": message.to,
                "content": {
                    "templateName": settings.INFOBIP_WA_TEMPLATE,
                    "templateData": {"body": {"placeholders": list(message.template_params)}},
                    "language": "hr",
                },
            }]}
        resp = self._client.post(url, headers=headers, json=payload)
        resp.raise_for_status()


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency; overridden in tests."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = HttpNotificationDispatcher()
    return _dispatcher


def notify(dispatcher: NotificationDispatcher, messages: Iterable[Message]) -> int:
    """Send each message, logging failures. Returns the number sent."""
    sent = 0
    for message in messages:
        try:
            dispatcher.send(message)
            sent += 1
        except Exception:
            logger.exception("Notification %s via %s to %s failed", message.kind, message.channel, message.to)
    return sent


# ── Formatting helpers ─────────────────────────────────────────────

def normalize_phone(phone: str, country_code: str = "385") -> str:
    """Normalize a local or international number to digits-only international form."""
    digits = re.sub(r"[\s\-().]", "", phone)
    digits = re.sub(r"^\+", "", digits)
    digits = re.sub(r"^00", "", digits)
    return re.sub(r"^0", country_code, digits)


def format_event_date(value) -> str:
    tz = pytz.timezone(settings.DISPLAY_TIMEZONE)
    return as_utc(value).astimezone(tz).strftime("%A, %d %B %Y %H:%M")


def event_url(event) -> str:
    return f"{settings.BASE_URL}/t/{event.slug}"


def cancel_url(event, payment) -> str:
    return f"{event_url(event)}/cancel?token={payment.cancel_token}"


# ── Message builders ───────────────────────────────────────────────

def payment_confirmed(payment, event) -> list[Message]:
    body = (
        f"Hi {payment.guest_name},\n\n"
        f"your spot for \"{event.name}\" on {format_event_date(event.starts_at)} is reserved.\n"
        f"Amount held: {format_cents(payment.total_cents, settings.CURRENCY)}. "
        f"It is only charged if the booking goes ahead.\n\n"
        f"Changed your mind? Cancel here: {cancel_url(event, payment)}\n"
    )
    return [Message("payment_confirmed", Channel.email, payment.guest_email,
                    f"Booking confirmed: {event.name}", body)]


def payment_cancelled(payment, event) -> list[Message]:
    body = (
        f"Hi {payment.guest_name},\n\n"
        f"your payment for \"{event.name}\" on {format_event_date(event.starts_at)} was cancelled "
        f"and the hold of {format_cents(payment.total_cents, settings.CURRENCY)} released.\n"
    )
    return [Message("payment_cancelled", Channel.email, payment.guest_email,
                    f"Payment cancelled: {event.name}", body)]


def self_cancel_confirmed(payment, event) -> list[Message]:
    body = (
        f"Hi {payment.guest_name},\n\n"
        f"you have been removed from \"{event.name}\" on {format_event_date(event.starts_at)}. "
        f"{format_cents(payment.total_cents, settings.CURRENCY)} will be returned to your card.\n"
    )
    return [Message("self_cancel_confirmed", Channel.email, payment.guest_email,
                    f"Cancellation confirmed: {event.name}", body)]


def spot_available(entry, event) -> list[Message]:
    date = format_event_date(event.starts_at)
    amount = format_cents(event.total_cents, settings.CURRENCY)
    url = event_url(event)
    text = (
        f"Hi {entry.guest_name}! A spot opened up on \"{event.name}\" ({date}).\n\n"
        f"Price: {amount}\n\nBook here: {url}"
    )
    messages = [Message("spot_available", Channel.email, entry.guest_email,
                        f"A spot opened up: {event.name}", text)]
    if entry.phone:
        phone = normalize_phone(entry.phone)
        if entry.notify_viber:
            messages.append(Message("spot_available", Channel.viber, phone, "", text))
        if entry.notify_whatsapp:
            messages.append(Message("spot_available", Channel.whatsapp, phone, "", text,
                                    template_params=(entry.guest_name, event.name, date, url)))
    return messages


def event_full(event, participant_count: int, owner_total_cents: int) -> list[Message]:
    owner = event.owner
    body = (
        f"Hi {owner.name},\n\n"
        f"\"{event.name}\" on {format_event_date(event.starts_at)} is full: "
        f"{participant_count} participants, {format_cents(owner_total_cents, settings.CURRENCY)} "
        f"for you.\n\n{event_url(event)}\n"
    )
    return [Message("event_full", Channel.email, owner.email, f"\"{event.name}\" is full!", body)]
