from __future__ import annotations
import logging
from typing import Any, Dict

import httpx

from .config import (
    APP_URL, MAIL_FROM, RESEND_API_KEY, TERMII_API_KEY, TERMII_SENDER_ID,
)
from .errors import GatewayError
from .helpers import from_kobo

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
TERMII_URL = "https://api.ng.termii.com/api/sms/send"


async def send_email(http: httpx.AsyncClient, to: str, subject: str,
                     text: str) -> bool:
    if not RESEND_API_KEY:
        logger.info("mail (not sent, no provider) to=%s subject=%r\n%s",
                    to, subject, text)
        return False
    try:
        resp = await http.post(
            RESEND_URL,
            json={"from": MAIL_FROM, "to": [to], "subject": subject,
                  "text": text},
            headers={"Authorization": f"Bearer {RESEND_API_KEY}"},
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("mail to %s failed: %s", to, e)
        raise GatewayError("Failed to send email") from e
    return True


async def send_sms(http: httpx.AsyncClient, phone: str, text: str) -> bool:
    if not TERMII_API_KEY:
        raise GatewayError("SMS service not configured")
    try:
        resp = await http.post(TERMII_URL, json={
            "api_key": TERMII_API_KEY,
            "to": phone,
            "from": TERMII_SENDER_ID,
            "sms": text,
            "type": "plain",
            "channel": "generic",
        })
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("sms to %s failed: %s", phone, e)
        raise GatewayError("Failed to send SMS") from e
    return True


# ----------------------------
# Messages
# ----------------------------
def otp_text(code: str, minutes: int) -> str:
    return (f"Your StagePass verification code is {code}. "
            f"It expires in {minutes} minutes.")


def vote_confirmation(purchase: Dict[str, Any]) -> str:
    lines = [
        "Thanks for voting on StagePass!",
        "",
        f"Reference: {purchase['reference']}",
        f"Votes: {purchase['total_votes']}",
        f"Amount: {purchase['currency']} "
        f"{from_kobo(purchase['total_amount']):,.2f}",
        "",
    ]
    for item in purchase["items"]:
        lines.append(f"  {item['total_votes']} votes for "
                     f"{item['artist_name']}")
    lines += ["", f"Leaderboard: {APP_URL}/leaderboard"]
    return "\n".join(lines)


def booking_confirmation(booking: Dict[str, Any]) -> str:
    event = booking.get("event") or {}
    lines = [
        f"Hi {booking['full_name']},",
        "",
        f"Your booking for {event.get('title', 'your event')} is confirmed.",
        f"Booking reference: {booking['booking_reference']}",
        f"Amount: {booking['currency']} "
        f"{from_kobo(booking['total_amount']):,.2f}",
        "",
    ]
    for item in booking["items"]:
        lines.append(f"  {item['quantity']} x {item['ticket_type']}")
    return "\n".join(lines)


def contact_notification(msg: Dict[str, Any]) -> str:
    return "\n".join([
        f"New message from {msg['name']} <{msg['email']}>",
        f"Subject: {msg['subject']}",
        "",
        msg["message"],
    ])


def contact_auto_reply(name: str, subject: str) -> str:
    return (f"Hi {name},\n\n"
            f"Thanks for reaching out about \"{subject}\". "
            "We read every message and will get back to you soon.\n\n"
            "The StagePass team")


async def notify_quietly(http: httpx.AsyncClient, to: str, subject: str,
                         text: str) -> None:
    """Best-effort mail; never fails the caller."""
    try:
        await send_email(http, to, subject, text)
    except GatewayError as e:
        logger.warning("mail to %s not delivered: %s", to, e)
