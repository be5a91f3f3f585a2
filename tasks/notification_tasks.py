"""
tasks/notification_tasks.py
Celery tasks delivering booking notifications by email (Resend) and SMS (Twilio).

Payloads are plain dicts built by the booking state machine, so tasks
never touch the database. A failing channel is logged and never raised:
the booking transition has already happened.

Usage (via services/notification/dispatcher.py):
    booking_requested_to_coach.apply_async(kwargs={"payload": {...}}, retry=False)
"""

import html
import logging
from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from config.settings import settings
from services.notification.dispatcher import NotificationEvent
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Formatting ─────────────────────────────────────────────────────────────────

def format_slot_time(iso: str, tz_name: Optional[str] = None) -> str:
    """'Monday, Mar 2, 2026, 9:00 AM' in the notification timezone. Falls back to the raw string."""
    try:
        dt = datetime.fromisoformat(iso)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        local = dt.astimezone(ZoneInfo(tz_name or settings.NOTIFICATION_TIMEZONE))
    except (ValueError, KeyError) as e:
        logger.warning(f"Could not format slot time {iso!r}: {e}")
        return iso
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{local:%A}, {local:%b} {local.day}, {local.year}, {hour}:{local:%M} {meridiem}"


def _slot_range(payload: dict) -> str:
    return f"{format_slot_time(payload['slot_start'])} to {format_slot_time(payload['slot_end'])}"


def _text(lines: List[Optional[str]]) -> str:
    return "\n".join(line for line in lines if line is not None)


def _html_email(paragraphs: List[str], cta_label: Optional[str] = None) -> str:
    """Branded wrapper. Paragraphs must already be escaped."""
    body = "\n".join(f'<p style="margin: 0 0 16px;">{p}</p>' for p in paragraphs)
    cta = ""
    if settings.my_bookings_url and cta_label:
        cta = (
            '<p style="margin: 28px 0 0; text-align: center;">'
            f'<a href="{html.escape(settings.my_bookings_url)}" '
            'style="display: inline-block; padding: 12px 24px; background: #0f766e; '
            'color: #ffffff; text-decoration: none; font-weight: 600; border-radius: 8px;">'
            f"{html.escape(cta_label)}</a></p>"
        )
    return f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{html.escape(settings.EMAIL_FROM_NAME)}</title></head>
<body style="margin: 0; padding: 32px 16px; font-family: Arial, sans-serif; font-size: 16px; line-height: 1.6; color: #334155; background: #f1f5f9;">
  <div style="max-width: 560px; margin: 0 auto; background: #ffffff; border-radius: 12px; overflow: hidden;">
    <div style="padding: 24px 32px; background: #0f766e;">
      <h1 style="margin: 0; font-size: 24px; color: #ffffff;">{html.escape(settings.EMAIL_FROM_NAME)}</h1>
    </div>
    <div style="padding: 28px 32px 32px;">
{body}{cta}
    </div>
    <div style="padding: 20px 32px; background: #f8fafc; font-size: 13px; color: #64748b;">
      You're receiving this because you have an {html.escape(settings.EMAIL_FROM_NAME)} account.
    </div>
  </div>
</body>
</html>"""


def _bookings_link() -> Optional[str]:
    return f"My Bookings: {settings.my_bookings_url}" if settings.my_bookings_url else None


# ── Templates ──────────────────────────────────────────────────────────────────

def render_booking_requested_to_coach(payload: dict) -> dict:
    athlete = (payload.get("athlete_name") or "").strip() or "An athlete"
    message = (payload.get("message") or "").strip()
    slot = _slot_range(payload)
    paragraphs = [
        f"{html.escape(athlete)} requested a booking with you.",
        f"<strong>Time:</strong> {html.escape(slot)}",
    ]
    if message:
        paragraphs.append(f"<strong>Message:</strong> {html.escape(message)}")
    paragraphs.append("Log in to accept or decline.")
    return {
        "subject": f"New booking request from {athlete}",
        "text": _text([
            f"{athlete} requested a booking with you.",
            "",
            f"Time: {slot}",
            f"Message: {message}" if message else None,
            "",
            "Log in to accept or decline.",
            _bookings_link(),
        ]),
        "html": _html_email(paragraphs, "View My Bookings"),
        "sms": (
            f"{settings.EMAIL_FROM_NAME}: {athlete} requested a booking for "
            f"{format_slot_time(payload['slot_start'])}. Log in to accept or decline."
        ),
    }


def render_booking_request_submitted_to_athlete(payload: dict) -> dict:
    name = (payload.get("athlete_name") or "").strip()
    coach = (payload.get("coach_display_name") or "").strip() or "your coach"
    slot = _slot_range(payload)
    greeting = f"Hi {name}," if name else "Hi,"
    return {
        "subject": "Booking request sent - we'll notify you when they respond",
        "text": _text([
            greeting,
            "",
            f"Your booking request has been sent to {coach}.",
            "",
            f"Requested time: {slot}",
            "",
            "We'll email you when they accept or decline.",
            _bookings_link(),
        ]),
        "html": _html_email(
            [
                html.escape(greeting),
                f"Your booking request has been sent to {html.escape(coach)}.",
                f"<strong>Requested time:</strong> {html.escape(slot)}",
                "We'll email you when they accept or decline.",
            ],
            "My Bookings",
        ),
    }


_STATUS_COPY = {
    "confirmed": (
        "Booking confirmed with {coach}",
        "{coach} accepted your booking.",
        "See you then!",
    ),
    "cancelled": (
        "Booking cancelled - {coach}",
        "{coach} declined or cancelled your booking.",
        "Log in to book another time.",
    ),
    "completed": (
        "Session completed with {coach}",
        "Your session with {coach} is marked complete.",
        "Thank you for booking with us! Consider leaving a review.",
    ),
}


def render_booking_status_changed_to_athlete(payload: dict) -> Optional[dict]:
    copy = _STATUS_COPY.get(payload.get("status"))
    if copy is None:
        return None
    coach = (payload.get("coach_display_name") or "").strip() or "Your coach"
    subject, lead, closing = copy
    slot = _slot_range(payload)
    return {
        "subject": subject.format(coach=coach),
        "text": _text([
            lead.format(coach=coach),
            "",
            f"Time: {slot}",
            "",
            closing,
            _bookings_link(),
        ]),
        "html": _html_email(
            [
                html.escape(lead.format(coach=coach)),
                f"<strong>Time:</strong> {html.escape(slot)}",
                html.escape(closing),
            ],
            "My Bookings",
        ),
    }


# ── Core Delivery Functions ────────────────────────────────────────────────────

def normalize_phone(phone: str) -> str:
    """E.164. Bare 10-digit numbers are taken as North American."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    if phone.strip().startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def _send_email(to_email: str, subject: str, text_body: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    if not settings.RESEND_API_KEY:
        logger.info(f"Email to {to_email} skipped: RESEND_API_KEY not set")
        return False
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": [to_email],
            "subject": subject,
            "text": text_body,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


def _send_sms(phone: str, body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER):
        logger.info("SMS skipped: Twilio not configured")
        return False
    try:
        from twilio.rest import Client
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(
            body=body,
            from_=settings.TWILIO_FROM_NUMBER,
            to=normalize_phone(phone),
        )
        return True
    except Exception as e:
        logger.warning(f"SMS send failed: {e}")
        return False


def _deliver_email(to_email: Optional[str], rendered: dict) -> bool:
    if not to_email:
        return False
    return _send_email(to_email, rendered["subject"], rendered["text"], rendered["html"])


# ── Booking Notification Tasks ─────────────────────────────────────────────────

@celery_app.task(name="tasks.notification_tasks.booking_requested_to_coach")
def booking_requested_to_coach(payload: dict) -> dict:
    """Email the coach about a new request, plus an SMS when a phone number is on file."""
    rendered = render_booking_requested_to_coach(payload)
    emailed = _deliver_email(payload.get("coach_email"), rendered)
    texted = False
    phone = (payload.get("coach_phone") or "").strip()
    if settings.SEND_SMS and phone:
        texted = _send_sms(phone, rendered["sms"])
    return {"email": emailed, "sms": texted}


@celery_app.task(name="tasks.notification_tasks.booking_request_submitted_to_athlete")
def booking_request_submitted_to_athlete(payload: dict) -> dict:
    rendered = render_booking_request_submitted_to_athlete(payload)
    return {"email": _deliver_email(payload.get("athlete_email"), rendered)}


@celery_app.task(name="tasks.notification_tasks.booking_status_changed_to_athlete")
def booking_status_changed_to_athlete(payload: dict) -> dict:
    rendered = render_booking_status_changed_to_athlete(payload)
    if rendered is None:
        logger.info(f"No athlete notification for status {payload.get('status')!r}")
        return {"email": False}
    return {"email": _deliver_email(payload.get("athlete_email"), rendered)}


TASKS_BY_EVENT = {
    NotificationEvent.BOOKING_REQUESTED_TO_COACH: booking_requested_to_coach,
    NotificationEvent.BOOKING_REQUEST_SUBMITTED_TO_ATHLETE: booking_request_submitted_to_athlete,
    NotificationEvent.BOOKING_STATUS_CHANGED_TO_ATHLETE: booking_status_changed_to_athlete,
}
