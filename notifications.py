"""Customer notifications for queue transitions.

The queue engine hands events to ``NotificationDispatcher``; the
dispatcher decides who is told what over which channel and calls the SMS
and email transports.  Transports report success as a boolean and never
raise, so one failed channel cannot stop the next one or the queue itself.
"""

from __future__ import annotations

import html
import logging
import re
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional

import requests
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from config import Settings
from models import Ticket

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


def mask_phone(phone: Optional[str]) -> str:
    """Last 4 digits for privacy in logs."""
    if not phone:
        return "N/A"
    return f"***{phone[-4:]}"


def format_phone_number(phone_number: str, country_code: str = "1") -> str:
    """Best-effort conversion to E.164.

    Not a validator: whatever comes out is handed to the SMS provider, and
    a rejected number surfaces there as a failed delivery.
    """
    if phone_number.startswith("+"):
        return phone_number
    digits = re.sub(r"\D", "", phone_number)
    if len(digits) == 10:
        return f"+{country_code}{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


# ===== MESSAGE TEMPLATES =====

def turn_sms(name: str, ticket_number: int, business: str) -> str:
    return (
        f"Hi {name}! It's your turn now. Your ticket number is #{ticket_number}. "
        f"Please proceed to the consultation area. - {business}"
    )


def next_sms(name: str, ticket_number: int, business: str) -> str:
    return f"Hi {name}! You're next in line. Your ticket number is #{ticket_number}. Please be ready. - {business}"


_EMAIL_LAYOUT = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <style>
      body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
      .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
      .header {{ background-color: #1f2937; color: white; padding: 20px; text-align: center; border-radius: 8px 8px 0 0; }}
      .content {{ background-color: {background}; padding: 30px; border-radius: 0 0 8px 8px; }}
      .ticket-number {{ font-size: 48px; font-weight: bold; color: {accent}; text-align: center; margin: 20px 0; }}
      .message {{ font-size: 16px; margin: 20px 0; }}
      .footer {{ text-align: center; margin-top: 20px; color: #6b7280; font-size: 14px; }}
    </style>
  </head>
  <body>
    <div class="container">
      <div class="header"><h1>{business}</h1></div>
      <div class="content">
        <p class="message">Hi {name},</p>
        {body}
      </div>
      <div class="footer"><p>{business}</p></div>
    </div>
  </body>
</html>
"""


def next_in_line_email(name: str, ticket_number: int, business: str):
    """Return (subject, html) for the customer who is now first in line."""
    subject = f"You're Next! - Ticket #{ticket_number}"
    body = (
        "<p class=\"message\"><strong>You're next in line!</strong></p>\n"
        f"        <div class=\"ticket-number\">#{ticket_number}</div>\n"
        "        <p class=\"message\">Please be ready to proceed to the consultation area. "
        "Your session will begin shortly.</p>\n"
        "        <p class=\"message\">Thank you for waiting!</p>"
    )
    return subject, _EMAIL_LAYOUT.format(
        background="#f0fdf4",
        accent="#16a34a",
        business=html.escape(business),
        name=html.escape(name),
        body=body,
    )


def position_three_email(name: str, ticket_number: int, business: str):
    """Return (subject, html) for the customer who is now third in line."""
    subject = f"You're 3rd in Line - Ticket #{ticket_number}"
    body = (
        "<p class=\"message\">Great news! You're getting close. "
        "You are currently <strong>3rd in line</strong>.</p>\n"
        f"        <div class=\"ticket-number\">#{ticket_number}</div>\n"
        "        <p class=\"message\">Please be ready. You'll receive another notification "
        "when you're next in line.</p>\n"
        "        <p class=\"message\">Thank you for your patience!</p>"
    )
    return subject, _EMAIL_LAYOUT.format(
        background="#f9fafb",
        accent="#1f2937",
        business=html.escape(business),
        name=html.escape(name),
        body=body,
    )


# ===== TRANSPORTS =====

class TwilioSMSTransport:
    """Send SMS through Twilio.  Missing credentials make every send fail."""

    def __init__(self, settings: Settings):
        self.from_number = settings.twilio_phone_number
        self.client = None
        if settings.sms_configured:
            self.client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        else:
            logger.warning("Twilio credentials not configured - SMS will not be sent")

    def send_sms(self, to_number: str, message: str) -> bool:
        if not self.client:
            logger.error(f"SMS to {mask_phone(to_number)} not sent: Twilio is not configured")
            return False
        try:
            message_obj = self.client.messages.create(body=message, from_=self.from_number, to=to_number)
        except TwilioException as e:
            logger.error(f"Failed to send SMS to {mask_phone(to_number)}: {e}")
            return False
        except requests.RequestException as e:
            logger.error(f"Network error sending SMS to {mask_phone(to_number)}: {e}")
            return False
        logger.info(f"SMS sent to {mask_phone(to_number)}: {message_obj.sid}")
        return True


class ResendEmailTransport:
    """Send HTML email through the Resend API, or plain SMTP when no API key is set."""

    def __init__(self, settings: Settings, timeout: float = 20):
        self.api_key = settings.resend_api_key
        self.email_from = settings.email_from
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.smtp_username
        self.smtp_password = settings.smtp_password
        self.timeout = timeout

    def send_email(self, to: str, subject: str, html_body: str) -> bool:
        if self.api_key:
            return self._send_via_resend(to, subject, html_body)
        if self.smtp_host:
            return self._send_via_smtp(to, subject, html_body)
        logger.error(f"Email to {to} not sent: no Resend API key or SMTP host configured")
        return False

    def _send_via_resend(self, to: str, subject: str, html_body: str) -> bool:
        payload = {"from": self.email_from, "to": [to], "subject": subject, "html": html_body}
        try:
            r = requests.post(
                RESEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Error sending email to {to}: {e}")
            return False
        if r.status_code >= 400:
            logger.error(f"Resend error {r.status_code} for {to}: {r.text}")
            return False
        logger.info(f"Email sent to {to}: {subject}")
        return True

    def _send_via_smtp(self, to: str, subject: str, html_body: str) -> bool:
        msg = EmailMessage()
        msg["From"] = self.email_from
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(html_body, subtype="html")
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
                if self.smtp_username:
                    smtp.login(self.smtp_username, self.smtp_password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending email to {to}: {e}")
            return False
        logger.info(f"Email sent to {to} via SMTP: {subject}")
        return True


# ===== QUEUE EVENTS =====

@dataclass(frozen=True)
class CustomerCalled:
    ticket: Ticket


@dataclass(frozen=True)
class CustomerNowNext:
    ticket: Ticket


@dataclass(frozen=True)
class CustomerAtPositionThree:
    ticket: Ticket


@dataclass(frozen=True)
class DeliveryResult:
    event: str
    channel: str  # sms or email
    ticket_number: int
    recipient: str
    ok: bool


class NotificationDispatcher:
    """Turn queue events into SMS/email sends.

    ============================  ===========  ==========================
    Event                         Channels     Message
    ============================  ===========  ==========================
    ``CustomerCalled``            sms          your turn
    ``CustomerNowNext``           sms, email   you're next
    ``CustomerAtPositionThree``   email        3rd in line heads-up
    ============================  ===========  ==========================
    """

    def __init__(self, sms, email, business_name: str = "MT2.0 Queuing System", country_code: str = "1"):
        self.sms = sms
        self.email = email
        self.business_name = business_name
        self.country_code = country_code

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationDispatcher":
        return cls(
            TwilioSMSTransport(settings),
            ResendEmailTransport(settings),
            business_name=settings.business_name,
            country_code=settings.default_country_code,
        )

    def dispatch(self, event) -> List[DeliveryResult]:
        ticket = event.ticket
        name = type(event).__name__
        if isinstance(event, CustomerCalled):
            return [self._sms(name, ticket, turn_sms(ticket.name, ticket.ticket_number, self.business_name))]
        if isinstance(event, CustomerNowNext):
            subject, body = next_in_line_email(ticket.name, ticket.ticket_number, self.business_name)
            return [
                self._sms(name, ticket, next_sms(ticket.name, ticket.ticket_number, self.business_name)),
                self._email(name, ticket, subject, body),
            ]
        if isinstance(event, CustomerAtPositionThree):
            subject, body = position_three_email(ticket.name, ticket.ticket_number, self.business_name)
            return [self._email(name, ticket, subject, body)]
        raise TypeError(f"Unknown queue event: {event!r}")

    def _sms(self, event_name: str, ticket: Ticket, message: str) -> DeliveryResult:
        ok = False
        recipient = ""
        if not ticket.phone_number:
            logger.warning(f"{event_name}: ticket #{ticket.ticket_number} has no phone number")
        else:
            recipient = format_phone_number(ticket.phone_number, self.country_code)
            try:
                ok = bool(self.sms.send_sms(recipient, message))
            except Exception as e:
                logger.error(f"{event_name}: SMS transport raised for #{ticket.ticket_number}: {e}")
            if not ok:
                logger.error(f"{event_name}: failed to send SMS to ticket #{ticket.ticket_number}")
        return DeliveryResult(event_name, "sms", ticket.ticket_number, recipient, ok)

    def _email(self, event_name: str, ticket: Ticket, subject: str, body: str) -> DeliveryResult:
        ok = False
        if not ticket.email:
            logger.warning(f"{event_name}: ticket #{ticket.ticket_number} has no email address")
        else:
            try:
                ok = bool(self.email.send_email(ticket.email, subject, body))
            except Exception as e:
                logger.error(f"{event_name}: email transport raised for #{ticket.ticket_number}: {e}")
            if not ok:
                logger.error(f"{event_name}: failed to send email to ticket #{ticket.ticket_number}")
        return DeliveryResult(event_name, "email", ticket.ticket_number, ticket.email, ok)
