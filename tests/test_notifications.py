from unittest import mock

import pytest
import requests
from twilio.base.exceptions import TwilioException

from config import Settings
from models import Ticket
from notifications import (
    CustomerAtPositionThree,
    CustomerCalled,
    CustomerNowNext,
    NotificationDispatcher,
    ResendEmailTransport,
    TwilioSMSTransport,
    format_phone_number,
    mask_phone,
    next_in_line_email,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+44 20 7946 0958", "+44 20 7946 0958"),
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("1-555-123-4567", "+15551234567"),
        ("555-1234", "+5551234"),
        ("", "+"),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_format_phone_number_uses_configured_country_code():
    assert format_phone_number("20 7946 0958", country_code="44") == "+442079460958"


def test_mask_phone():
    assert mask_phone("+15551234567") == "***4567"
    assert mask_phone(None) == "N/A"


def test_email_templates_escape_names():
    subject, body = next_in_line_email("<script>", 12, "Test Queue")
    assert subject == "You're Next! - Ticket #12"
    assert "&lt;script&gt;" in body
    assert "<script>" not in body
    assert "#12" in body


def ticket(number=7, **kwargs):
    fields = {"name": "Alice", "phone_number": "5551230007", "email": "alice@example.com"}
    fields.update(kwargs)
    return Ticket(ticket_number=number, **fields)


def test_customer_called_sends_sms_only(dispatcher, sms, email):
    results = dispatcher.dispatch(CustomerCalled(ticket()))
    assert sms.sent == [
        (
            "+15551230007",
            "Hi Alice! It's your turn now. Your ticket number is #7. "
            "Please proceed to the consultation area. - Test Queue",
        )
    ]
    assert email.sent == []
    assert [(r.channel, r.ok) for r in results] == [("sms", True)]


def test_customer_now_next_sends_sms_and_email(dispatcher, sms, email):
    results = dispatcher.dispatch(CustomerNowNext(ticket()))
    assert sms.sent[0][1] == "Hi Alice! You're next in line. Your ticket number is #7. Please be ready. - Test Queue"
    assert email.sent[0][:2] == ("alice@example.com", "You're Next! - Ticket #7")
    assert [r.channel for r in results] == ["sms", "email"]


def test_position_three_sends_email_only(dispatcher, sms, email):
    dispatcher.dispatch(CustomerAtPositionThree(ticket()))
    assert sms.sent == []
    assert email.sent[0][:2] == ("alice@example.com", "You're 3rd in Line - Ticket #7")


def test_email_attempted_even_if_sms_fails(email):
    from conftest import FakeSMS

    dispatcher = NotificationDispatcher(FakeSMS(fail_for={"+15551230007"}), email)
    results = dispatcher.dispatch(CustomerNowNext(ticket()))
    assert [(r.channel, r.ok) for r in results] == [("sms", False), ("email", True)]


def test_transport_exception_reported_as_failure(email):
    class RaisingSMS:
        def send_sms(self, to_number, message):
            raise RuntimeError("boom")

    dispatcher = NotificationDispatcher(RaisingSMS(), email)
    results = dispatcher.dispatch(CustomerNowNext(ticket()))
    assert [(r.channel, r.ok) for r in results] == [("sms", False), ("email", True)]


def test_missing_contact_details_fail_without_transport_call(dispatcher, sms, email):
    results = dispatcher.dispatch(CustomerNowNext(ticket(phone_number="", email="")))
    assert sms.sent == [] and email.sent == []
    assert [r.ok for r in results] == [False, False]


def test_unknown_event_rejected(dispatcher):
    with pytest.raises(TypeError):
        dispatcher.dispatch(object())


# ===== TWILIO =====

TWILIO_SETTINGS = Settings(
    twilio_account_sid="AC123",
    twilio_auth_token="secret",
    twilio_phone_number="+15550000000",
)


def test_twilio_without_credentials_fails_send():
    with mock.patch("notifications.Client") as client_cls:
        transport = TwilioSMSTransport(Settings())
        assert transport.send_sms("+15551230007", "hello") is False
        client_cls.assert_not_called()


def test_twilio_send_success():
    with mock.patch("notifications.Client") as client_cls:
        client_cls.return_value.messages.create.return_value.sid = "SM1"
        transport = TwilioSMSTransport(TWILIO_SETTINGS)
        assert transport.send_sms("+15551230007", "hello") is True
        client_cls.assert_called_once_with("AC123", "secret")
        client_cls.return_value.messages.create.assert_called_once_with(
            body="hello", from_="+15550000000", to="+15551230007"
        )


def test_twilio_send_error_returns_false():
    with mock.patch("notifications.Client") as client_cls:
        client_cls.return_value.messages.create.side_effect = TwilioException("invalid number")
        transport = TwilioSMSTransport(TWILIO_SETTINGS)
        assert transport.send_sms("+1", "hello") is False


# ===== EMAIL =====

def test_email_without_configuration_fails_send():
    with mock.patch("notifications.requests.post") as post:
        assert ResendEmailTransport(Settings()).send_email("a@example.com", "s", "<p>x</p>") is False
        post.assert_not_called()


def test_resend_send_success():
    settings = Settings(resend_api_key="re_123", email_from="Queue <q@example.com>")
    with mock.patch("notifications.requests.post") as post:
        post.return_value.status_code = 200
        assert ResendEmailTransport(settings).send_email("a@example.com", "Subject", "<p>x</p>") is True
        args, kwargs = post.call_args
        assert args[0] == "https://api.resend.com/emails"
        assert kwargs["json"] == {
            "from": "Queue <q@example.com>",
            "to": ["a@example.com"],
            "subject": "Subject",
            "html": "<p>x</p>",
        }
        assert kwargs["headers"]["Authorization"] == "Bearer re_123"


def test_resend_http_error_returns_false():
    with mock.patch("notifications.requests.post") as post:
        post.return_value.status_code = 422
        post.return_value.text = "invalid to"
        assert ResendEmailTransport(Settings(resend_api_key="re_123")).send_email("bad", "s", "b") is False


def test_resend_network_error_returns_false():
    with mock.patch("notifications.requests.post", side_effect=requests.ConnectionError("down")):
        assert ResendEmailTransport(Settings(resend_api_key="re_123")).send_email("a@example.com", "s", "b") is False


def test_smtp_fallback():
    settings = Settings(smtp_host="mail.local", smtp_port=1025, smtp_username="user", smtp_password="pw")
    with mock.patch("notifications.smtplib.SMTP") as smtp_cls:
        smtp = smtp_cls.return_value.__enter__.return_value
        assert ResendEmailTransport(settings).send_email("a@example.com", "Subject", "<p>x</p>") is True
        smtp_cls.assert_called_once_with("mail.local", 1025, timeout=20)
        smtp.login.assert_called_once_with("user", "pw")
        sent = smtp.send_message.call_args[0][0]
        assert sent["To"] == "a@example.com"
        assert sent["Subject"] == "Subject"


def test_smtp_error_returns_false():
    with mock.patch("notifications.smtplib.SMTP", side_effect=OSError("refused")):
        assert ResendEmailTransport(Settings(smtp_host="mail.local")).send_email("a@example.com", "s", "b") is False
