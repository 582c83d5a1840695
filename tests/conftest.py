import pytest

from changefeed import LocalChangeFeed
from notifications import NotificationDispatcher
from services import QueueService
from store import TicketStore


class FakeSMS:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send_sms(self, to_number, message):
        self.sent.append((to_number, message))
        return to_number not in self.fail_for


class FakeEmail:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send_email(self, to, subject, html_body):
        self.sent.append((to, subject, html_body))
        return to not in self.fail_for


class RecordingScheduler:
    def __init__(self):
        self.scheduled = []

    def schedule(self, ticket_id, delay_ms):
        self.scheduled.append((ticket_id, delay_ms))


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def store(feed):
    s = TicketStore.from_url("sqlite://", feed=feed)
    s.create_tables()
    return s


@pytest.fixture
def sms():
    return FakeSMS()


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def dispatcher(sms, email):
    return NotificationDispatcher(sms, email, business_name="Test Queue")


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def service(store, dispatcher, scheduler):
    return QueueService(store, dispatcher, scheduler=scheduler, completion_delay_ms=1000)


@pytest.fixture
def abc(service):
    """Three registered customers, in arrival order."""
    a = service.register("Alice", "(555) 111-0001", "alice@example.com")
    b = service.register("Bob", "555-111-0002", "bob@example.com")
    c = service.register("Carol", "+445551110003", "carol@example.com")
    return a, b, c
