"""
Shared test fixtures for Inbox Map tests
"""

import pytest
from typing import Dict, List, Optional, Set
from googleapiclient.errors import HttpError

from inboxmap.gmail_service import GmailSession
from inboxmap.models import FetchConfig, MessageRecord, StoreConfig
from inboxmap.storage import RecordStore


# === Mock Gmail API Service ===

class MockHttpResponse:
    """Mock HTTP response for HttpError"""
    def __init__(self, status: int, reason: str = 'Error'):
        self.status = status
        self.reason = reason


def http_error(status: int) -> HttpError:
    return HttpError(resp=MockHttpResponse(status), content=b'{}')


class MockExecute:
    """Mock for the .execute() call that returns stored data or raises queued errors"""
    def __init__(self, data, errors: Optional[List[int]] = None, calls: Optional[List] = None):
        self._data = data
        self._errors = errors
        self._calls = calls

    def execute(self, http=None):
        if self._calls is not None:
            self._calls.append(self._data)
        if self._errors:
            raise http_error(self._errors.pop(0))
        return self._data


class MockMessages:
    """Mock for users().messages()"""
    def __init__(self, inbox: 'MockGmailService'):
        self._inbox = inbox

    def list(self, userId: str, maxResults: int = 100, labelIds: List[str] = None, pageToken: Optional[str] = None):
        messages = self._inbox.messages
        start_idx = int(pageToken) if pageToken else 0
        end_idx = min(start_idx + maxResults, len(messages))

        # Only include id in list response (like real API)
        result = {'messages': [{'id': m['id']} for m in messages[start_idx:end_idx]]}
        if end_idx < len(messages):
            result['nextPageToken'] = str(end_idx)

        self._inbox.list_calls += 1
        return MockExecute(result, self._inbox.list_errors)

    def get(self, userId: str, id: str, format: str = None, metadataHeaders: List[str] = None):
        if id in self._inbox.fail_ids:
            return MockExecute(None, [self._inbox.fail_ids[id]])
        message = self._inbox.messages_by_id.get(id, {'id': id, 'labelIds': [], 'payload': {'headers': []}})
        return MockExecute(message, calls=self._inbox.get_calls)


class MockUsers:
    """Mock for service.users()"""
    def __init__(self, inbox: 'MockGmailService'):
        self._inbox = inbox

    def messages(self):
        return MockMessages(self._inbox)

    def getProfile(self, userId: str):
        return MockExecute({'emailAddress': self._inbox.email}, self._inbox.profile_errors)


class MockGmailService:
    """Mock Gmail API service that simulates an inbox, newest message first"""

    def __init__(
        self,
        messages: List[dict],
        email: str = 'me@example.com',
        fail_ids: Optional[Dict[str, int]] = None,
        list_errors: Optional[List[int]] = None,
        profile_errors: Optional[List[int]] = None
    ):
        self.messages = messages
        self.email = email
        self.fail_ids = fail_ids or {}
        self.list_errors = list_errors or []
        self.profile_errors = profile_errors or []
        self.list_calls = 0
        self.get_calls: List[dict] = []

    @property
    def messages_by_id(self) -> Dict[str, dict]:
        return {m['id']: m for m in self.messages}

    def users(self):
        return MockUsers(self)


# === Helpers to create message data ===

def make_message(message_id: str, sender: str, unread: bool = False) -> dict:
    """Helper to create a message dict matching Gmail API metadata format"""
    labels = ['INBOX', 'UNREAD'] if unread else ['INBOX']
    return {
        'id': message_id,
        'labelIds': labels,
        'payload': {'headers': [{'name': 'From', 'value': sender}]}
    }


def make_message_no_from_header(message_id: str) -> dict:
    """Create a message with missing From header"""
    return {
        'id': message_id,
        'labelIds': ['INBOX'],
        'payload': {'headers': [{'name': 'Subject', 'value': 'No sender'}]}
    }


def make_record(sender: str, unread: bool = False, message_id: Optional[str] = None, name: str = None) -> MessageRecord:
    return MessageRecord(sender=sender, name=name or sender, unread=unread, message_id=message_id)


async def no_sleep(delay: float) -> None:
    return None


# === Fixtures ===

@pytest.fixture
def sample_messages() -> List[dict]:
    """A small inbox spread over a few domains"""
    return [
        make_message('msg_001', 'GitHub <notifications@github.com>', unread=True),
        make_message('msg_002', 'GitHub <noreply@mail.github.com>'),
        make_message('msg_003', '"Doe, John" <john@test.co.uk>', unread=True),
        make_message('msg_004', 'plain@edge.com'),
        make_message_no_from_header('msg_005'),
        make_message('msg_006', 'GitHub <notifications@github.com>'),
        make_message('msg_007', 'Shop <deals@promo.shop.com>', unread=True),
    ]


@pytest.fixture
def mock_gmail_service(sample_messages) -> MockGmailService:
    return MockGmailService(sample_messages)


@pytest.fixture
def mock_session(mock_gmail_service) -> GmailSession:
    return GmailSession(service=mock_gmail_service)


@pytest.fixture
def empty_session() -> GmailSession:
    return GmailSession(service=MockGmailService([]))


@pytest.fixture
def fetch_config() -> FetchConfig:
    """Tiny pages and batches so pagination and batching are exercised"""
    return FetchConfig(batch_size=2, page_size=3)


@pytest.fixture
def store(tmp_path) -> RecordStore:
    return RecordStore(StoreConfig(path=str(tmp_path / 'inboxmap.db')))
