#!/usr/bin/env python3
"""
Gmail Service - Sign-in and the Gmail API calls used for syncing
Sign-in produces a GmailSession that is passed explicitly to every fetch
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httplib2
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential, wait_random
)

from inboxmap.errors import AuthExpired, NotAuthenticated, TransportError
from inboxmap.models import FetchConfig


logger = logging.getLogger(__name__)

# If modifying these scopes, delete the file token.json.
SCOPES = ['https://www.googleapis.com/auth/gmail.readonly']

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


@dataclass
class GmailSession:
    """A signed-in Gmail API handle, created at sign-in and passed to fetch operations"""
    service: Any
    credentials: Optional[Credentials] = None

    def new_http(self):
        """Fresh authorized transport, so concurrent requests never share a connection"""
        if self.credentials is None:
            return None
        return AuthorizedHttp(self.credentials, http=httplib2.Http())


class GmailAuth:
    """Handles the OAuth installed-app flow and stored tokens"""

    def __init__(self, credentials_path: str = 'data/credentials.json', token_path: str = 'data/token.json'):
        self.credentials_path = credentials_path
        self.token_path = token_path
        self.flow = None

    def create_oauth_flow(self, redirect_uri: str = None) -> str:
        """Create OAuth2 flow and return authorization URL"""
        if not os.path.exists(self.credentials_path):
            raise NotAuthenticated("Credentials file not found. Please upload credentials.json first.")

        self.flow = Flow.from_client_secrets_file(
            self.credentials_path,
            scopes=SCOPES,
            redirect_uri=redirect_uri or "http://localhost:8000/oauth/callback"
        )

        auth_url, _ = self.flow.authorization_url(
            access_type='offline',
            include_granted_scopes='true',
            prompt='consent'
        )

        return auth_url

    def complete_oauth_flow(self, authorization_code: str) -> Optional[GmailSession]:
        """Complete OAuth flow with authorization code"""
        try:
            if not self.flow:
                raise NotAuthenticated("OAuth flow not initialized. Call create_oauth_flow first.")

            self.flow.fetch_token(code=authorization_code)

            creds = self.flow.credentials
            token_path = Path(self.token_path)
            token_path.parent.mkdir(parents=True, exist_ok=True)
            token_path.write_text(creds.to_json())

            logger.info("Successfully authenticated with Gmail via OAuth")
            return self._session(creds)

        except Exception as error:
            logger.error(f"OAuth authentication failed: {error}")
            return None

    def authenticate(self) -> Optional[GmailSession]:
        """Restore a session from the stored token, refreshing it if needed"""
        try:
            token_path = Path(self.token_path)

            if not token_path.exists():
                logger.info("No existing token found - user needs to authenticate via OAuth")
                return None

            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)

            if not creds or not creds.valid:
                if creds and creds.expired and creds.refresh_token:
                    logger.info("Refreshing expired credentials")
                    creds.refresh(Request())
                    token_path.write_text(creds.to_json())
                else:
                    logger.warning("Credentials invalid and cannot be refreshed - user needs to re-authenticate")
                    return None

            logger.info("Successfully authenticated with existing credentials")
            return self._session(creds)

        except Exception as error:
            logger.error(f"Authentication failed: {error}")
            return None

    def sign_out(self) -> None:
        """Forget the stored token"""
        token_path = Path(self.token_path)
        if token_path.exists():
            token_path.unlink()
        self.flow = None

    @staticmethod
    def _session(creds: Credentials) -> GmailSession:
        service = build('gmail', 'v1', credentials=creds, cache_discovery=False)
        return GmailSession(service=service, credentials=creds)


class GmailFetcher:
    """Gmail API calls with rate-limit backoff and auth-expiry detection"""

    def __init__(
        self,
        session: GmailSession,
        config: Optional[FetchConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if session is None:
            raise NotAuthenticated("Not authenticated. Sign in first.")
        self.session = session
        self.config = config or FetchConfig()
        self._sleep = sleep

    # === API Calls ===

    async def list_message_ids(self, page_token: Optional[str] = None) -> Tuple[List[str], Optional[str]]:
        """Fetch one page of inbox message ids, returns (ids, next_page_token)"""
        results = await self._execute(
            lambda: self.session.service.users().messages().list(
                userId='me',
                maxResults=self.config.page_size,
                labelIds=list(self.config.label_ids),
                pageToken=page_token
            )
        )

        ids = [message['id'] for message in results.get('messages', [])]
        return ids, results.get('nextPageToken')

    async def get_message_metadata(self, message_id: str) -> Dict[str, Any]:
        """Fetch the From header and unread flag of one message"""
        data = await self._execute(
            lambda: self.session.service.users().messages().get(
                userId='me',
                id=message_id,
                format='metadata',
                metadataHeaders=['From']
            )
        )

        headers = data.get('payload', {}).get('headers', [])
        from_header = next((h['value'] for h in headers if h.get('name', '').lower() == 'from'), None)

        return {
            'from_header': from_header,
            'is_unread': 'UNREAD' in data.get('labelIds', [])
        }

    async def get_profile_email(self) -> Optional[str]:
        """Address of the signed-in mailbox"""
        profile = await self._execute(lambda: self.session.service.users().getProfile(userId='me'))
        return profile.get('emailAddress')

    # === Retry ===

    async def _execute(self, make_request: Callable[[], Any]) -> Dict:
        """Run a request, backing off on rate limits and surfacing auth expiry"""
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            wait=wait_exponential(multiplier=1) + wait_random(0, 0.5),
            stop=stop_after_attempt(self.config.max_retries + 1),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await asyncio.to_thread(
                        lambda: make_request().execute(http=self.session.new_http())
                    )
            return result
        except HttpError as error:
            status = error.resp.status
            if status == 401:
                raise AuthExpired() from error
            raise TransportError(f"Gmail API error: {status}", status=status) from error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, HttpError) and error.resp.status in RETRYABLE_STATUSES


def _log_retry(retry_state: RetryCallState) -> None:
    status = retry_state.outcome.exception().resp.status
    logger.warning(f"Gmail API returned {status}, retrying in {retry_state.next_action.sleep:.1f}s")
