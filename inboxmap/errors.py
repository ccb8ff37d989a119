"""
Error types for Inbox Map
"""


class InboxMapError(Exception):
    """Base class for all Inbox Map errors"""
    code = "ERROR"


class NotAuthenticated(InboxMapError):
    """Raised when a Gmail operation runs without a signed-in session"""
    code = "NOT_AUTHENTICATED"


class AuthExpired(InboxMapError):
    """Raised when Gmail rejects the session credentials (HTTP 401)"""
    code = "AUTH_EXPIRED"

    def __init__(self, message: str = "AUTH_EXPIRED"):
        super().__init__(message)


class TransportError(InboxMapError):
    """Raised when a Gmail request fails after all retries"""
    code = "TRANSPORT_ERROR"

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class SyncInProgress(InboxMapError):
    """Raised when a sync is requested while another one is running"""
    code = "SYNC_IN_PROGRESS"


class AccountMismatch(InboxMapError):
    """Raised when an update is requested from a different mailbox than the stored one"""
    code = "ACCOUNT_MISMATCH"


class MalformedRecord(InboxMapError):
    """Raised when a message has no parseable From header"""
    code = "MALFORMED_RECORD"


class EnrichmentFailure(InboxMapError):
    """Raised when a domain's favicon cannot be fetched or sampled"""
    code = "ENRICHMENT_FAILURE"

    def __init__(self, domain: str, reason: str):
        super().__init__(f"Could not enrich {domain}: {reason}")
        self.domain = domain
        self.reason = reason
