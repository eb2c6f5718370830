"""
Gmail mailbox connector with rate limiting and structured error mapping.

Lists newsletter messages inside a lookback window and returns them as
``RawMessage`` records. The connector never retries on its own; callers
wrap it in the mailbox ``RetryPolicy``.
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog
from dateutil import parser as date_parser
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from substack_intel.core.config import GmailConfig, clamp_lookback_days
from substack_intel.core.exceptions import (
    AuthError,
    ConfigurationError,
    SubstackIntelError,
    TransientError,
    ValidationError,
)
from substack_intel.core.models import RawMessage, utcnow
from substack_intel.utils.reliability import AdaptiveRateLimiter, get_circuit_breaker

logger = structlog.get_logger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105
SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
MAX_RESULTS_CAP = 500

# 403 reasons that are quota problems rather than permission problems
_QUOTA_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


class MailboxConnector(Protocol):
    """Read-only access to newsletter messages."""

    def fetch_recent_messages(self, lookback_days: int, max_results: int) -> List[RawMessage]:
        ...

    def test_connection(self) -> bool:
        ...


class MailboxRequestError(SubstackIntelError):
    """Non-retryable mailbox API error (bad request, not found)."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


def _http_error_reason(error: HttpError) -> str:
    try:
        details = error.error_details or []
    except AttributeError:
        details = []
    for detail in details:
        if isinstance(detail, dict) and detail.get("reason"):
            return str(detail["reason"])
    return getattr(error, "reason", "") or ""


def map_http_error(error: HttpError, operation: str) -> SubstackIntelError:
    """Translate a Gmail ``HttpError`` into the pipeline error taxonomy."""
    status = int(getattr(error.resp, "status", 0) or 0)
    reason = _http_error_reason(error)
    details = {"operation": operation, "status_code": status, "reason": reason}

    if status == 403 and reason in _QUOTA_REASONS:
        return TransientError(f"Gmail quota exceeded during {operation}", details)
    if status in (401, 403):
        return AuthError(f"Gmail rejected credentials during {operation}: {reason}", details)
    if status == 429 or status >= 500:
        retry_after = None
        headers = getattr(error, "resp", None)
        if headers is not None and hasattr(headers, "get"):
            value = headers.get("retry-after")
            if value and str(value).isdigit():
                retry_after = float(value)
        return TransientError(
            f"Gmail temporarily unavailable during {operation} ({status})",
            details,
            retry_after=retry_after,
        )
    return MailboxRequestError(
        f"Gmail request failed during {operation} ({status})", status_code=status, details=details
    )


def build_query(sender_filter: str, lookback_days: int, now: Optional[datetime] = None) -> str:
    """Gmail search query for newsletter mail inside the lookback window."""
    now = now or utcnow()
    after = (now - timedelta(days=lookback_days)).strftime("%Y/%m/%d")
    before = (now + timedelta(days=1)).strftime("%Y/%m/%d")
    return f"from:{sender_filter} after:{after} before:{before} -in:spam -in:trash"


def _decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def _find_part(part: Dict[str, Any], mime_type: str) -> Optional[str]:
    if part.get("filename"):
        return None
    data = (part.get("body") or {}).get("data")
    if part.get("mimeType") == mime_type and data:
        return _decode_base64url(data)
    for child in part.get("parts") or []:
        found = _find_part(child, mime_type)
        if found:
            return found
    return None


def extract_body(payload: Dict[str, Any]) -> Tuple[str, bool]:
    """Return ``(body, is_html)`` preferring HTML over plain text."""
    html = _find_part(payload, "text/html")
    if html:
        return html, True
    text = _find_part(payload, "text/plain")
    if text:
        return text, False
    data = (payload.get("body") or {}).get("data")
    if data:
        body = _decode_base64url(data)
        return body, payload.get("mimeType") == "text/html" or "<html" in body[:500].lower()
    return "", False


def _parse_received_at(date_header: Optional[str], internal_date: Optional[str]) -> datetime:
    if date_header:
        try:
            parsed = date_parser.parse(date_header, fuzzy=True)
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (ValueError, OverflowError):
            logger.debug("Could not parse message date, using internalDate", date=date_header)
    if internal_date and str(internal_date).isdigit():
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    return utcnow()


def parse_gmail_message(data: Dict[str, Any]) -> RawMessage:
    """Convert a ``users.messages.get(format='full')`` response."""
    payload = data.get("payload") or {}
    headers = {
        h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers") or []
    }
    body, is_html = extract_body(payload)
    return RawMessage(
        message_id=data["id"],
        thread_id=data.get("threadId"),
        subject=headers.get("subject", "") or "",
        sender=headers.get("from", "") or "",
        body=body,
        is_html=is_html,
        received_at=_parse_received_at(headers.get("date"), data.get("internalDate")),
        rfc822_message_id=headers.get("message-id"),
    )


class GmailConnector:
    """Gmail implementation of ``MailboxConnector``."""

    def __init__(
        self,
        config: GmailConfig,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        service=None,
    ):
        self.config = config
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(
            calls_per_second=config.rate_limit_per_second, burst_size=10
        )
        self.breaker = get_circuit_breaker(
            "gmail", failure_threshold=5, recovery_timeout=60.0, expected_exception=TransientError
        )
        self._service = service

    @property
    def service(self):
        """Lazy initialization of Gmail service."""
        if self._service is None:
            self._service = self._build_service()
        return self._service

    def _build_service(self):
        missing = [
            name
            for name, value in (
                ("GMAIL_CLIENT_ID", self.config.client_id),
                ("GMAIL_CLIENT_SECRET", self.config.client_secret),
                ("GMAIL_REFRESH_TOKEN", self.config.refresh_token),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError("Gmail credentials are not configured", {"missing": missing})

        creds = Credentials(
            None,
            refresh_token=self.config.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            scopes=SCOPES,
        )
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        logger.info("Gmail service initialized", user=self.config.user)
        return service

    def _execute(self, request, operation: str) -> Dict[str, Any]:
        return self.breaker.call(self._execute_once, request, operation)

    def _execute_once(self, request, operation: str) -> Dict[str, Any]:
        self.rate_limiter.acquire(timeout=30.0)
        try:
            response = request.execute()
        except HttpError as e:
            self.rate_limiter.on_error()
            mapped = map_http_error(e, operation)
            logger.error("Gmail API request failed", error_type=type(mapped).__name__, **mapped.details)
            raise mapped from e
        except RefreshError as e:
            logger.error("Gmail token refresh failed", operation=operation, error=str(e))
            raise AuthError("Gmail refresh token is invalid or expired", {"error": str(e)}) from e
        except Exception as e:
            self.rate_limiter.on_error()
            logger.error("Gmail API request failed", operation=operation, error=str(e))
            raise TransientError(f"Unexpected Gmail error during {operation}: {e}") from e

        self.rate_limiter.on_success()
        return response

    def list_message_ids(self, query: str, max_results: int) -> List[str]:
        ids: List[str] = []
        page_token = None
        while len(ids) < max_results:
            page_size = min(self.config.page_size, max_results - len(ids))
            kwargs = {"userId": self.config.user, "q": query, "maxResults": page_size}
            if page_token:
                kwargs["pageToken"] = page_token
            response = self._execute(
                self.service.users().messages().list(**kwargs), "messages.list"
            )
            ids.extend(m["id"] for m in response.get("messages", []) or [])
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return ids[:max_results]

    def get_message(self, message_id: str) -> Optional[RawMessage]:
        if not message_id:
            raise ValidationError("message_id cannot be empty")
        try:
            data = self._execute(
                self.service.users().messages().get(
                    userId=self.config.user, id=message_id, format="full"
                ),
                "messages.get",
            )
        except MailboxRequestError as e:
            if e.status_code == 404:
                logger.warning("Gmail message no longer exists", message_id=message_id)
                return None
            raise
        return parse_gmail_message(data)

    def fetch_recent_messages(self, lookback_days: int = 30, max_results: int = 100) -> List[RawMessage]:
        """
        Fetch newsletter messages received inside the lookback window.

        Args:
            lookback_days: Window size, clamped to [1, 90]
            max_results: Maximum number of messages, clamped to [1, 500]

        Raises:
            AuthError: Credentials rejected
            TransientError: Network failure, quota or provider outage
        """
        days = clamp_lookback_days(lookback_days)
        limit = max(1, min(MAX_RESULTS_CAP, int(max_results)))
        query = build_query(self.config.sender_filter, days)

        logger.info("Fetching newsletter messages from Gmail", query=query, max_results=limit, user=self.config.user)

        messages = []
        for message_id in self.list_message_ids(query, limit):
            message = self.get_message(message_id)
            if message is not None:
                messages.append(message)

        logger.info("Gmail fetch completed", fetched=len(messages), lookback_days=days)
        return messages

    def test_connection(self) -> bool:
        try:
            profile = self._execute(
                self.service.users().getProfile(userId=self.config.user), "getProfile"
            )
        except (SubstackIntelError, HttpError) as e:
            logger.warning("Gmail connection test failed", error=str(e))
            return False
        logger.info("Gmail connection test successful", email=profile.get("emailAddress"))
        return True

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on Gmail service."""
        healthy = self.test_connection()
        return {
            "status": "healthy" if healthy else "unhealthy",
            "user": self.config.user,
            "breaker": self.breaker.status["state"],
            "rate_limiter": self.rate_limiter.status,
        }


def create_gmail_connector(config: GmailConfig) -> GmailConnector:
    """Factory function to create Gmail connector."""
    return GmailConnector(config)
