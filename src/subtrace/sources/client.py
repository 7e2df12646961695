"""
HTTP source adapters for JSON REST mailbox and bank-feed providers.

Endpoints (relative to base_url):
    GET /messages?q=&after=&page_size=&page_token=   -> {messages: [...], next_page_token}
    GET /accounts/{id}/transactions?from=&to=&page_token= -> {transactions: [...], next_page_token}
"""

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import (
    BankTransaction,
    EmailMessage,
    ProgressCallback,
    ScanProgress,
    SourceError,
    SourceUnavailable,
)

logger = logging.getLogger(__name__)

# Keyword query sent to the mailbox provider
SUBSCRIPTION_QUERY = (
    'subject:("subscription successful" OR "subscription confirmed" OR '
    '"subscription activated" OR subscription OR renewal OR billing OR invoice OR '
    'payment OR receipt OR "next billing" OR "manage subscription" OR membership OR '
    '"auto-renewal" OR recurring OR "billed monthly" OR "billed annually" OR premium) '
    "OR from:(noreply OR billing OR subscriptions OR payments)"
)

# Upper bound on messages collected by one deep scan
DEEP_SCAN_MESSAGE_LIMIT = 1000


class SourceAPIError(SourceError):
    """Provider returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Source API error {status_code}: {message}")


class _JSONSourceClient:
    """Shared session, retry and error mapping for the HTTP adapters."""

    DEFAULT_TIMEOUT = 30
    DEFAULT_PAGE_SIZE = 50
    source_name = "source"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize the client.

        Args:
            base_url: Provider URL
            token: Bearer token
            timeout: Request timeout in seconds
            page_size: Results per page
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            }
        )

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(self, endpoint: str, params: Optional[dict] = None) -> dict[str, Any]:
        """GET a JSON document with error handling."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise SourceError(f"Failed to connect to {self.source_name} at {self.base_url}: {e}")
        except requests.exceptions.Timeout as e:
            raise SourceError(f"Request to {self.source_name} timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise SourceError(f"Request failed: {e}")

        if response.status_code in (401, 403):
            raise SourceUnavailable(
                self.source_name, f"authorization rejected ({response.status_code})"
            )

        if not response.ok:
            raise SourceAPIError(
                status_code=response.status_code,
                message=response.reason,
                response_body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise SourceError(f"{self.source_name} returned invalid JSON: {e}") from e


class HttpEmailSource(_JSONSourceClient):
    """
    Email Source over a JSON REST mailbox API.

    Features:
    - Keyword-filtered recent scan
    - Exhaustive deep scan with page-token pagination and progress callbacks
    - Automatic retry with backoff
    """

    source_name = "email"

    def __init__(self, *args, page_delay: float = 1.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.page_delay = page_delay

    def _list_page(
        self, days_back: int, page_size: int, page_token: Optional[str]
    ) -> tuple[list[EmailMessage], Optional[str]]:
        after = (datetime.now(timezone.utc) - timedelta(days=days_back)).date()
        params: dict[str, Any] = {
            "q": SUBSCRIPTION_QUERY,
            "after": after.isoformat(),
            "page_size": page_size,
        }
        if page_token:
            params["page_token"] = page_token

        data = self._request("/messages", params=params)
        messages = []
        for item in data.get("messages", []):
            try:
                messages.append(EmailMessage.from_dict(item))
            except KeyError:
                logger.warning("Skipping message without id from %s", self.base_url)
        return messages, data.get("next_page_token")

    def scan(self, max_results: int, days_back: int) -> list[EmailMessage]:
        """Return up to max_results recent candidate emails."""
        collected: list[EmailMessage] = []
        page_token: Optional[str] = None
        while len(collected) < max_results:
            page_size = min(self.page_size, max_results - len(collected))
            messages, page_token = self._list_page(days_back, page_size, page_token)
            collected.extend(messages)
            if not page_token or not messages:
                break
        logger.info("Email scan returned %d messages (%d days)", len(collected), days_back)
        return collected[:max_results]

    def deep_scan(
        self, days_back: int, progress_callback: Optional[ProgressCallback] = None
    ) -> list[EmailMessage]:
        """Paginate through every candidate email in the window."""
        collected: list[EmailMessage] = []
        page_token: Optional[str] = None
        page = 0
        while True:
            page += 1
            messages, page_token = self._list_page(days_back, self.page_size, page_token)
            collected.extend(messages)

            if progress_callback:
                progress_callback(ScanProgress(phase="fetching", current=len(collected)))

            if not page_token or len(collected) >= DEEP_SCAN_MESSAGE_LIMIT:
                break
            if self.page_delay:
                time.sleep(self.page_delay)

        logger.info("Deep scan fetched %d messages across %d pages", len(collected), page)
        return collected[:DEEP_SCAN_MESSAGE_LIMIT]


class HttpTransactionSource(_JSONSourceClient):
    """Transaction Source over a JSON REST bank-feed API."""

    source_name = "bank"

    def transactions(
        self, account_id: str, start_date: date, end_date: date
    ) -> list[BankTransaction]:
        """Return debits for the account, following page tokens."""
        params: dict[str, Any] = {
            "from": start_date.isoformat(),
            "to": end_date.isoformat(),
            "page_size": self.page_size,
        }
        result: list[BankTransaction] = []
        while True:
            data = self._request(f"/accounts/{account_id}/transactions", params=params)
            for item in data.get("transactions", []):
                try:
                    result.append(BankTransaction.from_dict(item, account_id=account_id))
                except ValueError as e:
                    logger.warning("Skipping malformed transaction %s: %s", item.get("id"), e)

            page_token = data.get("next_page_token")
            if not page_token:
                break
            params["page_token"] = page_token

        logger.info("Fetched %d transactions for account %s", len(result), account_id)
        return result
