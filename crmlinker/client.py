"""CRM REST API client: fetch one record by id."""

from typing import Optional

import requests

from .errors import RateLimited, SourceNotFound, UpstreamError, UpstreamTransient
from .logger import StructuredLogger, get_logger
from .records import IncomingRecord
from .retry import RetryError, exponential_backoff, should_retry_http_status
from .schema import validate_record

TRANSPORT_ERRORS = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)


class CrmClient:
    """
    Fetches records from `{base_url}/{record_id}`.

    Connection failures and timeouts are retried in place; HTTP statuses are
    mapped onto the error taxonomy so the work queue can decide what to retry.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = 15,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {api_token}"})
        self.logger = logger or get_logger()
        self._get = exponential_backoff(
            max_retries=max_retries,
            base_delay=retry_delay,
            exceptions=TRANSPORT_ERRORS,
            on_retry=self._on_retry,
        )(self._raw_get)

    def _raw_get(self, url: str) -> requests.Response:
        self.logger.record_api_call()
        return self.session.get(url, timeout=self.timeout)

    def _on_retry(self, attempt: int, exc: Exception, delay: float):
        self.logger.warning("CRM request failed, retrying", attempt=attempt, delay=delay, error=str(exc))

    def fetch_record(self, record_id: str) -> IncomingRecord:
        """
        Fetch and parse one record.

        Raises:
            SourceNotFound: 404, 403, 410 or no record in the response
            RateLimited: 429
            UpstreamTransient: network failure or retryable 5xx
            UpstreamError: any other HTTP or payload problem
        """
        url = f"{self.base_url}/{record_id}"
        try:
            resp = self._get(url)
        except RetryError as e:
            raise UpstreamTransient(f"CRM API unreachable for {record_id}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"CRM request error for {record_id}: {e}") from e

        status = resp.status_code
        if status == 404:
            raise SourceNotFound(record_id, "404 from CRM API")
        if status in (403, 410):
            raise SourceNotFound(record_id, f"inaccessible ({status})")
        if status == 429:
            raise RateLimited(f"Rate limited by CRM API while fetching {record_id}")
        if should_retry_http_status(status):
            raise UpstreamTransient(f"CRM API returned {status} for {record_id}")
        if status >= 400:
            raise UpstreamError(f"CRM API returned {status} for {record_id}", status=status)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"CRM API returned invalid JSON for {record_id}") from e

        response = data.get("response") if isinstance(data, dict) else None
        results = response.get("results") if isinstance(response, dict) else None
        if not results or not isinstance(results, list):
            raise SourceNotFound(record_id, "no record in CRM API response")

        payload = results[0]
        errors = validate_record(payload)
        if errors:
            raise UpstreamError(f"Malformed CRM record {record_id}: {'; '.join(errors)}")

        return IncomingRecord.from_api(record_id, payload)

    def close(self):
        self.session.close()
