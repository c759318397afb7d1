"""retraction_etl.fetcher

HTTP retrieval of the upstream CSV with retry and backoff.

Retry policy:
  - HTTP 429 and 5xx responses, and transport errors, are retried up to
    max_attempts in total.
  - The delay before attempt n+1 is initial_delay * 2**(n-1), unless the
    server sent Retry-After, which overrides it for that attempt.
  - Any other 4xx fails immediately.

The response body is streamed: FetchResult.iter_chunks() counts bytes and
updates a SHA-256 digest as chunks are consumed.
"""

from __future__ import annotations

import email.utils
import hashlib
import logging
import time
from collections.abc import Callable, Iterator
from datetime import datetime, timezone

import requests

log = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_TIMEOUT = 60
DEFAULT_CHUNK_SIZE = 64 * 1024


class FetchError(RuntimeError):
    """Raised when the upstream CSV cannot be retrieved."""

    def __init__(
        self,
        message: str,
        last_error: BaseException | None = None,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.status_code = status_code
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

def next_delay(
    attempt: int,
    server_hint: float | None = None,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    if server_hint is not None:
        return max(0.0, server_hint)
    return initial_delay * (2 ** max(0, attempt - 1))


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Convert a Retry-After header (delta-seconds or HTTP-date) to seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (dt - now).total_seconds())


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class FetchResult:
    """A successful response whose body has not been read yet.

    When fetch_csv opened its own session, the result owns it and close()
    releases both.
    """

    def __init__(
        self,
        response: requests.Response,
        url: str,
        session: requests.Session | None = None,
    ) -> None:
        self._response = response
        self._session = session
        self.url = url
        self.status_code = response.status_code
        self.bytes_read = 0
        self._digest = hashlib.sha256()

    @property
    def checksum(self) -> str:
        return self._digest.hexdigest()

    def iter_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=chunk_size):
                if not chunk:
                    continue
                self.bytes_read += len(chunk)
                self._digest.update(chunk)
                yield chunk
        except requests.RequestException as exc:
            raise FetchError(
                f"stream from {self.url} interrupted after {self.bytes_read} bytes: {exc}",
                last_error=exc,
                status_code=self.status_code,
            ) from exc

    def close(self) -> None:
        self._response.close()
        if self._session is not None:
            self._session.close()
            self._session = None


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

def fetch_csv(
    url: str,
    session: requests.Session | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    timeout: float = DEFAULT_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> FetchResult:
    """GET url, retrying transient failures.  Raises FetchError.

    A session created here is closed on failure, or by FetchResult.close().
    """
    if session is not None:
        resp = _get_with_retry(session, url, max_attempts, initial_delay, timeout, sleep)
        return FetchResult(resp, url)

    own_session = requests.Session()
    try:
        resp = _get_with_retry(own_session, url, max_attempts, initial_delay, timeout, sleep)
    except Exception:
        own_session.close()
        raise
    return FetchResult(resp, url, session=own_session)


def _get_with_retry(
    session: requests.Session,
    url: str,
    max_attempts: int,
    initial_delay: float,
    timeout: float,
    sleep: Callable[[float], None],
) -> requests.Response:
    last_error: BaseException | None = None
    last_status: int | None = None

    for attempt in range(1, max_attempts + 1):
        server_hint: float | None = None
        try:
            resp = session.get(
                url,
                headers={"Accept": "text/csv"},
                stream=True,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            last_error = exc
            last_status = None
            log.warning("Fetch attempt %d/%d for %s failed: %s", attempt, max_attempts, url, exc)
        else:
            if resp.status_code < 400:
                log.info("Fetched %s (HTTP %d) on attempt %d", url, resp.status_code, attempt)
                return resp

            last_status = resp.status_code
            last_error = requests.HTTPError(f"HTTP {resp.status_code} from {url}", response=resp)
            if not is_retryable_status(resp.status_code):
                resp.close()
                raise FetchError(
                    f"CSV fetch failed ({resp.status_code})",
                    last_error=last_error,
                    status_code=resp.status_code,
                    attempts=attempt,
                )
            server_hint = parse_retry_after(resp.headers.get("Retry-After"))
            resp.close()
            log.warning(
                "Fetch attempt %d/%d for %s returned HTTP %d",
                attempt, max_attempts, url, resp.status_code,
            )

        if attempt < max_attempts:
            sleep(next_delay(attempt, server_hint, initial_delay))

    raise FetchError(
        f"CSV fetch failed after {max_attempts} attempts"
        + (f" ({last_status})" if last_status is not None else f": {last_error}"),
        last_error=last_error,
        status_code=last_status,
        attempts=max_attempts,
    )
