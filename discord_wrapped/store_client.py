"""Paged fetch client for the PostgREST message store.

Provides single-page requests with retry/backoff, whole-table paging, and
streaming retrieval over a bounded worker pool.
"""

import logging
import math
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TypeVar

import requests

from .config import FetchSettings, StoreConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses worth retrying besides network failures
RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}

CONTENT_RANGE_TOTAL = re.compile(r"/(\d+)")


class StoreError(Exception):
    """Base class for row store failures."""
    pass


class FetchFailure(StoreError):
    """Raised when a request fails permanently or exhausts its retries."""

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        attempts: int = 0,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts
        self.status_code = status_code


class FetchCancelled(StoreError):
    """Raised when a streaming fetch is abandoned by the caller."""
    pass


class TransientError(StoreError):
    """A failure that may succeed on retry (rate limit, 5xx, network blip)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class Filter:
    """A server-side PostgREST filter rendered as column=op.value."""

    column: str
    op: str
    value: Any = None

    def to_param(self) -> tuple[str, str]:
        if self.op == "not_null":
            return self.column, "not.is.null"
        if self.op == "in":
            values = ",".join(str(v) for v in self.value)
            return self.column, f"in.({values})"
        return self.column, f"{self.op}.{self.value}"

    @classmethod
    def eq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "eq", value)

    @classmethod
    def neq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "neq", value)

    @classmethod
    def gt(cls, column: str, value: Any) -> "Filter":
        return cls(column, "gt", value)

    @classmethod
    def gte(cls, column: str, value: Any) -> "Filter":
        return cls(column, "gte", value)

    @classmethod
    def lt(cls, column: str, value: Any) -> "Filter":
        return cls(column, "lt", value)

    @classmethod
    def lte(cls, column: str, value: Any) -> "Filter":
        return cls(column, "lte", value)

    @classmethod
    def ilike(cls, column: str, pattern: str) -> "Filter":
        return cls(column, "ilike", pattern)

    @classmethod
    def not_null(cls, column: str) -> "Filter":
        return cls(column, "not_null")

    @classmethod
    def in_(cls, column: str, values: Iterable[Any]) -> "Filter":
        return cls(column, "in", tuple(values))


@dataclass
class PageResult:
    """Rows of one page, plus the exact total when it was requested."""

    rows: list[dict]
    total_count: Optional[int] = None


def exponential_backoff(base_delay: float) -> Callable[[int], float]:
    """Backoff policy: base_delay * 2^attempt."""
    def delay(attempt: int) -> float:
        return base_delay * (2 ** attempt)
    return delay


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    backoff: Optional[Callable[[int], float]] = None,
    description: str = "request",
) -> T:
    """
    Call fn, retrying TransientError with backoff.

    Args:
        fn: Zero-argument callable performing one attempt
        max_attempts: Total attempts, including the first
        backoff: Maps the zero-based attempt number to a delay in seconds
        description: Label used in log and error messages

    Returns:
        The result of the first successful attempt

    Raises:
        FetchFailure: After max_attempts transient failures, or immediately
            on a non-transient FetchFailure
    """
    backoff = backoff or exponential_backoff(1.0)
    last_error: Optional[TransientError] = None

    for attempt in range(max_attempts):
        try:
            return fn()
        except TransientError as e:
            last_error = e
            if attempt < max_attempts - 1:
                wait_time = backoff(attempt)
                logger.warning(
                    f"{description} failed ({e}), waiting {wait_time}s before retry "
                    f"(attempt {attempt + 1}/{max_attempts})"
                )
                time.sleep(wait_time)
        except FetchFailure as e:
            if not e.attempts:
                e.attempts = attempt + 1
            raise

    raise FetchFailure(
        f"{description} failed after {max_attempts} attempts: {last_error}",
        cause=last_error,
        attempts=max_attempts,
        status_code=last_error.status_code if last_error else None,
    )


class StoreClient:
    """HTTP client for a PostgREST endpoint with paging and retry logic."""

    def __init__(
        self,
        store: StoreConfig,
        settings: Optional[FetchSettings] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the store client.

        Args:
            store: Endpoint URL, API key and table names
            settings: Paging, concurrency and retry settings
            session: Optional requests session (shared across worker threads)
        """
        self.store = store
        self.settings = settings or FetchSettings()
        self.session = session or requests.Session()
        self.base_headers = {
            "apikey": store.api_key,
            "Authorization": f"Bearer {store.api_key}",
            "Content-Type": "application/json",
        }

    @property
    def page_size(self) -> int:
        return self.settings.page_size

    def _build_params(
        self,
        select: Optional[str],
        filters: Optional[list[Filter]],
        order: Optional[str],
        limit: Optional[int],
        offset: Optional[int],
    ) -> list[tuple[str, str]]:
        """Build query parameters; a list keeps repeated filter columns."""
        params: list[tuple[str, str]] = []
        if select:
            params.append(("select", select))
        for f in filters or []:
            params.append(f.to_param())
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset is not None:
            params.append(("offset", str(offset)))
        return params

    def fetch_page(
        self,
        table: str,
        select: Optional[str] = None,
        filters: Optional[list[Filter]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        want_count: bool = False,
    ) -> PageResult:
        """
        Fetch a single page of rows.

        Rate-limit (429), timeout and 5xx responses, and network errors, are
        retried with exponential backoff up to the configured attempt limit.

        Args:
            table: Table name
            select: Comma-separated column list
            filters: Server-side filters
            order: Sort order, e.g. "created_at.asc,message_id.asc"
            limit: Maximum rows to return
            offset: Rows to skip
            want_count: Request the exact total via Content-Range

        Returns:
            PageResult with the decoded rows and optional total count

        Raises:
            FetchFailure: If the request fails permanently
        """
        url = f"{self.store.url}/{table}"
        params = self._build_params(select, filters, order, limit, offset)
        headers = dict(self.base_headers)
        if want_count:
            start = offset or 0
            headers["Prefer"] = "count=exact"
            headers["Range-Unit"] = "items"
            headers["Range"] = f"{start}-{start + (limit or 0)}"

        def attempt() -> PageResult:
            try:
                response = self.session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.store.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                raise TransientError(f"network error: {e}")

            if response.status_code in RETRYABLE_STATUSES:
                raise TransientError(
                    f"store returned {response.status_code}",
                    status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise FetchFailure(
                    f"Store error {response.status_code} for {table}: {response.text[:200]}",
                    status_code=response.status_code,
                )

            try:
                rows = response.json()
            except ValueError as e:
                raise FetchFailure(f"Invalid JSON from {table}: {e}", cause=e)

            # Ranged count requests come back as 206 with Content-Range
            total_count = None
            if want_count:
                total_count = self._parse_total(response.headers.get("content-range"))

            return PageResult(rows=rows, total_count=total_count)

        return with_retry(
            attempt,
            max_attempts=self.settings.max_attempts,
            backoff=exponential_backoff(self.settings.base_delay),
            description=f"GET {table} offset={offset or 0}",
        )

    def _parse_total(self, content_range: Optional[str]) -> Optional[int]:
        """Extract the total from a Content-Range header like '0-0/12345'."""
        if not content_range:
            return None
        match = CONTENT_RANGE_TOTAL.search(content_range)
        return int(match.group(1)) if match else None

    def get_total_count(self, table: str, filters: Optional[list[Filter]] = None) -> int:
        """Exact number of rows in a table (optionally filtered)."""
        result = self.fetch_page(
            table, select="*", filters=filters, limit=1, offset=0, want_count=True
        )
        return result.total_count or 0

    def fetch_all(
        self,
        table: str,
        select: Optional[str] = None,
        filters: Optional[list[Filter]] = None,
        order: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[dict]:
        """
        Fetch every matching row by paging sequentially until a short page.

        order must be a total order (end it with a unique column), otherwise
        rows that tie can land on two pages or on none.

        Returns:
            All rows, in page order

        Raises:
            FetchCancelled: If cancel_event is set between pages
        """
        all_rows: list[dict] = []
        offset = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise FetchCancelled(f"fetch of {table} cancelled after {len(all_rows)} rows")
            page = self.fetch_page(
                table, select=select, filters=filters, order=order,
                limit=self.page_size, offset=offset,
            )
            all_rows.extend(page.rows)
            if len(page.rows) < self.page_size:
                break
            offset += self.page_size

        logger.debug(f"Fetched {len(all_rows)} rows from {table}")
        return all_rows

    def fetch_like_search(
        self,
        table: str,
        column: str,
        pattern: str,
        select: str = "*",
        order: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[dict]:
        """Fetch all rows whose column contains pattern (case-insensitive)."""
        return self.fetch_all(
            table,
            select=select,
            filters=[Filter.ilike(column, f"*{pattern}*")],
            order=order,
            cancel_event=cancel_event,
        )

    def fetch_pages(
        self,
        table: str,
        select: Optional[str],
        offsets: list[int],
        on_page: Callable[[list[dict]], None],
        order: Optional[str] = None,
        filters: Optional[list[Filter]] = None,
        concurrency: Optional[int] = None,
        on_page_done: Optional[Callable[[int], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Fetch the pages at the given offsets on a bounded worker pool.

        Workers only perform HTTP requests. Each finished page is handed to
        on_page on the calling thread, so callers may fold rows into shared
        state without locking. Delivery order follows completion, not offset.

        Args:
            table: Table name
            select: Column list
            offsets: Page offsets to fetch
            on_page: Receives the rows of each completed page
            order: Sort order (must be total for stable paging)
            filters: Server-side filters
            concurrency: Worker count (defaults to settings.concurrency)
            on_page_done: Called with the number of pages completed so far
            cancel_event: When set, pending pages are abandoned

        Raises:
            FetchFailure: If any page fails permanently
            FetchCancelled: If cancel_event is set before all pages arrive
        """
        if not offsets:
            return

        workers = max(1, min(concurrency or self.settings.concurrency, len(offsets)))
        completed = 0

        def fetch_one(offset: int) -> list[dict]:
            if cancel_event is not None and cancel_event.is_set():
                raise FetchCancelled("fetch cancelled")
            return self.fetch_page(
                table, select=select, filters=filters, order=order,
                limit=self.page_size, offset=offset,
            ).rows

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(fetch_one, offset) for offset in offsets]
            try:
                for future in as_completed(futures):
                    if cancel_event is not None and cancel_event.is_set():
                        raise FetchCancelled(
                            f"fetch of {table} cancelled after {completed}/{len(offsets)} pages"
                        )
                    rows = future.result()
                    on_page(rows)
                    completed += 1
                    if on_page_done:
                        on_page_done(completed)
            except BaseException:
                for f in futures:
                    f.cancel()
                raise

    def fetch_all_pages_streaming(
        self,
        table: str,
        select: Optional[str],
        on_page: Callable[[list[dict]], None],
        order: Optional[str] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        concurrency: Optional[int] = None,
        total_count: Optional[int] = None,
        filters: Optional[list[Filter]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Stream every row of a table to on_page using concurrent page fetches.

        Args:
            table: Table name
            select: Column list
            on_page: Receives each page of rows (on the calling thread)
            order: Sort order
            on_progress: Called as (fetched_rows, total_rows) after each page
            concurrency: Worker count
            total_count: Known total; queried when omitted
            filters: Server-side filters
            cancel_event: When set, the stream is abandoned
        """
        total = total_count
        if total is None:
            total = self.get_total_count(table, filters)

        if total == 0:
            return

        total_pages = math.ceil(total / self.page_size)
        offsets = [i * self.page_size for i in range(total_pages)]
        logger.info(
            f"Streaming {total:,} rows from {table} in {total_pages} pages "
            f"({concurrency or self.settings.concurrency} workers)"
        )

        def page_done(completed: int) -> None:
            if on_progress:
                on_progress(min(completed * self.page_size, total), total)

        self.fetch_pages(
            table,
            select,
            offsets,
            on_page,
            order=order,
            filters=filters,
            concurrency=concurrency,
            on_page_done=page_done,
            cancel_event=cancel_event,
        )

    def close(self):
        """Close the underlying HTTP session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
