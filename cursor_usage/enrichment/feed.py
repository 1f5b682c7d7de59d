from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

import httpx

from ..store import EnrichmentRecord
from ..store.utils import now_ms, parse_iso8601

logger = logging.getLogger(__name__)

CSV_CACHE_TTL_MS = 5 * 60 * 1000
CSV_COLUMNS = 10

HeaderBuilder = Callable[[], str | None]
TextFetcher = Callable[[str], str | None]


def _parse_number(value: str) -> float | None:
    try:
        number = float(value.strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _int_or_zero(value: str) -> int:
    number = _parse_number(value)
    return int(number) if number is not None else 0


def _float_or_zero(value: str) -> float:
    number = _parse_number(value)
    return number if number is not None else 0.0


def parse_usage_csv(csv_text: str) -> list[EnrichmentRecord]:
    """Parse the usage export.

    Columns: Date, Kind, Model, Max Mode, Input (w/ Cache Write),
    Input (w/o Cache Write), Cache Read, Output Tokens, Total Tokens, Cost.
    """
    lines = csv_text.strip().split("\n")
    if len(lines) < 2:
        return []
    records: list[EnrichmentRecord] = []
    for raw in lines[1:]:
        line = raw.strip()
        if not line:
            continue
        cols = [col.removeprefix('"').removesuffix('"') for col in line.split(",")]
        if len(cols) < CSV_COLUMNS:
            continue
        parsed = parse_iso8601(cols[0])
        if parsed is None:
            continue
        output = _int_or_zero(cols[7])
        if output <= 0:
            continue
        records.append(
            EnrichmentRecord(
                timestamp=int(parsed.timestamp() * 1000),
                kind=cols[1].strip(),
                model=cols[2].strip(),
                max_mode=cols[3].strip().lower() == "true",
                input_with_cache_write=_int_or_zero(cols[4]),
                input_without_cache_write=_int_or_zero(cols[5]),
                cache_read=_int_or_zero(cols[6]),
                output=output,
                total=_int_or_zero(cols[8]),
                cost=_float_or_zero(cols[9]),
            )
        )
    return records


def fetch_usage_csv(
    url: str,
    header: str,
    *,
    timeout_s: float = 10.0,
    transport: httpx.BaseTransport | None = None,
) -> str | None:
    with httpx.Client(timeout=timeout_s, follow_redirects=True, transport=transport) as client:
        response = client.get(url, headers={"Cookie": header, "Accept": "text/csv"})
    if not response.is_success:
        logger.debug("usage export fetch failed", extra={"status": response.status_code})
        return None
    return response.text


class RemoteFeed:
    """TTL cache over the remote usage export with a single in-flight fetch.

    Concurrent callers wait on the same future. A caller whose ``cancel``
    event is set stops waiting and gets whatever is cached; the fetch keeps
    running and still lands in the cache.
    """

    def __init__(
        self,
        *,
        fetch_text: TextFetcher,
        header_builder: HeaderBuilder,
        ttl_ms: int = CSV_CACHE_TTL_MS,
        enabled: bool = True,
    ) -> None:
        self.fetch_text = fetch_text
        self.header_builder = header_builder
        self.ttl_ms = ttl_ms
        self.enabled = enabled
        self._lock = threading.Lock()
        self._rows: list[EnrichmentRecord] | None = None
        self._fetched_at = 0
        self._inflight: Future[None] | None = None
        self._executor: ThreadPoolExecutor | None = None

    def rows(self, cancel: threading.Event | None = None) -> list[EnrichmentRecord]:
        if not self.enabled:
            return []
        with self._lock:
            if self._rows is not None and now_ms() - self._fetched_at < self.ttl_ms:
                return list(self._rows)
            future = self._inflight
            submitted = future is None or future.done()
            if submitted:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=1, thread_name_prefix="cursor-usage-feed"
                    )
                future = self._executor.submit(self._refresh)
                self._inflight = future
        if submitted:
            # Runs inline if the fetch already finished; must not hold the lock.
            future.add_done_callback(self._clear_inflight)
        if cancel is None:
            future.result()
        else:
            while not future.done():
                if cancel.is_set():
                    logger.debug("usage export wait cancelled")
                    break
                wait_futures([future], timeout=0.05)
        with self._lock:
            return list(self._rows or [])

    def invalidate(self) -> None:
        with self._lock:
            self._rows = None
            self._fetched_at = 0

    def shutdown(self) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def _clear_inflight(self, future: Future[None]) -> None:
        with self._lock:
            if self._inflight is future:
                self._inflight = None

    def _refresh(self) -> None:
        try:
            header = self.header_builder()
            if not header:
                logger.debug("usage export: no auth token available")
                rows: list[EnrichmentRecord] = []
            else:
                text = self.fetch_text(header)
                rows = parse_usage_csv(text) if text else []
        except httpx.HTTPError as exc:
            logger.debug("usage export fetch error", extra={"error": str(exc)})
            return
        except Exception as exc:
            logger.exception("usage export refresh failed", exc_info=exc)
            return
        with self._lock:
            self._rows = rows
            self._fetched_at = now_ms()
        logger.debug("usage export cached", extra={"row_count": len(rows)})
