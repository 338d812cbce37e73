import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from billinglead_common.config import RegistrySettings
from billinglead_common.models import SearchParams

logger = logging.getLogger(__name__)


class NPIRegistryError(Exception):
    """Raised when the NPPES registry rejects a request or keeps failing."""


@dataclass
class PageResult:
    """Outcome of one page request: records on success, empty with an error on failure."""

    skip: int
    limit: int
    records: List[dict] = field(default_factory=list)
    result_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_short(self) -> bool:
        return self.ok and len(self.records) < self.limit


@dataclass
class FetchAllResult:
    providers: List[dict]
    total_available: int
    last_skip: int
    failed_skips: List[int] = field(default_factory=list)

    @property
    def completion_ratio(self) -> float:
        if self.total_available <= 0:
            return 1.0
        return min(self.last_skip / self.total_available, 1.0)


class NPIClient:
    # API limits and constraints (based on NPI Registry API rules)
    MAX_RESULTS_PER_REQUEST = 200
    RETRY_LIMIT = 5
    INITIAL_RETRY_DELAY = 1  # Start with 1 second
    MAX_RETRY_DELAY = 32  # Cap at 32 seconds

    def __init__(self, settings: Optional[RegistrySettings] = None):
        self.settings = settings or RegistrySettings.from_environment()
        self.page_limit = min(self.settings.page_limit, self.MAX_RESULTS_PER_REQUEST)

    async def search(
        self,
        params: SearchParams,
        session: aiohttp.ClientSession,
        limit: int = MAX_RESULTS_PER_REQUEST,
        skip: int = 0,
    ) -> Dict[str, Any]:
        """
        One registry search request, with exponential backoff on rate limits and
        transient errors.

        Returns ``{"result_count": int, "results": [...]}``. Raises
        ``NPIRegistryError`` if the registry rejects the query or every retry fails.
        """
        query = {
            "version": self.settings.api_version,
            **params.to_query(),
            "limit": str(min(limit, self.MAX_RESULTS_PER_REQUEST)),
            "skip": str(skip),
        }
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
        last_error = None
        retries = 0
        while retries < self.RETRY_LIMIT:
            try:
                async with session.get(self.settings.api_url, params=query, timeout=timeout) as resp:
                    if resp.status == 429:  # Rate limit
                        delay = self._calculate_backoff_delay(retries)
                        logger.warning("Rate limited at skip=%d. Waiting %.1fs before retry", skip, delay)
                        last_error = "rate limited"
                        await asyncio.sleep(delay)
                        retries += 1
                        continue

                    resp.raise_for_status()
                    data = await resp.json(content_type=None)
                return self._parse_search_response(data)
            except asyncio.TimeoutError:
                last_error = "timeout"
                delay = self._calculate_backoff_delay(retries)
                logger.warning("Timeout at skip=%d. Retrying in %.1fs (%d/%d)", skip, delay, retries + 1, self.RETRY_LIMIT)
                retries += 1
                await asyncio.sleep(delay)
                continue
            except aiohttp.ClientError as e:
                last_error = str(e) or e.__class__.__name__
                delay = self._calculate_backoff_delay(retries)
                logger.warning("Client error at skip=%d: %s. Retrying in %.1fs (%d/%d)", skip, e, delay, retries + 1, self.RETRY_LIMIT)
                retries += 1
                await asyncio.sleep(delay)
                continue
            except (ValueError, TypeError) as e:
                # Non-JSON body (maintenance page) or unexpected payload shape
                last_error = f"malformed response: {e}"
                delay = self._calculate_backoff_delay(retries)
                logger.warning("Malformed response at skip=%d: %s. Retrying in %.1fs (%d/%d)", skip, e, delay, retries + 1, self.RETRY_LIMIT)
                retries += 1
                await asyncio.sleep(delay)
                continue

        raise NPIRegistryError(f"Failed to fetch skip={skip} after {self.RETRY_LIMIT} retries ({last_error})")

    @staticmethod
    def _parse_search_response(data: Any) -> Dict[str, Any]:
        """
        Validate a decoded registry body.

        Raises ``NPIRegistryError`` when the registry reports ``Errors`` and
        ``ValueError`` when the body is not a search result.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        errors = data.get("Errors")
        if errors:
            descriptions = "; ".join(
                str(err.get("description", err)) if isinstance(err, dict) else str(err) for err in errors
            )
            raise NPIRegistryError(f"Registry rejected search: {descriptions}")
        results = data.get("results") or []
        if not isinstance(results, list):
            raise ValueError(f"expected results to be a list, got {type(results).__name__}")
        return {
            "result_count": int(data.get("result_count") or 0),
            "results": [result for result in results if isinstance(result, dict)],
        }

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = min(self.INITIAL_RETRY_DELAY * (2 ** retry_count), self.MAX_RETRY_DELAY)
        # Add jitter to prevent thundering herd
        jitter = random.uniform(0, delay * 0.1)
        return delay + jitter

    async def fetch_page(
        self,
        params: SearchParams,
        session: aiohttp.ClientSession,
        limit: int,
        skip: int,
    ) -> PageResult:
        """Fetch one page. Upstream failures come back as an empty, failed ``PageResult``."""
        try:
            data = await self.search(params, session, limit=limit, skip=skip)
        except NPIRegistryError as e:
            logger.error("Page at skip=%d failed: %s", skip, e)
            return PageResult(skip=skip, limit=limit, error=str(e))
        return PageResult(
            skip=skip,
            limit=limit,
            records=data["results"],
            result_count=data["result_count"],
        )

    async def fetch_all(
        self,
        params: SearchParams,
        max_records: Optional[int] = None,
        start_skip: int = 0,
        session: Optional[aiohttp.ClientSession] = None,
        page_limit: Optional[int] = None,
    ) -> FetchAllResult:
        """
        Fetch every page from ``start_skip`` up to ``max_records`` records (or all).

        ``page_limit`` overrides the configured page size (still capped at 200).

        A probe page at ``start_skip`` reports the total; the remaining pages go
        out in waves of ``max_concurrent`` requests with a short pause between waves.
        ``last_skip`` only advances over a contiguous run of successful, full pages,
        so a later call can resume from it without skipping anything.
        """
        if not params.has_criteria():
            raise ValueError("Registry search needs at least one criterion besides enumeration_type")

        if session is None:
            async with aiohttp.ClientSession() as own_session:
                return await self.fetch_all(params, max_records, start_skip, own_session, page_limit)

        limit = min(page_limit or self.page_limit, self.MAX_RESULTS_PER_REQUEST)
        probe_limit = limit if max_records is None else min(limit, max_records)
        probe = await self.fetch_page(params, session, limit=probe_limit, skip=start_skip)
        if not probe.ok:
            return FetchAllResult(providers=[], total_available=0, last_skip=start_skip, failed_skips=[start_skip])

        total_available = probe.result_count
        if not probe.records:
            logger.info("No results at skip=%d (total reported: %d)", start_skip, total_available)
            return FetchAllResult(providers=[], total_available=total_available, last_skip=start_skip)

        target = total_available if max_records is None else min(start_skip + max_records, total_available)
        target = max(target, start_skip + len(probe.records))

        pages = [probe]
        if not probe.is_short:
            skips = list(range(start_skip + probe_limit, target, limit))
            for wave_start in range(0, len(skips), self.settings.max_concurrent):
                wave = skips[wave_start:wave_start + self.settings.max_concurrent]
                results = await asyncio.gather(
                    *(self.fetch_page(params, session, limit=min(limit, target - skip), skip=skip) for skip in wave)
                )
                pages.extend(results)
                fetched = sum(len(page.records) for page in pages)
                logger.info("Fetched %d/%d records (wave of %d pages)", fetched, target - start_skip, len(wave))
                if any(page.is_short for page in results):
                    break
                if wave_start + self.settings.max_concurrent < len(skips):
                    await asyncio.sleep(self.settings.batch_delay)

        providers: List[dict] = []
        failed_skips: List[int] = []
        last_skip = start_skip
        contiguous = True
        for page in pages:
            if not page.ok:
                failed_skips.append(page.skip)
                contiguous = False
                continue
            providers.extend(page.records)
            if contiguous:
                last_skip = page.skip + len(page.records)
                if page.is_short:
                    contiguous = False

        if failed_skips:
            logger.warning("%d page(s) failed; cursor held at skip=%d", len(failed_skips), last_skip)
        return FetchAllResult(
            providers=providers[:max(target - start_skip, 0)],
            total_available=total_available,
            last_skip=last_skip,
            failed_skips=failed_skips,
        )
