from __future__ import annotations

import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlparse

from crowsnest.browser import (
    BrowserSession,
    ElementNotFoundError,
    NavigationError,
    TabOpenTimeoutError,
)
from crowsnest.config import Settings
from crowsnest.dedupe import OfferRepository, check_duplicate
from crowsnest.extraction import OfferExtractor
from crowsnest.learning import SchemaLearner
from crowsnest.llm import LLMClient, LLMError
from crowsnest.models import (
    DetailRecord,
    OfferSummary,
    PaginationInfo,
    PipelineResult,
    ScrapedOffer,
    SeedResult,
)
from crowsnest.processors import (
    PROGRAMMER_ERRORS,
    DetailPageProcessor,
    ListingPageProcessor,
    RunContext,
    SchemaExtractionFailed,
)
from crowsnest.schemas import SchemaStore
from crowsnest.storage import StateStore

log = logging.getLogger(__name__)

_ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")
_TRANSIENT_ERRORS = (NavigationError, TabOpenTimeoutError)


def domain_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host.removeprefix("www.")


def parse_posted_at(raw: str | None, today: date, max_age_days: int) -> datetime | None:
    """``YYYY-MM-DD`` to midnight UTC; blank, malformed, future or stale dates give None."""
    if not raw:
        return None
    text = raw.strip()
    if not _ISO_DATE.fullmatch(text):
        return None
    try:
        posted = date.fromisoformat(text)
    except ValueError:
        return None
    if posted > today or today - posted > timedelta(days=max_age_days):
        return None
    return datetime(posted.year, posted.month, posted.day, tzinfo=timezone.utc)


@dataclass
class _SeedProgress:
    seed_url: str
    pages_visited: int = 0
    saved_count: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0

    def result(self, error: str | None = None, *, transient: bool = False) -> SeedResult:
        return SeedResult(
            seed_url=self.seed_url,
            pages_visited=self.pages_visited,
            saved_count=self.saved_count,
            duplicate_count=self.duplicate_count,
            skipped_count=self.skipped_count,
            error=error,
            transient=transient,
        )


class SeedCrawler:
    """Walks the listing pages of one seed URL and stores every new offer."""

    def __init__(
        self,
        browser: Any,
        repository: OfferRepository,
        listing_processor: ListingPageProcessor,
        detail_processor: DetailPageProcessor,
        run: RunContext,
        *,
        offer_extractor: OfferExtractor | None = None,
        verify_detail_pages: bool = False,
        posted_at_max_age_days: int = 183,
        now_utc: datetime | None = None,
    ):
        if verify_detail_pages and offer_extractor is None:
            raise ValueError("verify_detail_pages requires an offer_extractor")
        self.browser = browser
        self.repository = repository
        self.listing_processor = listing_processor
        self.detail_processor = detail_processor
        self.run = run
        self.offer_extractor = offer_extractor
        self.verify_detail_pages = verify_detail_pages
        self.posted_at_max_age_days = posted_at_max_age_days
        self.now_utc = now_utc

    def _now(self) -> datetime:
        return self.now_utc or datetime.now(timezone.utc)

    def crawl(self, seed_url: str) -> SeedResult:
        progress = _SeedProgress(seed_url=seed_url)
        try:
            error = self._crawl_pages(seed_url, progress)
        except _TRANSIENT_ERRORS as exc:
            return progress.result(f"{type(exc).__name__}: {exc}", transient=True)
        return progress.result(error)

    def _crawl_pages(self, seed_url: str, progress: _SeedProgress) -> str | None:
        self.browser.navigate_to(seed_url)
        visited: set[str] = set()

        while True:
            current_url = self.browser.get_current_url()
            if current_url in visited:
                log.warning("loop detected, already visited %s; stopping", current_url)
                return None
            visited.add(current_url)
            progress.pages_visited += 1

            listing = self.listing_processor.process(domain_of(current_url), self.run)
            if isinstance(listing, SchemaExtractionFailed):
                return f"listing {current_url}: {listing.reason}"

            new_offers = 0
            for summary in listing.record.offers:
                check = check_duplicate(summary, self.repository)
                if check.is_duplicate:
                    progress.duplicate_count += 1
                    log.debug("%s: %s, skipping", summary.url, check.value)
                    continue

                new_offers += 1
                error = self._scrape_offer(summary, progress)
                if error:
                    return error

            if new_offers == 0:
                log.info("all offers on %s are duplicates; stopping", current_url)
                return None

            if not self._navigate_next(listing.record.pagination):
                log.info("no more pages after %s", current_url)
                return None

    def _scrape_offer(self, summary: OfferSummary, progress: _SeedProgress) -> str | None:
        with self.browser.new_tab(summary.url):
            if self.verify_detail_pages and not self._is_valid_offer_page(summary):
                progress.skipped_count += 1
                return None
            detail = self.detail_processor.process(domain_of(summary.url), self.run)

        if isinstance(detail, SchemaExtractionFailed):
            return f"detail {summary.url}: {detail.reason}"

        offer = self._to_offer(summary, detail.record)
        self.repository.save_offer(offer)
        progress.saved_count += 1
        log.info("saved offer: %s (%s)", offer.title, offer.company)
        return None

    def _is_valid_offer_page(self, summary: OfferSummary) -> bool:
        snapshot = self.browser.get_snapshot(include_interactive=False)
        try:
            verdict = self.offer_extractor.verify_detail_page(snapshot)
        except LLMError as exc:
            log.warning("page verdict failed for %s: %s", summary.url, exc)
            return False
        if not verdict.is_valid:
            log.info("skipping %s: %s", summary.url, verdict.reason or "not a job offer page")
        return verdict.is_valid

    def _to_offer(self, summary: OfferSummary, record: DetailRecord) -> ScrapedOffer:
        now = self._now()
        return ScrapedOffer(
            url=summary.url,
            title=record.title,
            company=record.company,
            location=record.location,
            description=record.description,
            posted_at=parse_posted_at(record.posted_at, now.date(), self.posted_at_max_age_days),
            scraped_at=now,
        )

    def _navigate_next(self, pagination: PaginationInfo | None) -> bool:
        if pagination is None:
            return False
        if pagination.next_url:
            self.browser.navigate_to(pagination.next_url)
            return True
        if pagination.next_button_selector:
            try:
                self.browser.click(pagination.next_button_selector)
            except ElementNotFoundError as exc:
                log.warning("pagination stopped: %s", exc)
                return False
            return True
        return False


def _safe_crawl_seed(crawler: SeedCrawler, seed_url: str) -> SeedResult:
    try:
        return crawler.crawl(seed_url)
    except PROGRAMMER_ERRORS:
        raise
    except Exception as exc:
        log.exception("seed %s failed", seed_url)
        return SeedResult(seed_url=seed_url, error=f"unexpected error: {exc}")


def _crawl_seed_with_retry(
    crawler: SeedCrawler,
    seed_url: str,
    *,
    attempts: int,
    delay_seconds: float,
) -> SeedResult:
    saved_total = 0
    result = SeedResult(seed_url=seed_url, error="not attempted")
    for attempt in range(attempts):
        result = _safe_crawl_seed(crawler, seed_url)
        saved_total += result.saved_count
        if not result.transient:
            break
        if attempt < attempts - 1:
            log.warning("seed %s: %s; retrying", seed_url, result.error)
            if delay_seconds > 0:
                time.sleep(delay_seconds)
    return replace(result, saved_count=saved_total)


def run_pipeline(
    settings: Settings,
    *,
    seed_urls: Sequence[str],
    browser: Any = None,
    offer_extractor: OfferExtractor | None = None,
    learner: SchemaLearner | None = None,
    now_utc: datetime | None = None,
) -> PipelineResult:
    run_at_utc = now_utc or datetime.now(timezone.utc)
    run_at_iso = run_at_utc.replace(microsecond=0).isoformat()

    llm_client: LLMClient | None = None
    if offer_extractor is None or learner is None:
        llm_client = LLMClient.from_settings(settings)
        offer_extractor = offer_extractor or OfferExtractor(
            llm_client, fixing_retries=settings.llm_fixing_retries
        )
        learner = learner or SchemaLearner(llm_client, fixing_retries=settings.llm_fixing_retries)

    owns_browser = browser is None
    if owns_browser:
        browser = BrowserSession.from_settings(settings)

    seed_results: list[SeedResult] = []
    try:
        browser.start()
        with StateStore(settings.db_path) as store:
            schema_store = SchemaStore(store)
            processor_kwargs = {"similarity_threshold": settings.similarity_threshold}
            listing_processor = ListingPageProcessor(
                browser, schema_store, offer_extractor, learner, **processor_kwargs
            )
            detail_processor = DetailPageProcessor(
                browser,
                schema_store,
                offer_extractor,
                learner,
                today=lambda: (now_utc or datetime.now(timezone.utc)).date(),
                **processor_kwargs,
            )
            crawler = SeedCrawler(
                browser,
                store,
                listing_processor,
                detail_processor,
                RunContext(),
                offer_extractor=offer_extractor,
                verify_detail_pages=settings.verify_detail_pages,
                posted_at_max_age_days=settings.posted_at_max_age_days,
                now_utc=now_utc,
            )

            for index, seed_url in enumerate(seed_urls, start=1):
                log.info("processing seed [%d/%d]: %s", index, len(seed_urls), seed_url)
                result = _crawl_seed_with_retry(
                    crawler,
                    seed_url,
                    attempts=settings.seed_retry_attempts,
                    delay_seconds=settings.seed_retry_delay_seconds,
                )
                if result.error:
                    log.warning("seed %s finished with error: %s", seed_url, result.error)
                else:
                    log.info(
                        "seed %s done: %d saved, %d duplicates, %d pages",
                        seed_url,
                        result.saved_count,
                        result.duplicate_count,
                        result.pages_visited,
                    )
                seed_results.append(result)

            pipeline_result = PipelineResult(seed_results=seed_results)
            store.log_run(
                run_at_iso,
                seed_count=len(seed_results),
                saved_count=pipeline_result.saved_count,
                error_count=pipeline_result.failed_seed_count,
            )
    finally:
        if owns_browser:
            browser.close()
        if llm_client is not None:
            llm_client.close()

    return pipeline_result
