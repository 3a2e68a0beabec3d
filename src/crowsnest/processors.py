"""Per-page state machine deciding between cached schemas, revalidation and learning.

For one ``(domain, page type)`` a page visit goes through:

1. no schema cached: extract with the LLM, learn a schema from that record,
   then validate the learned schema against it;
2. schema cached and already validated in this run: apply it directly,
   without any LLM call;
3. schema cached but not yet validated in this run: apply it and the LLM,
   compare the two records, and only trust the schema if they agree.

A validation failure is returned as :class:`SchemaExtractionFailed`; the LLM
record is never handed back in place of the schema record.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Generic, Protocol, TypeVar

from bs4 import BeautifulSoup

from crowsnest.browser import BrowserNotStartedError
from crowsnest.extraction import OfferExtractor
from crowsnest.learning import SchemaLearner, SchemaLearningError
from crowsnest.llm import LLMError
from crowsnest.models import DetailRecord, ListingRecord, PageType
from crowsnest.schema_extractor import (
    ExtractionFailed,
    Extracted,
    SchemaExtractor,
    SchemaPageTypeError,
    detail_to_fields,
    offer_summary_to_fields,
)
from crowsnest.schemas import Schema, SchemaStore
from crowsnest.similarity import (
    DEFAULT_SIMILARITY_THRESHOLD,
    Invalid,
    Valid,
    ValidationResult,
    validate_extraction,
)

log = logging.getLogger(__name__)

R = TypeVar("R")

PROGRAMMER_ERRORS = (BrowserNotStartedError, SchemaPageTypeError)


class PageSource(Protocol):
    def get_snapshot(self, include_interactive: bool = True) -> str: ...

    def get_html(self) -> str: ...

    def get_current_url(self) -> str: ...

    def get_document(self) -> BeautifulSoup: ...


@dataclass
class RunContext:
    """State scoped to one crawl run: which schemas were validated during it.

    Not thread-safe; workers sharing one run must synchronise access themselves.
    """

    validated: set[tuple[str, PageType]] = field(default_factory=set)

    def is_validated(self, domain: str, page_type: PageType) -> bool:
        return (domain, page_type) in self.validated

    def mark_validated(self, domain: str, page_type: PageType) -> None:
        self.validated.add((domain, page_type))


class ResultSource(str, Enum):
    CACHED = "cached"
    REVALIDATED = "revalidated"
    LEARNED = "learned"


@dataclass(frozen=True)
class PageSuccess(Generic[R]):
    record: R
    source: ResultSource

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class SchemaExtractionFailed:
    reason: str

    @property
    def ok(self) -> bool:
        return False


class BasePageProcessor(ABC, Generic[R]):
    page_type: PageType
    include_interactive: bool = False

    def __init__(
        self,
        page: PageSource,
        schema_store: SchemaStore,
        offer_extractor: OfferExtractor,
        learner: SchemaLearner,
        *,
        schema_extractor: SchemaExtractor | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ):
        self.page = page
        self.schema_store = schema_store
        self.offer_extractor = offer_extractor
        self.learner = learner
        self.schema_extractor = schema_extractor or SchemaExtractor(page)
        self.similarity_threshold = similarity_threshold

    @abstractmethod
    def _extract_with_llm(self, snapshot: str) -> R: ...

    @abstractmethod
    def _extract_with_schema(self, schema: Schema) -> Extracted[R] | ExtractionFailed: ...

    @abstractmethod
    def _learn(self, domain: str, llm_record: R) -> Schema: ...

    @abstractmethod
    def _validate(self, schema_record: R, llm_record: R) -> ValidationResult: ...

    def process(self, domain: str, run: RunContext) -> PageSuccess[R] | SchemaExtractionFailed:
        label = f"{self.page_type.value} {domain}"
        try:
            schema = self.schema_store.find(domain, self.page_type)
            if schema is not None and run.is_validated(domain, self.page_type):
                result = self._from_validated_schema(schema)
            else:
                result = self._learn_or_validate(domain, schema, run)
        except PROGRAMMER_ERRORS:
            raise
        except Exception as exc:
            result = SchemaExtractionFailed(f"unexpected {type(exc).__name__}: {exc}")

        if isinstance(result, SchemaExtractionFailed):
            log.warning("%s: %s", label, result.reason)
        else:
            log.info("%s: extracted via %s schema", label, result.source.value)
        return result

    def _from_validated_schema(self, schema: Schema) -> PageSuccess[R] | SchemaExtractionFailed:
        extraction = self._extract_with_schema(schema)
        if isinstance(extraction, ExtractionFailed):
            return SchemaExtractionFailed(f"validated schema extraction failed: {extraction.reason}")
        return PageSuccess(extraction.record, ResultSource.CACHED)

    def _learn_or_validate(
        self, domain: str, schema: Schema | None, run: RunContext
    ) -> PageSuccess[R] | SchemaExtractionFailed:
        snapshot = self.page.get_snapshot(include_interactive=self.include_interactive)
        try:
            llm_record = self._extract_with_llm(snapshot)
        except LLMError as exc:
            return SchemaExtractionFailed(f"LLM extraction failed: {exc}")

        source = ResultSource.REVALIDATED
        if schema is None:
            try:
                schema = self._learn(domain, llm_record)
            except (LLMError, SchemaLearningError) as exc:
                return SchemaExtractionFailed(f"schema learning failed: {exc}")
            source = ResultSource.LEARNED

        extraction = self._extract_with_schema(schema)
        if isinstance(extraction, ExtractionFailed):
            return SchemaExtractionFailed(f"{source.value} schema extraction failed: {extraction.reason}")

        validation = self._validate(extraction.record, llm_record)
        if isinstance(validation, Invalid):
            return SchemaExtractionFailed(
                f"schema validation failed - extracted data doesn't match LLM: {'; '.join(validation.failures)}"
            )

        self.schema_store.save(schema)
        run.mark_validated(domain, self.page_type)
        return PageSuccess(extraction.record, source)


def _url_key(url: str) -> str:
    return url.split("#", 1)[0].rstrip("/")


class ListingPageProcessor(BasePageProcessor[ListingRecord]):
    page_type = PageType.LISTING
    include_interactive = True

    def __init__(self, *args, validation_sample_size: int = 5, **kwargs):
        super().__init__(*args, **kwargs)
        self.validation_sample_size = validation_sample_size

    def _extract_with_llm(self, snapshot: str) -> ListingRecord:
        return self.offer_extractor.extract_listing(snapshot)

    def _extract_with_schema(self, schema: Schema) -> Extracted[ListingRecord] | ExtractionFailed:
        return self.schema_extractor.extract_listing(schema)

    def _learn(self, domain: str, llm_record: ListingRecord) -> Schema:
        return self.learner.learn_listing(
            domain,
            html=self.page.get_html(),
            base_url=self.page.get_current_url(),
            sample=llm_record,
        )

    def _validate(self, schema_record: ListingRecord, llm_record: ListingRecord) -> ValidationResult:
        sample = llm_record.offers[: self.validation_sample_size]
        if not sample:
            return Invalid(("offers: model found no offers to compare against",))

        schema_offers = {_url_key(offer.url): offer for offer in schema_record.offers}
        failures: list[str] = []
        matched = 0
        for llm_offer in sample:
            schema_offer = schema_offers.get(_url_key(llm_offer.url))
            if schema_offer is None:
                continue
            matched += 1
            result = validate_extraction(
                offer_summary_to_fields(schema_offer),
                offer_summary_to_fields(llm_offer),
                exact_fields=("company",),
                contains_fields=("title", "location"),
                fuzzy_fields=(),
                threshold=self.similarity_threshold,
            )
            if isinstance(result, Invalid):
                failures.extend(f"{llm_offer.url}: {failure}" for failure in result.failures)

        if matched == 0:
            return Invalid(("url: no schema offer shares a url with the model's offers",))
        if failures:
            return Invalid(tuple(failures))
        return Valid()


class DetailPageProcessor(BasePageProcessor[DetailRecord]):
    page_type = PageType.DETAIL
    include_interactive = False

    def __init__(self, *args, today: Callable[[], date] = date.today, **kwargs):
        super().__init__(*args, **kwargs)
        self.today = today

    def _extract_with_llm(self, snapshot: str) -> DetailRecord:
        return self.offer_extractor.extract_detail(snapshot, today=self.today())

    def _extract_with_schema(self, schema: Schema) -> Extracted[DetailRecord] | ExtractionFailed:
        return self.schema_extractor.extract_detail(schema)

    def _learn(self, domain: str, llm_record: DetailRecord) -> Schema:
        return self.learner.learn_detail(
            domain,
            html=self.page.get_html(),
            base_url=self.page.get_current_url(),
            sample=llm_record,
        )

    def _validate(self, schema_record: DetailRecord, llm_record: DetailRecord) -> ValidationResult:
        return validate_extraction(
            detail_to_fields(schema_record),
            detail_to_fields(llm_record),
            exact_fields=("company",),
            contains_fields=("title", "location"),
            fuzzy_fields=("description",),
            threshold=self.similarity_threshold,
        )
