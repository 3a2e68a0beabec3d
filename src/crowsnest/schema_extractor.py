"""Deterministic extraction of records from the current page using a cached schema."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag
from pydantic import ValidationError
from soupsieve import SelectorSyntaxError

from crowsnest.models import DetailRecord, ListingRecord, OfferSummary, PageType, PaginationInfo
from crowsnest.schemas import DetailField, ListingField, Schema, SchemaField
from crowsnest.snapshot import clean_spaces

log = logging.getLogger(__name__)

R = TypeVar("R")

_WEB_SCHEMES = ("http", "https")


class SchemaPageTypeError(ValueError):
    """A schema was applied to a page type it was not learned for."""


class DocumentSource(Protocol):
    def get_document(self) -> BeautifulSoup: ...


@dataclass(frozen=True)
class Extracted(Generic[R]):
    record: R

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ExtractionFailed:
    reason: str

    @property
    def ok(self) -> bool:
        return False


ListingExtraction = Extracted[ListingRecord] | ExtractionFailed
DetailExtraction = Extracted[DetailRecord] | ExtractionFailed


class _InvalidSelector(Exception):
    pass


def _select(root: BeautifulSoup | Tag, selector: str) -> list[Tag]:
    try:
        return root.select(selector)
    except SelectorSyntaxError as exc:
        raise _InvalidSelector(f"invalid selector {selector!r}: {exc}") from exc


def _select_one(root: BeautifulSoup | Tag, selector: str) -> Tag | None:
    try:
        return root.select_one(selector)
    except SelectorSyntaxError as exc:
        raise _InvalidSelector(f"invalid selector {selector!r}: {exc}") from exc


def _text(element: Tag | None) -> str:
    if element is None:
        return ""
    return clean_spaces(element.get_text(" ", strip=True))


def _href(element: Tag | None) -> str:
    """Absolute http(s) link of ``element`` or its first anchor; pseudo-links count as none."""
    if element is None:
        return ""
    href = (element.get("href") or "").strip()
    if not href:
        anchor = element.select_one("a[href]")
        if anchor is None:
            return ""
        href = (anchor.get("href") or "").strip()
    if urlparse(href).scheme not in _WEB_SCHEMES:
        return ""
    return href


class SchemaExtractor:
    """Applies a :class:`Schema` to the page currently shown by ``source``."""

    def __init__(self, source: DocumentSource):
        self.source = source

    @staticmethod
    def _require_page_type(schema: Schema, expected: PageType) -> None:
        if schema.page_type is not expected:
            raise SchemaPageTypeError(
                f"Schema must be {expected.value}, got {schema.page_type.value}"
            )

    def _resolve_text(self, root: BeautifulSoup | Tag, schema: Schema, name: SchemaField) -> str:
        """Selector text first, then the static value, else blank."""
        selector = schema.selector(name)
        if selector:
            value = _text(_select_one(root, selector))
            if value:
                return value
        return schema.static_value(name) or ""

    def extract_listing(self, schema: Schema) -> ListingExtraction:
        self._require_page_type(schema, PageType.LISTING)

        items_selector = schema.selector(ListingField.OFFER_ITEMS)
        title_selector = schema.selector(ListingField.OFFER_TITLE)
        url_selector = schema.selector(ListingField.OFFER_URL)
        missing = [
            name.value
            for name, selector in (
                (ListingField.OFFER_ITEMS, items_selector),
                (ListingField.OFFER_TITLE, title_selector),
                (ListingField.OFFER_URL, url_selector),
            )
            if not selector
        ]
        if missing:
            return ExtractionFailed(f"schema has no selector for: {', '.join(missing)}")

        doc = self.source.get_document()
        try:
            items = _select(doc, items_selector)
            offers = [offer for item in items if (offer := self._extract_offer(item, schema)) is not None]
        except _InvalidSelector as exc:
            return ExtractionFailed(str(exc))

        if not offers:
            return ExtractionFailed(
                f"no offers extracted ({len(items)} elements matched {items_selector!r})"
            )

        dropped = len(items) - len(offers)
        if dropped:
            log.debug("dropped %d listing items without title or web url", dropped)
        return Extracted(ListingRecord(offers=offers, pagination=self._extract_pagination(doc, schema)))

    def _extract_offer(self, item: Tag, schema: Schema) -> OfferSummary | None:
        title = _text(_select_one(item, schema.selector(ListingField.OFFER_TITLE) or ""))
        url = _href(_select_one(item, schema.selector(ListingField.OFFER_URL) or ""))
        if not title or not url:
            return None
        try:
            return OfferSummary(
                title=title,
                url=url,
                company=self._resolve_text(item, schema, ListingField.OFFER_COMPANY),
                location=self._resolve_text(item, schema, ListingField.OFFER_LOCATION),
            )
        except ValidationError:
            return None

    @staticmethod
    def _extract_pagination(doc: BeautifulSoup, schema: Schema) -> PaginationInfo | None:
        next_url: str | None = None
        next_button: str | None = None
        try:
            url_selector = schema.selector(ListingField.NEXT_PAGE_URL)
            if url_selector:
                next_url = _href(_select_one(doc, url_selector)) or None
            button_selector = schema.selector(ListingField.NEXT_PAGE_BUTTON)
            if button_selector and _select_one(doc, button_selector) is not None:
                next_button = button_selector
        except _InvalidSelector as exc:
            log.debug("pagination lookup skipped: %s", exc)

        pagination = PaginationInfo(next_url=next_url, next_button_selector=next_button)
        return None if pagination.is_empty else pagination

    def extract_detail(self, schema: Schema) -> DetailExtraction:
        self._require_page_type(schema, PageType.DETAIL)

        title_selector = schema.selector(DetailField.TITLE)
        if not title_selector:
            return ExtractionFailed("schema has no selector for: title")

        doc = self.source.get_document()
        try:
            title = _text(_select_one(doc, title_selector))
            company = self._resolve_text(doc, schema, DetailField.COMPANY)
            location = self._resolve_text(doc, schema, DetailField.LOCATION)
            description = self._resolve_text(doc, schema, DetailField.DESCRIPTION)
            requirements = self._resolve_text(doc, schema, DetailField.REQUIREMENTS)
            posted_at = self._resolve_posted_at(doc, schema)
        except _InvalidSelector as exc:
            return ExtractionFailed(str(exc))

        missing = [
            name
            for name, value in (("title", title), ("company", company), ("location", location))
            if not value
        ]
        if missing:
            return ExtractionFailed(f"could not resolve mandatory fields: {', '.join(missing)}")

        return Extracted(
            DetailRecord(
                title=title,
                company=company,
                location=location,
                description=description,
                requirements=requirements or None,
                posted_at=posted_at or None,
            )
        )

    @staticmethod
    def _resolve_posted_at(doc: BeautifulSoup, schema: Schema) -> str:
        selector = schema.selector(DetailField.POSTED_AT)
        if not selector:
            return ""
        element = _select_one(doc, selector)
        if element is None:
            return ""
        return (element.get("datetime") or "").strip() or _text(element)


def _non_blank(fields: dict[str, str | None]) -> dict[str, str]:
    return {name: value for name, value in fields.items() if value and value.strip()}


def detail_to_fields(record: DetailRecord) -> dict[str, str]:
    """Field map for validation; blank values are left out, not compared as empty."""
    return _non_blank(
        {
            "title": record.title,
            "company": record.company,
            "location": record.location,
            "description": record.description,
            "requirements": record.requirements,
            "postedAt": record.posted_at,
        }
    )


def offer_summary_to_fields(offer: OfferSummary) -> dict[str, str]:
    return _non_blank(
        {
            "title": offer.title,
            "company": offer.company,
            "location": offer.location,
            "url": offer.url,
        }
    )
