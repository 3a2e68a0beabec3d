"""Cached extraction schemas keyed by ``(domain, page type)``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from crowsnest.models import PageType

log = logging.getLogger(__name__)


class ListingField(str, Enum):
    OFFER_ITEMS = "offerItems"
    OFFER_TITLE = "offerTitle"
    OFFER_URL = "offerUrl"
    OFFER_COMPANY = "offerCompany"
    OFFER_LOCATION = "offerLocation"
    NEXT_PAGE_URL = "nextPageUrl"
    NEXT_PAGE_BUTTON = "nextPageButton"


class DetailField(str, Enum):
    TITLE = "title"
    COMPANY = "company"
    LOCATION = "location"
    DESCRIPTION = "description"
    REQUIREMENTS = "requirements"
    POSTED_AT = "postedAt"


SchemaField = ListingField | DetailField

MANDATORY_FIELDS: dict[PageType, tuple[SchemaField, ...]] = {
    PageType.LISTING: (ListingField.OFFER_ITEMS, ListingField.OFFER_TITLE, ListingField.OFFER_URL),
    PageType.DETAIL: (DetailField.TITLE, DetailField.COMPANY, DetailField.LOCATION),
}

class IncompleteSchemaError(ValueError):
    """Raised when a schema lacks a selector or static value for a mandatory field."""


@dataclass(frozen=True)
class Schema:
    """CSS selectors (and literal fallbacks) that extract one page type of one domain.

    The maps are keyed by the string value of the page type's field enum, which
    is also how they are persisted. Use :meth:`selector` and :meth:`static_value`
    to read them with enum members.
    """

    domain: str
    page_type: PageType
    selectors: dict[str, str] = field(default_factory=dict)
    static_values: dict[str, str] = field(default_factory=dict)

    def selector(self, name: SchemaField) -> str | None:
        value = (self.selectors.get(name.value) or "").strip()
        return value or None

    def static_value(self, name: SchemaField) -> str | None:
        value = (self.static_values.get(name.value) or "").strip()
        return value or None

    def is_available(self, name: SchemaField) -> bool:
        return self.selector(name) is not None or self.static_value(name) is not None

    def missing_fields(self) -> list[str]:
        return [name.value for name in MANDATORY_FIELDS[self.page_type] if not self.is_available(name)]


def is_schema_complete(schema: Schema) -> bool:
    return not schema.missing_fields()


class SchemaRepository(Protocol):
    def find_schema(self, domain: str, page_type: PageType) -> Schema | None: ...

    def find_schemas(self, domain: str) -> dict[PageType, Schema]: ...

    def save_schema(self, schema: Schema) -> None: ...


class SchemaStore:
    """Keyed schema cache in front of a persistent repository.

    Refuses to persist schemas whose mandatory fields are unavailable.
    """

    def __init__(self, repository: SchemaRepository):
        self.repository = repository

    def find(self, domain: str, page_type: PageType) -> Schema | None:
        return self.repository.find_schema(domain, page_type)

    def find_by_domain(self, domain: str) -> dict[PageType, Schema]:
        return self.repository.find_schemas(domain)

    def save(self, schema: Schema) -> None:
        missing = schema.missing_fields()
        if missing:
            raise IncompleteSchemaError(
                f"{schema.page_type.value} schema for {schema.domain} is missing: {', '.join(missing)}"
            )
        self.repository.save_schema(schema)
        log.info("saved %s schema for %s", schema.page_type.value, schema.domain)
