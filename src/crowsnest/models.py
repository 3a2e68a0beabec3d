from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class PageType(str, Enum):
    LISTING = "LISTING"
    DETAIL = "DETAIL"


class OfferSummary(BaseModel):
    """One offer as it appears on a listing page."""

    title: str = Field(description="The job title, exact text from the page")
    company: str = Field(default="", description="The company name, exact text from the page")
    location: str = Field(default="", description="The job location if visible")
    url: str = Field(description="The absolute URL of the offer detail page")

    @field_validator("title", "company", "location", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("offer url must not be blank")
        return value


class PaginationInfo(BaseModel):
    next_url: str | None = Field(
        default=None, description="Direct absolute URL of the next page, if available"
    )
    next_button_selector: str | None = Field(
        default=None, description="CSS selector of the next-page button, if no URL is available"
    )

    @field_validator("next_url", "next_button_selector", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def is_empty(self) -> bool:
        return self.next_url is None and self.next_button_selector is None


class ListingRecord(BaseModel):
    """Offers found on a listing page plus the way to the next page."""

    offers: list[OfferSummary] = Field(default_factory=list, description="Job offers found on the page")
    pagination: PaginationInfo | None = Field(
        default=None, description="Pagination controls for the next page, null if there is none"
    )

    @field_validator("offers", mode="before")
    @classmethod
    def _drop_offers_without_url(cls, value: object) -> object:
        if not isinstance(value, list):
            return value
        return [
            item
            for item in value
            if not isinstance(item, dict) or str(item.get("url") or "").strip()
        ]


class DetailRecord(BaseModel):
    """Fields of a single offer page. Title, company and location are mandatory."""

    title: str = Field(description="The job title")
    company: str = Field(description="The company name")
    location: str = Field(description="The job location")
    description: str = Field(default="", description="Full description of the job")
    requirements: str | None = Field(default=None, description="Candidate requirements, if listed separately")
    posted_at: str | None = Field(
        default=None, description="Posting date as YYYY-MM-DD, null if unknown"
    )

    @field_validator("title", "company", "location")
    @classmethod
    def _require_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_blank(cls, value: object) -> str:
        return "" if value is None else str(value).strip()


class PageVerdict(BaseModel):
    is_valid: bool = Field(description="True only for a single, accessible job offer page")
    reason: str = Field(default="", description="Short reasoning, e.g. 'Page is a captcha'")


@dataclass(frozen=True)
class ScrapedOffer:
    url: str
    title: str
    company: str
    location: str
    description: str
    posted_at: datetime | None = None
    scraped_at: datetime | None = None
    id: str | None = None


@dataclass(frozen=True)
class SeedResult:
    seed_url: str
    pages_visited: int = 0
    saved_count: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0
    error: str | None = None
    transient: bool = False


@dataclass(frozen=True)
class PipelineResult:
    seed_results: list[SeedResult] = field(default_factory=list)

    @property
    def saved_count(self) -> int:
        return sum(result.saved_count for result in self.seed_results)

    @property
    def error_messages(self) -> list[str]:
        return [f"{result.seed_url}: {result.error}" for result in self.seed_results if result.error]

    @property
    def failed_seed_count(self) -> int:
        return sum(1 for result in self.seed_results if result.error)

    @property
    def success_seed_count(self) -> int:
        return len(self.seed_results) - self.failed_seed_count
