"""LLM-guided learning of CSS selector schemas.

The model sees a cleaned copy of the page HTML plus the record it already
extracted from the same page, and proposes selectors that reproduce that
record. Static values cover fields that have no reliable selector, such as a
company name that only appears inside running text.
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, Field

from crowsnest.llm import LLMClient
from crowsnest.models import DetailRecord, ListingRecord, PageType
from crowsnest.schemas import DetailField, ListingField, Schema
from crowsnest.snapshot import clean_page_html

log = logging.getLogger(__name__)

_SELECTOR_RULES = """Selector rules:
- SIMPLEST wins. Prefer a single class or attribute selector over long ancestor paths.
- For data-testid/data-id with dynamic values use prefix matching, e.g. [data-testid^="card-"].
- NEVER use hashed or generated classes (sc-*, css-*, random 5-8 character strings).
- Use null for a selector you cannot find reliably."""

LISTING_LEARNING_PROMPT = """You are a senior web scraping engineer. Below is the cleaned HTML of a
job listing page and the offers that were already read from it.

Return CSS selectors that reproduce those offers:
- offer_items: matches EVERY offer card on the page
- offer_title, offer_url, offer_company, offer_location: RELATIVE to an offer card;
  offer_url must target the <a> element holding the detail link
- next_page_url: absolute selector of the <a> pointing to the next page, or null
- next_page_button: absolute selector of a next-page button without a URL, or null
- static_company / static_location: literal values to use when every offer shares
  them and no selector exists (for example a single-company career site), else null

{rules}

Respond with a JSON object matching this schema:
{schema}"""

DETAIL_LEARNING_PROMPT = """You are a senior web scraping engineer. Below is the cleaned HTML of a
single job offer page and the details that were already read from it.

Return absolute CSS selectors for title, company, location, description,
requirements and posted_at. title is mandatory. When company or location cannot be
located by a selector (for example it only appears inside a sentence), return
it as static_company / static_location instead.

{rules}

Respond with a JSON object matching this schema:
{schema}"""


class SchemaLearningError(Exception):
    """The model did not produce a usable schema."""


class LearnedListingSelectors(BaseModel):
    offer_items: str | None = Field(default=None, description="Selector matching every offer card")
    offer_title: str | None = Field(default=None, description="Title selector relative to a card")
    offer_url: str | None = Field(default=None, description="Link selector relative to a card")
    offer_company: str | None = Field(default=None, description="Company selector relative to a card")
    offer_location: str | None = Field(default=None, description="Location selector relative to a card")
    next_page_url: str | None = Field(default=None, description="Selector of the next-page link")
    next_page_button: str | None = Field(default=None, description="Selector of the next-page button")
    static_company: str | None = Field(default=None, description="Company shared by all offers")
    static_location: str | None = Field(default=None, description="Location shared by all offers")


class LearnedDetailSelectors(BaseModel):
    title: str | None = Field(default=None, description="Selector of the job title")
    company: str | None = Field(default=None, description="Selector of the company name")
    location: str | None = Field(default=None, description="Selector of the job location")
    description: str | None = Field(default=None, description="Selector of the description")
    requirements: str | None = Field(default=None, description="Selector of the requirements")
    posted_at: str | None = Field(default=None, description="Selector of the posting date")
    static_company: str | None = Field(default=None, description="Literal company name")
    static_location: str | None = Field(default=None, description="Literal job location")


def _compact(values: dict[str, str | None]) -> dict[str, str]:
    return {name: value.strip() for name, value in values.items() if value and value.strip()}


class SchemaLearner:
    def __init__(self, client: LLMClient, *, fixing_retries: int = 2, sample_size: int = 5):
        self.client = client
        self.fixing_retries = fixing_retries
        self.sample_size = sample_size

    def _user_prompt(self, html: str, base_url: str, sample: dict) -> str:
        cleaned = clean_page_html(html, base_url=base_url)
        return (
            f"PAGE URL: {base_url}\n\nALREADY EXTRACTED:\n{json.dumps(sample, indent=2)}\n\n"
            f"PAGE HTML:\n{cleaned}"
        )

    def learn_listing(self, domain: str, *, html: str, base_url: str, sample: ListingRecord) -> Schema:
        payload = sample.model_dump(mode="json")
        payload["offers"] = payload["offers"][: self.sample_size]
        learned = self.client.extract(
            LearnedListingSelectors,
            system=LISTING_LEARNING_PROMPT.format(
                rules=_SELECTOR_RULES,
                schema=json.dumps(LearnedListingSelectors.model_json_schema(), indent=2),
            ),
            user=self._user_prompt(html, base_url, payload),
            fixing_retries=self.fixing_retries,
        )
        schema = Schema(
            domain=domain,
            page_type=PageType.LISTING,
            selectors=_compact(
                {
                    ListingField.OFFER_ITEMS.value: learned.offer_items,
                    ListingField.OFFER_TITLE.value: learned.offer_title,
                    ListingField.OFFER_URL.value: learned.offer_url,
                    ListingField.OFFER_COMPANY.value: learned.offer_company,
                    ListingField.OFFER_LOCATION.value: learned.offer_location,
                    ListingField.NEXT_PAGE_URL.value: learned.next_page_url,
                    ListingField.NEXT_PAGE_BUTTON.value: learned.next_page_button,
                }
            ),
            static_values=_compact(
                {
                    ListingField.OFFER_COMPANY.value: learned.static_company,
                    ListingField.OFFER_LOCATION.value: learned.static_location,
                }
            ),
        )
        return self._checked(schema)

    def learn_detail(self, domain: str, *, html: str, base_url: str, sample: DetailRecord) -> Schema:
        learned = self.client.extract(
            LearnedDetailSelectors,
            system=DETAIL_LEARNING_PROMPT.format(
                rules=_SELECTOR_RULES,
                schema=json.dumps(LearnedDetailSelectors.model_json_schema(), indent=2),
            ),
            user=self._user_prompt(html, base_url, sample.model_dump(mode="json")),
            fixing_retries=self.fixing_retries,
        )
        schema = Schema(
            domain=domain,
            page_type=PageType.DETAIL,
            selectors=_compact(
                {
                    DetailField.TITLE.value: learned.title,
                    DetailField.COMPANY.value: learned.company,
                    DetailField.LOCATION.value: learned.location,
                    DetailField.DESCRIPTION.value: learned.description,
                    DetailField.REQUIREMENTS.value: learned.requirements,
                    DetailField.POSTED_AT.value: learned.posted_at,
                }
            ),
            static_values=_compact(
                {
                    DetailField.COMPANY.value: learned.static_company,
                    DetailField.LOCATION.value: learned.static_location,
                }
            ),
        )
        return self._checked(schema)

    @staticmethod
    def _checked(schema: Schema) -> Schema:
        missing = schema.missing_fields()
        if missing:
            raise SchemaLearningError(
                f"learned {schema.page_type.value} schema for {schema.domain} lacks: {', '.join(missing)}"
            )
        log.info(
            "learned %s schema for %s: %s",
            schema.page_type.value,
            schema.domain,
            schema.selectors,
        )
        return schema
