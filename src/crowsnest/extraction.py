from __future__ import annotations

import json
from datetime import date, timedelta

from pydantic import BaseModel

from crowsnest.llm import LLMClient
from crowsnest.models import DetailRecord, ListingRecord, PageVerdict

LISTING_SYSTEM_PROMPT = """You extract structured data from the listing page of a job board.

REQUIRED FIELDS for each job:
- title: job title, exact text from the page
- company: company name, exact text
- location: job location, exact text (empty string if not shown)
- url: full absolute URL of the detail page, taken from the links section

PAGINATION:
- If a direct URL to the next page is visible, put it in pagination.next_url
- If only a button is available, put its CSS selector from the interactive
  elements section in pagination.next_button_selector
- Prefer the URL when both are available; use null for pagination when there is no next page

Respond with a JSON object matching this schema:
{schema}"""

DETAIL_SYSTEM_PROMPT = """You extract structured data from a single job offer page. Today is {weekday}, {today}.

REQUIRED FIELDS:
- title: job title
- company: company name
- location: job location
- description: full job description text

OPTIONAL FIELDS:
- requirements: candidate requirements, if listed separately
- posted_at: posting date as YYYY-MM-DD, null if unknown. Examples:
  - "3 weeks ago" -> "{three_weeks_ago}"
  - "yesterday" -> "{yesterday}"
  - "March 15, 2024" -> "2024-03-15"

Respond with a JSON object matching this schema:
{schema}"""

VERDICT_SYSTEM_PROMPT = """You check whether the current page is a valid job offer page.

A VALID job offer page:
- contains a clear job title, company name and job description
- is NOT a captcha, login wall or "page not found" error
- is NOT a list of jobs (search results)

Set is_valid=true ONLY for a single, accessible job offer.

Respond with a JSON object matching this schema:
{schema}"""


def _schema_text(model: type[BaseModel]) -> str:
    return json.dumps(model.model_json_schema(), indent=2)


def _user_prompt(snapshot: str, instruction: str) -> str:
    return f"{snapshot}\n---\nInstruction: {instruction}"


class OfferExtractor:
    """LLM extraction of listing and detail records from page snapshots."""

    def __init__(self, client: LLMClient, *, fixing_retries: int = 2):
        self.client = client
        self.fixing_retries = fixing_retries

    def extract_listing(self, snapshot: str) -> ListingRecord:
        return self.client.extract(
            ListingRecord,
            system=LISTING_SYSTEM_PROMPT.format(schema=_schema_text(ListingRecord)),
            user=_user_prompt(snapshot, "Extract the job listings from this page."),
            fixing_retries=self.fixing_retries,
        )

    def extract_detail(self, snapshot: str, today: date | None = None) -> DetailRecord:
        today = today or date.today()
        system = DETAIL_SYSTEM_PROMPT.format(
            weekday=today.strftime("%A"),
            today=today.isoformat(),
            three_weeks_ago=(today - timedelta(weeks=3)).isoformat(),
            yesterday=(today - timedelta(days=1)).isoformat(),
            schema=_schema_text(DetailRecord),
        )
        return self.client.extract(
            DetailRecord,
            system=system,
            user=_user_prompt(snapshot, "Extract the job offer details from this page."),
            fixing_retries=self.fixing_retries + 1,
        )

    def verify_detail_page(self, snapshot: str) -> PageVerdict:
        return self.client.extract(
            PageVerdict,
            system=VERDICT_SYSTEM_PROMPT.format(schema=_schema_text(PageVerdict)),
            user=_user_prompt(snapshot, "Decide whether this page is a valid job offer."),
            fixing_retries=self.fixing_retries,
        )
