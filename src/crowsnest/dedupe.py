from __future__ import annotations

from enum import Enum
from typing import Protocol

from crowsnest.models import OfferSummary, ScrapedOffer


class DuplicateCheck(str, Enum):
    NOT_DUPLICATE = "not_duplicate"
    URL_DUPLICATE = "url_duplicate"
    TITLE_COMPANY_DUPLICATE = "title_company_duplicate"

    @property
    def is_duplicate(self) -> bool:
        return self is not DuplicateCheck.NOT_DUPLICATE


class OfferRepository(Protocol):
    def exists_by_url(self, url: str) -> bool: ...

    def find_by_title_and_company(self, title: str, company: str) -> ScrapedOffer | None: ...

    def save_offer(self, offer: ScrapedOffer) -> str: ...


def check_duplicate(summary: OfferSummary, repository: OfferRepository) -> DuplicateCheck:
    """URL first, then exact ``(title, company)``; any match means skip."""
    if repository.exists_by_url(summary.url):
        return DuplicateCheck.URL_DUPLICATE
    if summary.title and summary.company:
        if repository.find_by_title_and_company(summary.title, summary.company) is not None:
            return DuplicateCheck.TITLE_COMPANY_DUPLICATE
    return DuplicateCheck.NOT_DUPLICATE
