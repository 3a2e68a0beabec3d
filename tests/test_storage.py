from datetime import datetime, timezone

from crowsnest.models import PageType, ScrapedOffer
from crowsnest.schemas import Schema
from crowsnest.storage import StateStore


def _sample_offer(suffix: str = "1", **overrides) -> ScrapedOffer:
    values = {
        "url": f"https://jobs.example.com/offer/{suffix}",
        "title": "Backend Engineer",
        "company": "Acme",
        "location": "Berlin",
        "description": "Build services.",
        "posted_at": datetime(2026, 10, 1, tzinfo=timezone.utc),
        "scraped_at": datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return ScrapedOffer(**values)


def test_save_offer_is_idempotent_by_url(tmp_path) -> None:
    with StateStore(tmp_path / "state.sqlite") as store:
        first_id = store.save_offer(_sample_offer("1"))
        second_id = store.save_offer(_sample_offer("1", title="Renamed"))

        assert first_id == second_id
        assert store.count_offers() == 1
        assert store.exists_by_url("https://jobs.example.com/offer/1")
        assert not store.exists_by_url("https://jobs.example.com/offer/2")


def test_find_by_title_and_company_round_trips_dates(tmp_path) -> None:
    with StateStore(tmp_path / "state.sqlite") as store:
        store.save_offer(_sample_offer("1"))

        found = store.find_by_title_and_company("Backend Engineer", "Acme")
        assert found is not None
        assert found.url == "https://jobs.example.com/offer/1"
        assert found.posted_at == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert found.id is not None

        assert store.find_by_title_and_company("Backend Engineer", "Other") is None


def test_save_schema_overwrites_same_key(tmp_path) -> None:
    db_path = tmp_path / "state.sqlite"
    first = Schema(
        domain="jobs.example.com",
        page_type=PageType.DETAIL,
        selectors={"title": "h1"},
        static_values={"company": "Acme", "location": "Remote"},
    )
    second = Schema(
        domain="jobs.example.com",
        page_type=PageType.DETAIL,
        selectors={"title": "h1.job", "company": ".company", "location": ".loc"},
    )

    with StateStore(db_path) as store:
        store.save_schema(first)
        store.save_schema(second)

    with StateStore(db_path) as store:
        assert store.find_schema("jobs.example.com", PageType.DETAIL) == second
        assert store.find_schema("jobs.example.com", PageType.LISTING) is None
        assert store.find_schemas("jobs.example.com") == {PageType.DETAIL: second}
        assert store.find_schemas("other.example.com") == {}


def test_log_run(tmp_path) -> None:
    with StateStore(tmp_path / "state.sqlite") as store:
        store.log_run("2026-10-18T09:00:00+00:00", seed_count=2, saved_count=5, error_count=1)
        store.log_run("2026-10-18T10:00:00+00:00", seed_count=2, saved_count=0, error_count=0)
        assert store.count_runs() == 2
