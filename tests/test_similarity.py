import pytest

from crowsnest.similarity import (
    Invalid,
    Valid,
    is_similar_text,
    jaccard_similarity,
    normalize,
    normalized_equals,
    validate_extraction,
)

SAMPLE_TEXTS = [
    "",
    "   ",
    "Software Engineer",
    "  Software   ENGINEER \n- Remote\t",
    "Zażółć gęślą jaźń",
    "a b a b",
]


@pytest.mark.parametrize("text", SAMPLE_TEXTS)
def test_normalize_is_idempotent(text) -> None:
    assert normalize(normalize(text)) == normalize(text)


def test_normalize_collapses_whitespace_and_case() -> None:
    assert normalize("  Senior\n\tKotlin   Developer ") == "senior kotlin developer"
    assert normalized_equals("ACME  Corp", "acme corp")


@pytest.mark.parametrize(
    ("a", "b"),
    [
        ("Software Engineer", "Software Engineer"),
        ("Software Engineer", "Senior Software Engineer"),
        ("alpha beta", "gamma delta"),
        ("one", "one two three four"),
    ],
)
def test_jaccard_is_bounded(a, b) -> None:
    assert 0.0 <= jaccard_similarity(a, b) <= 1.0


@pytest.mark.parametrize("text", ["Software Engineer", "x", "Build and run services"])
def test_jaccard_of_identical_text_is_one(text) -> None:
    assert jaccard_similarity(text, text) == 1.0


def test_jaccard_edge_cases() -> None:
    assert jaccard_similarity("alpha beta", "gamma delta") == 0.0
    assert jaccard_similarity("", "") == 0.0
    assert jaccard_similarity("a b", "b c") == pytest.approx(1 / 3)


def test_is_similar_text_uses_threshold() -> None:
    assert is_similar_text("build backend services", "build backend services daily")
    assert not is_similar_text("build backend services", "paint the fence")
    assert is_similar_text("a b", "b c", threshold=0.3)


def test_contains_match_accepts_extended_title() -> None:
    result = validate_extraction(
        {"title": "Software Engineer - Remote"},
        {"title": "Software Engineer"},
        exact_fields=(),
        contains_fields=("title",),
        fuzzy_fields=(),
    )
    assert result == Valid()
    assert result.is_valid


def test_exact_mismatch_is_reported_by_field_name() -> None:
    result = validate_extraction(
        {"company": "CompanyA"},
        {"company": "CompanyB"},
        exact_fields=("company",),
        contains_fields=(),
        fuzzy_fields=(),
    )
    assert isinstance(result, Invalid)
    assert not result.is_valid
    assert any("company" in failure for failure in result.failures)


def test_adding_differing_exact_field_breaks_valid_result() -> None:
    schema_fields = {"title": "Data Engineer", "location": "Warsaw"}
    llm_fields = {"title": "Data Engineer", "location": "Warsaw, Poland"}
    fields = {"exact_fields": ("company",), "contains_fields": ("title", "location")}
    assert validate_extraction(schema_fields, llm_fields, **fields).is_valid

    result = validate_extraction(
        {**schema_fields, "company": "Acme"},
        {**llm_fields, "company": "Globex"},
        **fields,
    )
    assert isinstance(result, Invalid)
    assert len(result.failures) == 1
    assert result.failures[0].startswith("company")


def test_fields_missing_from_either_side_are_skipped() -> None:
    result = validate_extraction(
        {"company": "Acme", "description": "long text about the role"},
        {"title": "Anything"},
        exact_fields=("company",),
        contains_fields=("title",),
        fuzzy_fields=("description",),
    )
    assert result == Valid()


def test_only_configured_fields_are_compared() -> None:
    result = validate_extraction(
        {"company": "CompanyA", "title": "Backend Engineer", "description": "payments in python"},
        {"company": "CompanyB", "title": "Backend Engineer", "description": "retail sales role"},
        contains_fields=["title"],
    )
    assert result == Valid()


def test_fuzzy_field_below_threshold_fails() -> None:
    result = validate_extraction(
        {"description": "we build payment systems in python"},
        {"description": "join our marketing team in sales"},
        exact_fields=(),
        contains_fields=(),
        fuzzy_fields=("description",),
        threshold=0.6,
    )
    assert isinstance(result, Invalid)
    assert result.failures[0].startswith("description")
