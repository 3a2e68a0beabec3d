from bs4 import BeautifulSoup

from crowsnest.snapshot import (
    button_selector,
    clean_page_html,
    extract_buttons,
    extract_links,
    parse_document,
    render_snapshot,
)

PAGE_HTML = """
<html>
<head><title>Jobs</title><script>var tracking = 1;</script></head>
<body>
  <h1>Open positions</h1>
  <a href="/jobs/1">Backend Engineer</a>
  <a href="https://cdn.example.org/jobs/2">Data Analyst</a>
  <a href="javascript:void(0)">Open menu</a>
  <a href="#top">Top</a>
  <a href="mailto:hr@example.com">Mail us</a>
  <button id="next-btn" class="btn primary">Next</button>
  <button aria-label="Load more jobs" class="btn">More</button>
  <button class="pager btn">Page 3</button>
  <button>No selector</button>
</body>
</html>
"""


def _button(markup: str):
    return BeautifulSoup(markup, "html.parser").button


def test_button_selector_priority() -> None:
    assert button_selector(_button('<button id="go" aria-label="Go" class="a">x</button>')) == "#go"
    assert (
        button_selector(_button('<button aria-label="Say &quot;hi&quot;" class="a">x</button>'))
        == 'button[aria-label="Say \\"hi\\""]'
    )
    assert button_selector(_button('<button class="first second">x</button>')) == "button.first"
    assert button_selector(_button("<button>x</button>")) is None


def test_links_are_absolute_and_skip_pseudo_links() -> None:
    doc = parse_document(PAGE_HTML, "https://jobs.example.com/search?q=python")

    links = extract_links(doc)

    assert [link.href for link in links] == [
        "https://jobs.example.com/jobs/1",
        "https://cdn.example.org/jobs/2",
    ]


BASE_HREF_HTML = """
<html>
<head><base href="https://cdn.example.com/app/"></head>
<body><a href="jobs/1">Job one</a><a href="/about">About</a></body>
</html>
"""


def test_links_resolve_against_base_href() -> None:
    doc = parse_document(BASE_HREF_HTML, "https://jobs.example.com/search")

    assert [anchor["href"] for anchor in doc.select("a")] == [
        "https://cdn.example.com/app/jobs/1",
        "https://cdn.example.com/about",
    ]

    snapshot = render_snapshot(BASE_HREF_HTML, url="https://jobs.example.com/search", title="Jobs")
    assert "- [Job one](https://cdn.example.com/app/jobs/1)" in snapshot


def test_relative_base_href_resolves_against_page_url() -> None:
    html = BASE_HREF_HTML.replace("https://cdn.example.com/app/", "/board/")

    doc = parse_document(html, "https://jobs.example.com/search")

    assert doc.select_one("a")["href"] == "https://jobs.example.com/board/jobs/1"


def test_buttons_without_selector_are_not_exposed() -> None:
    doc = parse_document(PAGE_HTML, "https://jobs.example.com/")

    buttons = extract_buttons(doc)

    assert [(button.label, button.selector) for button in buttons] == [
        ("Next", "#next-btn"),
        ("Load more jobs", 'button[aria-label="Load more jobs"]'),
        ("Page 3", "button.pager"),
    ]


def test_render_snapshot_sections() -> None:
    snapshot = render_snapshot(PAGE_HTML, url="https://jobs.example.com/search", title="Jobs")

    assert snapshot.startswith("## Page: Jobs")
    assert "Open positions" in snapshot
    assert "tracking" not in snapshot
    assert "## Links Found (Absolute):" in snapshot
    assert "- [Backend Engineer](https://jobs.example.com/jobs/1)" in snapshot
    assert "## Interactive Elements:" in snapshot
    assert '- [Button: Next] (click: "#next-btn")' in snapshot


def test_render_snapshot_without_interactive_elements() -> None:
    snapshot = render_snapshot(
        PAGE_HTML, url="https://jobs.example.com/search", title="Jobs", include_interactive=False
    )

    assert "## Links Found (Absolute):" not in snapshot
    assert "## Interactive Elements:" not in snapshot
    assert "Open positions" in snapshot


def test_render_snapshot_reports_empty_sections() -> None:
    snapshot = render_snapshot("<p>Nothing here</p>", url="https://jobs.example.com/", title="Empty")

    assert "No links found." in snapshot
    assert "No buttons found." in snapshot


def test_clean_page_html_keeps_structure_attributes_only() -> None:
    html = (
        '<html><head><style>.x{}</style></head><body>'
        '<div class="card" style="color:red" data-testid="job-1" onclick="go()">'
        '<a href="/jobs/1" target="_blank">Engineer</a></div></body></html>'
    )

    cleaned = clean_page_html(html, base_url="https://jobs.example.com/")

    assert 'class="card"' in cleaned
    assert 'data-testid="job-1"' in cleaned
    assert 'href="https://jobs.example.com/jobs/1"' in cleaned
    assert "style=" not in cleaned
    assert "onclick" not in cleaned
    assert "target" not in cleaned
    assert ".x{}" not in cleaned


def test_clean_page_html_truncates() -> None:
    html = "<body>" + "<p>row</p>" * 100 + "</body>"

    cleaned = clean_page_html(html, base_url="https://jobs.example.com/", max_chars=50)

    assert cleaned.endswith("<!-- TRUNCATED -->")
    assert len(cleaned) < 80
