"""DOM snapshots for LLM consumption and selector queries."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify

_SKIPPED_HREF_PREFIXES = ("javascript:", "#", "mailto:", "tel:")
_NOISE_TAGS = ("script", "style", "noscript", "template", "svg", "iframe")
_LEARNING_NOISE_TAGS = _NOISE_TAGS + ("link", "meta", "head")
_KEPT_ATTRS = {"id", "class", "href", "role", "aria-label", "itemprop", "datetime", "name", "type"}
_KEPT_ATTR_PREFIXES = ("data-",)


@dataclass(frozen=True)
class PageLink:
    text: str
    href: str


@dataclass(frozen=True)
class PageButton:
    label: str
    selector: str


def clean_spaces(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def make_links_absolute(doc: BeautifulSoup, base_url: str) -> None:
    for anchor in doc.select("a[href]"):
        href = anchor.get("href", "").strip()
        if not href or href.startswith(_SKIPPED_HREF_PREFIXES):
            continue
        anchor["href"] = urljoin(base_url, href)


def document_base_url(doc: BeautifulSoup, page_url: str) -> str:
    """The first <base href> resolved against the page url, else the page url."""
    base = doc.select_one("base[href]")
    if base is None:
        return page_url
    href = base.get("href", "").strip()
    if not href or href.startswith(_SKIPPED_HREF_PREFIXES):
        return page_url
    return urljoin(page_url, href)


def parse_document(html: str, base_url: str) -> BeautifulSoup:
    doc = BeautifulSoup(html, "html.parser")
    make_links_absolute(doc, document_base_url(doc, base_url))
    return doc


def extract_links(doc: BeautifulSoup) -> list[PageLink]:
    links: list[PageLink] = []
    for anchor in doc.select("a[href]"):
        href = anchor.get("href", "").strip()
        if not href or href.startswith(_SKIPPED_HREF_PREFIXES):
            continue
        text = clean_spaces(anchor.get_text(" ", strip=True))
        if text:
            links.append(PageLink(text=text, href=href))
    return links


def button_selector(button) -> str | None:
    element_id = (button.get("id") or "").strip()
    if element_id:
        return f"#{element_id}"

    aria_label = (button.get("aria-label") or "").strip()
    if aria_label:
        escaped = aria_label.replace('"', '\\"')
        return f'button[aria-label="{escaped}"]'

    classes = button.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    first_class = next((name for name in classes if name.strip()), None)
    if first_class:
        return f"button.{first_class}"
    return None


def extract_buttons(doc: BeautifulSoup) -> list[PageButton]:
    buttons: list[PageButton] = []
    for button in doc.select("button"):
        selector = button_selector(button)
        if selector is None:
            continue
        label = (
            (button.get("aria-label") or "").strip()
            or clean_spaces(button.get_text(" ", strip=True))
            or "Unnamed Button"
        )
        buttons.append(PageButton(label=label, selector=selector))
    return buttons


def _to_markdown(doc: BeautifulSoup) -> str:
    body = doc.body or doc
    markdown = markdownify(str(body), heading_style="ATX")
    markdown = re.sub(r"[ \t]+\n", "\n", markdown)
    return re.sub(r"\n{3,}", "\n\n", markdown).strip()


def render_snapshot(html: str, *, url: str, title: str, include_interactive: bool = True) -> str:
    doc = parse_document(html, url)
    links = extract_links(doc)
    buttons = extract_buttons(doc)
    for tag in doc.find_all(_NOISE_TAGS):
        tag.decompose()

    lines = [f"## Page: {title}", _to_markdown(doc)]
    if not include_interactive:
        return "\n".join(lines)

    lines.append("")
    lines.append("## Links Found (Absolute):")
    if links:
        lines.extend(f"- [{link.text}]({link.href})" for link in links)
    else:
        lines.append("No links found.")

    lines.append("")
    lines.append("## Interactive Elements:")
    if buttons:
        lines.extend(f'- [Button: {button.label}] (click: "{button.selector}")' for button in buttons)
    else:
        lines.append("No buttons found.")
    return "\n".join(lines)


def clean_page_html(html: str, *, base_url: str, max_chars: int = 120_000) -> str:
    """Strip a page down to the structure a model needs to propose selectors."""
    doc = parse_document(html, base_url)
    for tag in doc.find_all(_LEARNING_NOISE_TAGS):
        tag.decompose()

    for tag in doc.find_all(True):
        tag.attrs = {
            name: value
            for name, value in tag.attrs.items()
            if name in _KEPT_ATTRS or name.startswith(_KEPT_ATTR_PREFIXES)
        }

    body = doc.body or doc
    result = re.sub(r">\s+<", "><", str(body))
    if len(result) > max_chars:
        result = result[:max_chars] + "\n<!-- TRUNCATED -->"
    return result
