from __future__ import annotations
import re
from typing import Dict, List

from bs4 import BeautifulSoup

from .urls import resolve_href

# Containers where sites usually keep primary navigation, often outside <main>
STRUCTURAL_SELECTORS = [
    "nav",
    "header",
    "footer",
    "[role=navigation]",
    ".pagination",
    ".pager",
    ".nav-links",
    ".menu",
]

_TITLE_NOISE = [
    re.compile(r"\s*[|\-]\s*.*?(Menu|Navigation|Nav)\b.*$", re.I),
    re.compile(r"\s*\|\s*.*?(Toggle|Expand|Dropdown).*$", re.I),
    re.compile(r"\s*\|\s*.*?(Facebook|Twitter|Instagram|LinkedIn|Social).*$", re.I),
    re.compile(r"(ExpandToggle|MenuExpand|ExpandExpand).*$", re.I),
    re.compile(r"(facebook|insta)-icon.*$", re.I),
]


def clean_title(title: str) -> str:
    """Strip navigation and social-media residue that some themes leak into <title>."""
    if not title:
        return ""
    cleaned = title
    for pattern in _TITLE_NOISE:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or title.strip()


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def extract_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    """Canonical http(s) links of a document, structural containers first.

    Anchors inside nav/header/footer/pagination are collected before the rest
    of the document so primary navigation is never missed. ``<link rel=next>``
    and ``<link rel=prev>`` pagination hints are included too.
    """
    hrefs: List[str] = []
    for selector in STRUCTURAL_SELECTORS:
        for container in soup.select(selector):
            hrefs.extend(a.get("href") for a in container.find_all("a", href=True))
    hrefs.extend(a.get("href") for a in soup.find_all(["a", "area"], href=True))
    for link in soup.find_all("link", href=True):
        rel = [r.lower() for r in (link.get("rel") or [])]
        if "next" in rel or "prev" in rel:
            hrefs.append(link.get("href"))

    links = []
    for href in hrefs:
        resolved = resolve_href(base_url, href)
        if resolved:
            links.append(resolved)
    return _dedupe(links)


def extract_images(soup: BeautifulSoup, base_url: str) -> List[str]:
    images = []
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src")
        resolved = resolve_href(base_url, src) if src else None
        if resolved:
            images.append(resolved)
    return _dedupe(images)


def extract_meta_tags(soup: BeautifulSoup) -> Dict[str, str]:
    """All ``<meta name|property=... content=...>`` pairs, keys lowercased. First wins."""
    meta: Dict[str, str] = {}
    for tag in soup.find_all("meta"):
        key = tag.get("name") or tag.get("property")
        content = tag.get("content")
        if not key or content is None:
            continue
        key = key.strip().lower()
        if key not in meta:
            meta[key] = content.strip()
    return meta


def parse_document(html: str, base_url: str) -> dict:
    """Extract title, visible text, links, images and meta tags from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")

    # links and meta come from the untouched tree
    links = extract_links(soup, base_url)
    images = extract_images(soup, base_url)
    meta = extract_meta_tags(soup)

    title_tag = soup.find("title")
    title = clean_title(title_tag.get_text(strip=True) if title_tag else "")

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    body = soup.body or soup
    text = re.sub(r"\s+", " ", body.get_text(" ")).strip()

    return {
        "title": title,
        "text_content": text,
        "outgoing_links": links,
        "images": images,
        "meta_tags": meta,
    }
