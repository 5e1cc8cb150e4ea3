"""Turn rendered HTML into dense plain text for extraction."""

import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

TRUNCATION_MARKER = "\n\n[Content truncated]"

_STRIP_TAGS = ["script", "style", "noscript", "nav", "footer", "header"]
_CHROME_RE = re.compile(r"cookie|consent|banner|popup|modal|overlay", re.IGNORECASE)
# Never html/body/main: consent plugins tag those with the same class names
_CHROME_CONTAINERS = {"div", "section", "aside", "dialog"}
_HEADINGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
_SKIP_IMAGE_RE = re.compile(r"pixel|tracking|\.svg", re.IGNORECASE)


def _is_chrome(tag: Tag) -> bool:
    if tag.name not in _CHROME_CONTAINERS:
        return False
    classes = " ".join(tag.get("class") or [])
    return bool(_CHROME_RE.search(classes) or _CHROME_RE.search(tag.get("id") or ""))


def html_to_text(html: str, max_chars: int = 15000) -> str:
    """
    Strip page chrome and convert markup to line-oriented text.

    Headings become ``## `` lines, list items ``- `` lines and links
    ``text (href)``. The result is truncated to *max_chars* with a marker.
    """
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup.find_all(_STRIP_TAGS):
        tag.decompose()
    for tag in soup.find_all(_is_chrome):
        if not tag.decomposed:
            tag.decompose()

    for a in soup.find_all("a", href=True):
        a.replace_with(f"{a.get_text(' ', strip=True)} ({a['href']})")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for h in soup.find_all(_HEADINGS):
        h.replace_with(f"\n## {h.get_text(' ', strip=True)}\n\n")
    for li in soup.find_all("li"):
        li.insert(0, "- ")
        li.append("\n")
    for p in soup.find_all("p"):
        p.append("\n\n")
    for div in soup.find_all("div"):
        div.append("\n")

    text = soup.get_text()
    text = text.replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = text.strip()

    if len(text) > max_chars:
        text = text[:max_chars] + TRUNCATION_MARKER
    return text


def extract_image_urls(html: str, base_url: str) -> list[str]:
    """Absolute photo URLs on the page, skipping icons, pixels and SVGs."""
    soup = BeautifulSoup(html, "html.parser")
    urls: list[str] = []
    for img in soup.find_all("img", src=True):
        width = img.get("width")
        if width and width.isdigit() and int(width) < 100:
            continue

        src = img["src"].strip()
        if src.startswith("data:"):
            continue
        if src.startswith("/"):
            src = urljoin(base_url, src)
        elif not src.startswith("http"):
            continue
        if _SKIP_IMAGE_RE.search(src):
            continue

        if src not in urls:
            urls.append(src)
    return urls
