"""Citation source extraction from assistant answers."""

import re
from urllib.parse import urlparse

from pydantic import Field

from threadkeep_models import Record

NUMBER_REF_RE = re.compile(r"\[(\d+)\]")
URL_RE = re.compile(r"https?://[^\s<>\")\]]+")


class Source(Record):
    """A cited URL with its reference number."""

    url: str
    title: str
    number: int
    id: str = Field(..., description="Anchor ID, source-<number>")


def _markdown_link_re(url: str) -> re.Pattern[str]:
    return re.compile(r"\[([^\]]+)\]\(" + re.escape(url) + r"\)")


def _domain_title(url: str) -> str:
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        hostname = None
    return hostname.replace("www.", "", 1) if hostname else url


def extract_sources(text: str | None) -> tuple[list[Source], str]:
    """Find cited URLs in ``text`` and return them with a cleaned copy.

    URLs are numbered by the ``[n]`` markers in order of first appearance,
    falling back to their position. A markdown link text is preferred as
    the title, otherwise the domain. The cleaned text keeps link titles
    and drops bare URLs along with the empty brackets they leave behind.
    """
    if not text:
        return [], text or ""

    number_refs: list[int] = []
    for match in NUMBER_REF_RE.finditer(text):
        number = int(match.group(1))
        if number not in number_refs:
            number_refs.append(number)

    unique_urls = list(dict.fromkeys(URL_RE.findall(text)))

    sources = []
    for index, url in enumerate(unique_urls):
        number = number_refs[index] if index < len(number_refs) and number_refs[index] else index + 1
        link = _markdown_link_re(url).search(text)
        title = link.group(1) if link else _domain_title(url)
        sources.append(Source(url=url, title=title, number=number, id=f"source-{number}"))

    sources.sort(key=lambda s: s.number)

    clean = text
    for source in sources:
        clean = _markdown_link_re(source.url).sub(r"\1", clean)
    clean = URL_RE.sub("", clean)
    clean = re.sub(r"\(\s*\)", "", clean)
    clean = re.sub(r"\[\s*\]", "", clean)
    clean = re.sub(r"Sources?:\s*(?=\n|$)", "", clean, flags=re.IGNORECASE)
    clean = re.sub(r"^\s*[-•]\s*$", "", clean, flags=re.MULTILINE)
    clean = re.sub(r"  +", " ", clean)
    clean = re.sub(r"\n\s*\n\s*\n", "\n\n", clean).strip()

    return sources, clean
