"""Parse rendered page HTML: link discovery and declarative field extraction.

Both operate on the HTML snapshot taken from the browser after the page has
rendered, so they see the DOM the page function saw.
"""

import re
from typing import List
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from pagecrawl.services.frontier import strip_fragment


class PageParser:
    """Extract links and fields from rendered HTML."""

    _SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "blob:")

    def __init__(self, link_selector: str = "a[href]", url_fragments: bool = False):
        """Initialize the parser.

        Args:
            link_selector: CSS selector for elements whose href is followed.
            url_fragments: Keep ``#fragment`` on discovered URLs when True.
        """
        self._link_selector = link_selector
        self._url_fragments = url_fragments

    def discover_links(self, html: str, page_url: str) -> List[str]:
        """Collect absolute http(s) URLs from elements matching the link selector.

        Relative hrefs resolve against ``<base href>`` when present, else the
        page URL. Results keep document order and are deduplicated.

        Args:
            html: Rendered page HTML.
            page_url: Final URL of the page (after redirects).

        Returns:
            List of absolute URLs.

        Raises:
            ValueError: If the link selector is not valid CSS.
        """
        soup = BeautifulSoup(html, "html.parser")
        base_url = self._base_url(soup, page_url)

        try:
            elements = soup.select(self._link_selector)
        except SelectorSyntaxError as e:
            raise ValueError(f"Invalid link selector {self._link_selector!r}: {e}") from e

        seen: set[str] = set()
        out: List[str] = []
        for element in elements:
            href = (element.get("href") or "").strip()
            if not href or href.lower().startswith(self._SKIPPED_SCHEMES):
                continue
            if href.startswith("#") and not self._url_fragments:
                continue

            absolute = urljoin(base_url, href)
            if urlsplit(absolute).scheme.lower() not in ("http", "https"):
                continue
            if not self._url_fragments:
                absolute = strip_fragment(absolute)

            if absolute not in seen:
                seen.add(absolute)
                out.append(absolute)

        return out

    @staticmethod
    def extract_fields(html: str, fields: dict[str, str]) -> dict[str, str | None]:
        """Extract the text of the first element matching each field selector.

        ``meta`` elements yield their ``content`` attribute. Missing elements
        yield None.

        Args:
            html: Rendered page HTML.
            fields: Mapping of field name to CSS selector.

        Returns:
            Mapping of field name to normalized text (or None).

        Raises:
            ValueError: If a selector is not valid CSS.
        """
        if not fields:
            return {}

        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        values: dict[str, str | None] = {}
        for name, selector in fields.items():
            try:
                element = soup.select_one(selector)
            except SelectorSyntaxError as e:
                raise ValueError(f"Invalid selector for field {name!r}: {e}") from e

            if element is None:
                values[name] = None
            elif element.name == "meta":
                values[name] = (element.get("content") or "").strip()
            else:
                values[name] = re.sub(r"\s+", " ", element.get_text()).strip()

        return values

    @staticmethod
    def _base_url(soup: BeautifulSoup, page_url: str) -> str:
        base = soup.find("base", href=True)
        if base is not None:
            return urljoin(page_url, base["href"].strip())
        return page_url
