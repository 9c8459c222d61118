"""Unit tests for link discovery and field extraction."""

import pytest

from pagecrawl.services.page_parser import PageParser


class TestDiscoverLinks:
    """Test PageParser.discover_links."""

    def test_resolves_relative_links(self):
        html = '<a href="/a">A</a><a href="b">B</a><a href="https://other.com/c">C</a>'
        links = PageParser().discover_links(html, "https://example.com/dir/page")
        assert links == [
            "https://example.com/a",
            "https://example.com/dir/b",
            "https://other.com/c",
        ]

    def test_honours_base_href(self):
        html = '<html><head><base href="https://cdn.example.com/root/"></head><body><a href="x">X</a></body></html>'
        links = PageParser().discover_links(html, "https://example.com/page")
        assert links == ["https://cdn.example.com/root/x"]

    def test_skips_non_http_links(self):
        html = (
            '<a href="mailto:a@example.com">m</a>'
            '<a href="tel:123">t</a>'
            '<a href="javascript:void(0)">j</a>'
            '<a href="data:text/html,hi">d</a>'
            '<a href="ftp://example.com/file">f</a>'
            '<a href="">empty</a>'
            '<a>no href</a>'
        )
        assert PageParser().discover_links(html, "https://example.com/") == []

    def test_strips_fragments_and_deduplicates(self):
        html = '<a href="/a#one">1</a><a href="/a#two">2</a><a href="#top">3</a>'
        links = PageParser().discover_links(html, "https://example.com/")
        assert links == ["https://example.com/a"]

    def test_keeps_fragments_when_enabled(self):
        html = '<a href="/a#one">1</a><a href="#top">2</a>'
        links = PageParser(url_fragments=True).discover_links(html, "https://example.com/p")
        assert links == ["https://example.com/a#one", "https://example.com/p#top"]

    def test_custom_link_selector(self):
        html = '<nav><a href="/nav">n</a></nav><main><a class="next" href="/next">next</a></main>'
        links = PageParser(link_selector="a.next").discover_links(html, "https://example.com/")
        assert links == ["https://example.com/next"]

    def test_selector_matching_non_anchor_elements(self):
        """Any element with an href is followed, not just anchors."""
        html = '<link rel="next" href="/page/2"><area href="/map">'
        links = PageParser(link_selector="[href]").discover_links(html, "https://example.com/")
        assert links == ["https://example.com/page/2", "https://example.com/map"]

    def test_invalid_selector_raises_value_error(self):
        with pytest.raises(ValueError):
            PageParser(link_selector="a[href").discover_links("<a href='/x'>x</a>", "https://example.com/")


class TestExtractFields:
    """Test PageParser.extract_fields."""

    def test_extracts_text_and_meta(self):
        html = (
            '<html><head><meta name="description" content=" A page "></head>'
            "<body><h1>  Hello\n  World </h1><span class='price'>9.99</span></body></html>"
        )
        values = PageParser.extract_fields(
            html,
            {
                "title": "h1",
                "description": "meta[name=description]",
                "price": ".price",
                "missing": ".nope",
            },
        )
        assert values == {
            "title": "Hello World",
            "description": "A page",
            "price": "9.99",
            "missing": None,
        }

    def test_ignores_script_text(self):
        html = "<div id='x'><script>var a = 1;</script>Visible</div>"
        assert PageParser.extract_fields(html, {"x": "#x"}) == {"x": "Visible"}

    def test_no_fields(self):
        assert PageParser.extract_fields("<p>x</p>", {}) == {}

    def test_invalid_selector(self):
        with pytest.raises(ValueError):
            PageParser.extract_fields("<p>x</p>", {"bad": "p["})
