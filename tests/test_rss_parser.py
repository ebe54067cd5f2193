"""
Tests for the RSS/Atom feed reader.
"""

from unittest.mock import MagicMock, patch

import aiohttp
import pytest

from conftest import make_mock_session
from wpautopilot.errors import UpstreamError
from wpautopilot.rss_parser import RSSParser, parse_feed_bytes, strip_html

RSS_DOC = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example News</title>
    <link>https://news.example.com</link>
    <description>All the news</description>
    <item>
      <title>Solar prices fall</title>
      <link>https://news.example.com/solar</link>
      <description>&lt;p&gt;Panels are &lt;b&gt;cheaper&lt;/b&gt; now.&lt;/p&gt;</description>
      <pubDate>Tue, 10 Mar 2026 07:30:00 GMT</pubDate>
      <category>Energy</category>
      <guid>solar-1</guid>
    </item>
    <item>
      <title>No link here</title>
      <description>Dropped</description>
    </item>
  </channel>
</rss>
"""

ATOM_DOC = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <link href="https://atom.example.com/"/>
  <updated>2026-03-10T07:00:00Z</updated>
  <id>urn:example:feed</id>
  <entry>
    <title>Wind farms expand</title>
    <link href="https://atom.example.com/wind"/>
    <id>urn:example:wind</id>
    <updated>2026-03-09T12:00:00Z</updated>
    <summary>Short summary</summary>
    <content type="html">&lt;p&gt;Full wind story&lt;/p&gt;</content>
  </entry>
</feed>
"""


class TestStripHtml:

    @pytest.mark.unit
    def test_tags_entities_whitespace(self):
        assert strip_html("<p>Fish &amp; <b>chips</b></p>\n\n  today") == "Fish & chips today"

    @pytest.mark.unit
    def test_empty(self):
        assert strip_html(None) == ""


class TestParseFeedBytes:

    @pytest.mark.unit
    def test_rss(self):
        data = parse_feed_bytes(RSS_DOC)
        assert data.title == "Example News"
        assert len(data.items) == 1
        item = data.items[0]
        assert item.link == "https://news.example.com/solar"
        assert item.description == "Panels are cheaper now."
        assert item.categories == ["Energy"]
        assert item.published_at.startswith("2026-03-10T07:30:00")

    @pytest.mark.unit
    def test_atom(self):
        data = parse_feed_bytes(ATOM_DOC)
        assert data.title == "Example Atom"
        item = data.items[0]
        assert item.title == "Wind farms expand"
        assert item.link == "https://atom.example.com/wind"
        assert "Full wind story" in item.content
        assert item.guid == "urn:example:wind"

    @pytest.mark.unit
    def test_unsupported_document(self):
        with pytest.raises(UpstreamError):
            parse_feed_bytes(b"<html><body>Not a feed</body></html>")


class TestRSSParser:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parse_feed(self, mock_aiohttp_response):
        resp = mock_aiohttp_response(200, body=RSS_DOC)
        session = make_mock_session(resp)

        with patch("wpautopilot.rss_parser.aiohttp.ClientSession", return_value=session):
            data = await RSSParser().parse_feed("https://news.example.com/feed")

        assert [i.title for i in data.items] == ["Solar prices fall"]
        session.get.assert_called_once_with("https://news.example.com/feed")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error(self, mock_aiohttp_response):
        session = make_mock_session(mock_aiohttp_response(503, text="unavailable"))

        with patch("wpautopilot.rss_parser.aiohttp.ClientSession", return_value=session):
            with pytest.raises(UpstreamError, match="HTTP 503") as excinfo:
                await RSSParser().fetch("https://news.example.com/feed")
        assert excinfo.value.status_code == 503

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_network_error(self):
        session = make_mock_session(None)
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch("wpautopilot.rss_parser.aiohttp.ClientSession", return_value=session):
            with pytest.raises(UpstreamError, match="refused"):
                await RSSParser().fetch("https://news.example.com/feed")
