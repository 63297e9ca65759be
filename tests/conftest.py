"""Shared test fixtures for feed_sync tests."""

from datetime import datetime, timezone

import pytest

from feed_sync.models.schemas import Article
from feed_sync.storage.database import Repository


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1#comments</link>
      <guid>article-1</guid>
      <author>alice@example.com (Alice)</author>
      <category>news</category>
      <category>tech</category>
      <description>Short summary of the first article</description>
      <content:encoded><![CDATA[<p>Full body</p><img src="/images/one.png"><img src="two.png">]]></content:encoded>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <enclosure url="//cdn.example.com/cover.jpg" type="image/jpeg" length="100"/>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <id>urn:uuid:feed</id>
  <updated>2026-02-13T10:00:00Z</updated>
  <entry>
    <title>Atom Entry 1</title>
    <link rel="alternate" href="https://example.com/entry-1#top"/>
    <link rel="enclosure" type="image/png" href="/media/entry-1.png"/>
    <id>urn:uuid:entry-1</id>
    <author><name>Bob</name></author>
    <summary>Summary of entry 1</summary>
    <content type="html">&lt;p&gt;Atom body&lt;/p&gt;</content>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""


def make_rss(count: int, prefix: str = "item") -> str:
    """Build an RSS document with `count` items."""
    items = "".join(
        f"""
    <item>
      <title>{prefix.title()} {i}</title>
      <link>https://example.com/{prefix}-{i}</link>
      <description>Body of {prefix} {i}</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>"""
        for i in range(count)
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Generated Feed</title>
    <link>https://example.com</link>
    <description>Generated</description>{items}
  </channel>
</rss>"""


def make_article(feed_id: int, link: str, **overrides) -> Article:
    fields = dict(
        feed_id=feed_id,
        title="Title",
        content="<p>Content</p>",
        pub_date=datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc),
        link=link,
    )
    fields.update(overrides)
    return Article(**fields)


@pytest.fixture
def anyio_backend():
    """Run anyio-marked tests on asyncio only."""
    return "asyncio"


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML


@pytest.fixture
async def repository():
    """Provide a connected in-memory repository."""
    repo = await Repository.open(":memory:")
    yield repo
    await repo.close()


@pytest.fixture
def article_factory():
    """Build transient articles with sensible defaults."""
    return make_article


@pytest.fixture
def rss_factory():
    """Build RSS documents with a given number of items."""
    return make_rss
