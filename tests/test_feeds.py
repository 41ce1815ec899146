import unittest
import httpx
from podsync.errors import NetworkError, ValidationError
from podsync.feeds import FeedFetcher, _parse_duration

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">
  <channel>
    <title>Test Show</title>
    <itunes:author>Jane Host</itunes:author>
    <description>&lt;p&gt;A show about   testing.&lt;/p&gt;</description>
    <itunes:image href="http://show.test/art.jpg"/>
    <item>
      <title>Episode 1</title>
      <guid>ep-1</guid>
      <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
      <itunes:duration>1:02:03</itunes:duration>
      <enclosure url="http://show.test/1.mp3" type="audio/mpeg" length="100"/>
    </item>
    <item>
      <title>Episode 1 again</title>
      <guid>ep-1</guid>
      <enclosure url="http://show.test/1b.mp3" type="audio/mpeg" length="100"/>
    </item>
    <item>
      <title>Video only</title>
      <guid>ep-video</guid>
      <enclosure url="http://show.test/v.mp4" type="video/mp4" length="100"/>
    </item>
    <item>
      <title>Episode 2</title>
      <enclosure url="http://show.test/2.mp3" type="audio/mpeg" length="100"/>
    </item>
  </channel>
</rss>
"""

class TestParseContent(unittest.TestCase):
    def setUp(self):
        self.fetcher = FeedFetcher(client=httpx.AsyncClient())

    def test_channel_metadata(self):
        feed = self.fetcher.parse_content(RSS, "http://show.test/feed.xml")
        self.assertEqual(feed.title, "Test Show")
        self.assertEqual(feed.author, "Jane Host")
        self.assertEqual(feed.description, "A show about testing.")
        self.assertEqual(feed.artwork_url, "http://show.test/art.jpg")

    def test_episodes(self):
        feed = self.fetcher.parse_content(RSS, "http://show.test/feed.xml")
        # Duplicate GUID dropped, non-audio enclosure skipped
        self.assertEqual([e.guid for e in feed.episodes], ["ep-1", "http://show.test/2.mp3"])

        first = feed.episodes[0]
        self.assertEqual(first.audio_url, "http://show.test/1.mp3")
        self.assertEqual(first.duration_s, 3723.0)
        self.assertEqual(first.publish_date, 1704103200.0)

    def test_not_a_feed(self):
        with self.assertRaises(ValidationError):
            self.fetcher.parse_content(b"<html><body>nope</body></html>", "http://show.test/")

class TestParseDuration(unittest.TestCase):
    def test_formats(self):
        self.assertEqual(_parse_duration("3600"), 3600.0)
        self.assertEqual(_parse_duration("60:00"), 3600.0)
        self.assertEqual(_parse_duration("1:00:00"), 3600.0)
        self.assertIsNone(_parse_duration("1:2:3:4"))
        self.assertIsNone(_parse_duration("soon"))
        self.assertIsNone(_parse_duration(None))

class TestParseFeed(unittest.IsolatedAsyncioTestCase):
    async def test_fetch_and_parse(self):
        def handler(request):
            return httpx.Response(200, content=RSS)

        fetcher = FeedFetcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        feed = await fetcher.parse_feed("http://show.test/feed.xml")
        await fetcher.close()
        self.assertEqual(len(feed.episodes), 2)

    async def test_http_error_is_network_error(self):
        fetcher = FeedFetcher(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))))
        with self.assertRaises(NetworkError):
            await fetcher.parse_feed("http://show.test/feed.xml")
        await fetcher.close()

    async def test_unreachable_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        fetcher = FeedFetcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with self.assertRaises(NetworkError):
            await fetcher.parse_feed("http://show.test/feed.xml")
        await fetcher.close()

if __name__ == '__main__':
    unittest.main()
