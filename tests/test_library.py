import os
import tempfile
import unittest
from podsync.clients.base import RemoteClient
from podsync.errors import NetworkError, NoSession, NotFoundError, ValidationError
from podsync.library import Library
from podsync.models import ParsedEpisode, ParsedFeed, SubscriptionChanges, ProgressChanges, episode_key
from podsync.store import LocalStore

FEED_A = "http://a.test/feed.xml"
FEED_B = "http://b.test/feed.xml"

def make_feed(*guids):
    return ParsedFeed(title="Show", episodes=[ParsedEpisode(guid=g, audio_url=f"http://a.test/{g}.mp3") for g in guids])

class StubFetcher:
    def __init__(self):
        self.feeds = {FEED_A: make_feed("e1"), FEED_B: make_feed("b1")}
        self.failing = set()

    async def parse_feed(self, url):
        if url in self.failing:
            raise NetworkError(f"Feed unreachable: {url}")
        return self.feeds[url]

class StubRemote(RemoteClient):
    logins = []
    refreshed = []
    reject_login = False

    async def login(self, username, password):
        if self.reject_login:
            raise NoSession("Invalid credentials", 401)
        self.logins.append((self.config.server_url, username, password))
        return f"token-for-{username}"

    async def get_subscriptions(self, cursor):
        return SubscriptionChanges()

    async def push_subscription_change(self, add, remove):
        return None

    async def subscribe(self, feed_url):
        return None

    async def unsubscribe(self, feed_url, remote_id):
        return None

    async def get_progress(self, cursor):
        return ProgressChanges()

    async def push_progress(self, uploads):
        return []

    async def refresh_feed(self, remote_id):
        self.refreshed.append(remote_id)

class TestLibrary(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "library.json")
        self.store = LocalStore(self.path, persist=True)
        self.fetcher = StubFetcher()
        StubRemote.logins = []
        StubRemote.refreshed = []
        StubRemote.reject_login = False
        self.library = Library(self.store, self.fetcher, client_factory=StubRemote)

    def tearDown(self):
        self.tmp.cleanup()

    async def test_login_and_logout(self):
        config = await self.library.login("http://sync.test", "alice", "pw")

        self.assertTrue(config.authenticated)
        self.assertEqual(config.session_token, "token-for-alice")
        self.assertIsNotNone(config.last_authenticated_at)
        self.assertEqual(StubRemote.logins, [("http://sync.test", "alice", "pw")])
        self.assertTrue(LocalStore(self.path).get_server_configuration().authenticated)

        self.library.logout()
        config = self.store.get_server_configuration()
        self.assertFalse(config.authenticated)
        self.assertIsNone(config.session_token)
        self.assertEqual(config.server_url, "http://sync.test")

    async def test_login_to_other_account_resets_cursors(self):
        await self.library.login("http://sync.test", "alice", "pw")
        state = self.store.get_sync_state()
        state.subscription_cursor = "100"
        state.progress_cursor = "200"

        await self.library.login("http://sync.test", "alice", "pw")
        self.assertEqual(state.subscription_cursor, "100")

        await self.library.login("http://other.test", "bob", "pw")
        self.assertIsNone(state.subscription_cursor)
        self.assertIsNone(state.progress_cursor)

    async def test_failed_login_keeps_configuration(self):
        StubRemote.reject_login = True
        with self.assertRaises(NoSession):
            await self.library.login("http://sync.test", "alice", "bad")
        self.assertFalse(self.store.get_server_configuration().authenticated)

    async def test_subscribe_is_idempotent(self):
        first = await self.library.subscribe(FEED_A)
        second = await self.library.subscribe(FEED_A)

        self.assertIs(first, second)
        self.assertTrue(first.needs_sync)
        self.assertEqual(len(self.store.fetch_episodes()), 1)

    async def test_resubscribe_reflags(self):
        sub = await self.library.subscribe(FEED_A)
        sub.needs_sync = False
        self.library.unsubscribe(FEED_A)
        self.assertFalse(sub.subscribed)
        self.assertTrue(sub.needs_sync)

        await self.library.subscribe(FEED_A)
        self.assertTrue(sub.subscribed)
        self.assertTrue(sub.needs_sync)

    def test_unsubscribe_unknown(self):
        with self.assertRaises(NotFoundError):
            self.library.unsubscribe(FEED_A)

    async def test_refresh_adds_new_episodes(self):
        sub = await self.library.subscribe(FEED_A)
        sub.remote_id = "7"
        config = self.store.get_server_configuration()
        config.server_url = "http://sync.test"
        config.authenticated = True
        config.session_token = "t"
        self.fetcher.feeds[FEED_A] = make_feed("e1", "e2")

        added = await self.library.refresh(FEED_A)

        self.assertEqual(added, 1)
        self.assertEqual(len(self.store.fetch_episodes()), 2)
        self.assertEqual(StubRemote.refreshed, ["7"])

    async def test_refresh_all_isolates_failures(self):
        await self.library.subscribe(FEED_A)
        await self.library.subscribe(FEED_B)
        self.fetcher.feeds[FEED_A] = make_feed("e1", "e2", "e3")
        self.fetcher.failing.add(FEED_B)

        added = await self.library.refresh_all()

        self.assertEqual(added, {FEED_A: 2})

    async def test_record_progress(self):
        await self.library.subscribe(FEED_A)
        key = episode_key(FEED_A, "e1")

        action = self.library.record_progress(key, 95.0, duration_s=600.0, completed=False)

        episode = self.store.get_episode(key)
        self.assertEqual(episode.position_s, 95.0)
        self.assertEqual(episode.duration_s, 600.0)
        self.assertTrue(episode.needs_sync)
        self.assertIsNotNone(episode.last_played_at)
        self.assertEqual(action.podcast_url, FEED_A)
        self.assertEqual(action.audio_url, "http://a.test/e1.mp3")
        self.assertIsNone(action.remote_episode_id)
        self.assertEqual(self.store.unsynced_actions(), [action])

    async def test_record_progress_rejects_bad_input(self):
        await self.library.subscribe(FEED_A)
        with self.assertRaises(ValidationError):
            self.library.record_progress(episode_key(FEED_A, "e1"), -1.0)
        with self.assertRaises(NotFoundError):
            self.library.record_progress(episode_key(FEED_A, "missing"), 1.0)
        self.assertEqual(self.store.unsynced_actions(), [])

    async def test_enqueue_requires_linked_episode(self):
        await self.library.subscribe(FEED_A)
        key = episode_key(FEED_A, "e1")
        with self.assertRaises(ValidationError):
            self.library.enqueue(key)

        self.store.get_episode(key).remote_id = "ep-1"
        entry = self.library.enqueue(key)
        self.assertTrue(entry.needs_sync)

        # Never pushed, so dropped outright
        self.library.dequeue(entry.id)
        self.assertEqual(self.store.fetch_queue(), [])

    def test_playlist_names_required(self):
        with self.assertRaises(ValidationError):
            self.library.create_playlist("  ")

if __name__ == '__main__':
    unittest.main()
