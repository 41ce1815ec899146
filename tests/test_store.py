import os
import tempfile
import time
import unittest
from podsync.errors import LocalStoreError
from podsync.models import (
    ParsedEpisode, ParsedFeed, PendingAction, SyncPhase, Subscription, episode_key,
)
from podsync.store import LocalStore

FEED = "http://a.test/feed.xml"

def make_feed(*guids):
    return ParsedFeed(
        title="Show A",
        author="Host",
        episodes=[ParsedEpisode(guid=g, audio_url=f"http://a.test/{g}.mp3", title=g) for g in guids],
    )

class TestLocalStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "library.json")
        self.store = LocalStore(self.path, persist=True)

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_starts_empty(self):
        self.assertEqual(self.store.fetch_subscriptions(), [])
        self.assertEqual(self.store.get_sync_state().status, SyncPhase.IDLE)

    def test_commit_survives_reload(self):
        self.store.materialize_subscription(FEED, make_feed("e1", "e2"), remote_id="7")
        state = self.store.get_sync_state()
        state.subscription_cursor = "42"
        self.store.commit()

        reloaded = LocalStore(self.path, persist=True)
        sub = reloaded.get_subscription(FEED)
        self.assertEqual(sub.remote_id, "7")
        self.assertEqual(sub.title, "Show A")
        self.assertEqual(len(reloaded.fetch_episodes()), 2)
        self.assertEqual(reloaded.get_sync_state().subscription_cursor, "42")

    def test_corrupt_file_is_reported(self):
        with open(self.path, "w") as f:
            f.write("{not json")
        with self.assertRaises(LocalStoreError):
            LocalStore(self.path, persist=True)

    def test_no_persist_skips_writes(self):
        store = LocalStore(self.path, persist=False)
        store.insert_subscription(Subscription(feed_url=FEED))
        store.commit()
        self.assertFalse(os.path.exists(self.path))

    def test_transaction_rolls_back_on_error(self):
        self.store.insert_subscription(Subscription(feed_url=FEED))
        with self.assertRaises(LocalStoreError):
            with self.store.transaction():
                self.store.insert_subscription(Subscription(feed_url="http://b.test/feed.xml"))
                self.store.insert_subscription(Subscription(feed_url=FEED))
        self.assertIsNone(self.store.get_subscription("http://b.test/feed.xml"))
        self.assertIsNotNone(self.store.get_subscription(FEED))

    def test_rollback_keeps_held_records_live(self):
        state = self.store.get_sync_state()
        sub = self.store.insert_subscription(Subscription(feed_url=FEED))
        with self.assertRaises(LocalStoreError):
            with self.store.transaction():
                sub.title = "Renamed"
                self.store.insert_subscription(Subscription(feed_url="http://b.test/feed.xml"))
                self.store.insert_subscription(Subscription(feed_url=FEED))

        self.assertIs(self.store.get_sync_state(), state)
        self.assertIs(self.store.get_subscription(FEED), sub)
        self.assertEqual(sub.title, "")
        self.assertIsNone(self.store.get_subscription("http://b.test/feed.xml"))

        # Writes through references held across the rollback still land
        state.subscription_cursor = "5"
        sub.needs_sync = True
        self.store.commit()
        reloaded = LocalStore(self.store.path, persist=True)
        self.assertEqual(reloaded.get_sync_state().subscription_cursor, "5")
        self.assertTrue(reloaded.get_subscription(FEED).needs_sync)

    def test_materialize_dedups_by_guid(self):
        self.store.materialize_subscription(FEED, make_feed("e1", "e2"))
        sub = self.store.get_subscription(FEED)
        sub.subscribed = False

        self.store.materialize_subscription(FEED, make_feed("e1", "e2", "e3"), dirty=True)
        sub = self.store.get_subscription(FEED)
        self.assertTrue(sub.subscribed)
        self.assertTrue(sub.needs_sync)
        self.assertEqual(sorted(e.guid for e in self.store.fetch_episodes()), ["e1", "e2", "e3"])

    def test_materialize_keeps_progress_of_known_episodes(self):
        self.store.materialize_subscription(FEED, make_feed("e1"))
        self.store.get_episode(episode_key(FEED, "e1")).position_s = 300.0
        self.store.materialize_subscription(FEED, make_feed("e1"))
        self.assertEqual(self.store.get_episode(episode_key(FEED, "e1")).position_s, 300.0)

    def test_delete_subscription_cascades(self):
        self.store.materialize_subscription(FEED, make_feed("e1", "e2"))
        key = episode_key(FEED, "e1")
        self.store.enqueue_action(PendingAction(
            episode_key=key, podcast_url=FEED, audio_url="http://a.test/e1.mp3", position_s=10.0,
        ))

        self.store.delete_subscription(FEED)

        self.assertIsNone(self.store.get_subscription(FEED))
        self.assertEqual(self.store.fetch_episodes(), [])
        self.assertEqual(self.store.fetch_pending_actions(), [])

    def test_prune_only_old_synced_actions(self):
        now = time.time()
        old = PendingAction(episode_key="k", podcast_url=FEED, audio_url="a", position_s=1.0)
        recent = PendingAction(episode_key="k", podcast_url=FEED, audio_url="a", position_s=2.0)
        unsynced = PendingAction(episode_key="k", podcast_url=FEED, audio_url="a", position_s=3.0, created_at=now - 10000)
        for action in (old, recent, unsynced):
            self.store.enqueue_action(action)
        self.store.mark_action_synced(old, at=now - 10000)
        self.store.mark_action_synced(recent, at=now)

        pruned = self.store.prune_synced_actions(3600)

        self.assertEqual(pruned, 1)
        self.assertEqual([a.position_s for a in self.store.fetch_pending_actions()], [2.0, 3.0])

if __name__ == '__main__':
    unittest.main()
