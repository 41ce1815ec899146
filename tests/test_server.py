import os
import tempfile
import time
import unittest
from fastapi.testclient import TestClient
from podsync import server
from podsync.clients.base import RemoteClient
from podsync.config import settings
from podsync.engine import SyncOrchestrator
from podsync.models import ProgressChanges, SubscriptionChanges
from podsync.store import LocalStore

class EmptyRemote(RemoteClient):
    async def login(self, username, password):
        return "token"

    async def get_subscriptions(self, cursor):
        return SubscriptionChanges(new_cursor="1")

    async def push_subscription_change(self, add, remove):
        return None

    async def subscribe(self, feed_url):
        return None

    async def unsubscribe(self, feed_url, remote_id):
        return None

    async def get_progress(self, cursor):
        return ProgressChanges(new_cursor="1")

    async def push_progress(self, uploads):
        return []

class NoFeeds:
    async def parse_feed(self, url):
        raise AssertionError("no feeds expected")

class TestServer(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(os.path.join(self.tmp.name, "library.json"), persist=True)
        self.orchestrator = SyncOrchestrator(self.store, NoFeeds(), client_factory=EmptyRemote)
        server.store = self.store
        server.orchestrator = self.orchestrator
        self.saved_token = settings.HTTP_SERVER_TOKEN
        settings.HTTP_SERVER_TOKEN = "secret"
        self.client = TestClient(server.app)

    def tearDown(self):
        settings.HTTP_SERVER_TOKEN = self.saved_token
        server.store = None
        server.orchestrator = None
        self.tmp.cleanup()

    def login(self):
        config = self.store.get_server_configuration()
        config.server_url = "http://sync.test"
        config.session_token = "token"
        config.authenticated = True

    def test_healthz_before_start(self):
        server.store = None
        self.assertEqual(self.client.get("/healthz").json(), {"status": "starting"})

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json()["status"], "waiting_for_first_sync")
        self.store.get_sync_state().last_progress_sync = time.time()
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.store.get_sync_state().last_progress_sync = time.time() - settings.SYNC_INTERVAL_SECONDS * 10
        self.assertEqual(self.client.get("/healthz").json()["status"], "lagging")

    def test_status_requires_token(self):
        self.assertEqual(self.client.get("/status").status_code, 401)
        resp = self.client.get("/status", headers={"X-Token": "secret"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"]["phase"], "idle")
        self.assertEqual(body["subscriptions"], 0)
        self.assertFalse(body["server"]["authenticated"])

    def test_sync_without_session(self):
        resp = self.client.post("/sync", headers={"X-Token": "secret"})
        self.assertEqual(resp.status_code, 401)

    def test_sync_runs_pass(self):
        self.login()
        resp = self.client.post("/sync", headers={"X-Token": "secret"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["phase"], "completed")
        self.assertEqual(self.store.get_sync_state().total_syncs, 1)

    def test_metrics(self):
        self.login()
        self.client.post("/sync", headers={"X-Token": "secret"})
        resp = self.client.get("/metrics")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("podsync_syncs_total 1", resp.text)
        self.assertIn("podsync_sync_running 0", resp.text)

if __name__ == '__main__':
    unittest.main()
