import unittest
from podsync.conflict import Resolution, resolve_progress

class TestResolveProgress(unittest.TestCase):
    def test_never_synced_takes_remote(self):
        self.assertEqual(resolve_progress(None, 10.0), Resolution.REMOTE_WINS)

    def test_newer_remote_wins(self):
        self.assertEqual(resolve_progress(100.0, 200.0), Resolution.REMOTE_WINS)

    def test_older_remote_loses(self):
        self.assertEqual(resolve_progress(200.0, 100.0), Resolution.LOCAL_WINS)

    def test_tie_goes_to_remote(self):
        self.assertEqual(resolve_progress(150.0, 150.0), Resolution.REMOTE_WINS)

if __name__ == '__main__':
    unittest.main()
