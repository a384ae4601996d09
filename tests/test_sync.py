import time
import unittest

from flagstone import (
    Backoff,
    CacheSynchronizer,
    ChangeEvent,
    ConfigurationError,
    InMemoryRepository,
    NotFoundError,
    SegmentCycleError,
    Settings,
    VersionedConfigStore,
)

_doc = {
    "segments": {
        "beta": {"rules": [{"conditions": [{"attribute": "groups", "operator": "contains", "value": "beta"}]}]},
    },
    "flags": {
        "new-checkout": {
            "default": "off",
            "variations": {"on": "on", "off": "off"},
            "rules": [{"conditions": [{"operator": "segment-match", "value": "beta"}], "variation": "on"}],
        },
    },
}

_no_wait = Backoff(0, 0)


def _ref_segment(key):
    return {"rules": [{"conditions": [{"operator": "segment-match", "value": key}]}]}


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FlakyRepository(InMemoryRepository):
    def __init__(self):
        super().__init__()
        self.failures = 0

    def get_flag(self, environment_id, key):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        return super().get_flag(environment_id, key)


class TestBackoff(unittest.TestCase):
    def test_delay(self):
        b = Backoff(1, 30)
        self.assertEqual([b.delay(i) for i in range(7)], [1, 2, 4, 8, 16, 30, 30])
        self.assertEqual(b.delay(10_000), 30)

    def test_jitter(self):
        b = Backoff(10, 10, jitter=0.5)
        for _ in range(100):
            self.assertTrue(5 <= b.delay(0) <= 10)

    def test_invalid(self):
        with self.assertRaises(ValueError):
            Backoff(10, 5)
        with self.assertRaises(ValueError):
            Backoff(1, 5, jitter=2)


class TestInMemoryRepository(unittest.TestCase):
    def test_versions_and_events(self):
        repo = InMemoryRepository()
        sub = repo.subscribe_to_changes("production")
        other = repo.subscribe_to_changes("staging")

        repo.import_config("production", _doc)
        f = repo.put_flag("production", "new-checkout", {**_doc["flags"]["new-checkout"], "enabled": False})
        self.assertEqual(f.version, 2)
        self.assertIsNotNone(f.last_modified)
        self.assertEqual(repo.delete_flag("production", "new-checkout"), 3)
        self.assertEqual(repo.put_flag("production", "new-checkout", {"default": False}).version, 4)

        events = [sub.get(timeout=1) for _ in range(5)]
        self.assertEqual(
            events,
            [
                ChangeEvent("segment", "beta", "production", 1),
                ChangeEvent("flag", "new-checkout", "production", 1),
                ChangeEvent("flag", "new-checkout", "production", 2),
                ChangeEvent("flag", "new-checkout", "production", 3, deleted=True),
                ChangeEvent("flag", "new-checkout", "production", 4),
            ],
        )
        self.assertIsNone(other.get(timeout=0.01))

        sub.close()
        self.assertTrue(sub.closed)
        repo.put_flag("production", "other", {"default": True})
        self.assertIsNone(sub.get(timeout=0.01))
        self.assertEqual(list(sub), [])

    def test_write_time_validation(self):
        repo = InMemoryRepository()
        repo.import_config("production", _doc)
        repo.put_segment("production", "a", _ref_segment("beta"))
        with self.assertRaises(SegmentCycleError):
            repo.put_segment("production", "beta", _ref_segment("a"))
        with self.assertRaisesRegex(ConfigurationError, "unknown segment"):
            repo.put_segment("production", "b", _ref_segment("ghost"))
        with self.assertRaisesRegex(ConfigurationError, "unknown segments"):
            repo.put_flag(
                "production",
                "f",
                {"default": False, "rules": [{"conditions": [{"operator": "segment-match", "value": "ghost"}], "variation": "true"}]},
            )
        with self.assertRaises(ConfigurationError):
            # Still referenced by new-checkout and a.
            repo.delete_segment("production", "beta")
        with self.assertRaises(NotFoundError):
            repo.delete_flag("production", "ghost")
        with self.assertRaises(NotFoundError):
            repo.get_flag("staging", "new-checkout")
        # Rejected writes change nothing.
        self.assertEqual(repo.get_segment("production", "beta").version, 1)
        self.assertEqual({s.key for s in repo.list_segments("production")}, {"beta", "a"})
        self.assertEqual([f.key for f in repo.list_flags("production")], ["new-checkout"])


class TestCacheSynchronizer(unittest.TestCase):
    def setUp(self):
        self.repo = FlakyRepository()
        self.repo.import_config("production", _doc)
        self.sync = CacheSynchronizer(self.repo, "production", backoff=_no_wait, max_fetch_attempts=2)
        self.messages = []
        self.sync.load_all()

    def _event(self, version, key="new-checkout", deleted=False):
        return ChangeEvent("flag", key, "production", version, deleted)

    def test_load_all(self):
        snapshot = self.sync.store.snapshot()
        self.assertEqual(set(snapshot.flags), {"new-checkout"})
        self.assertEqual(set(snapshot.segments), {"beta"})

    def test_connect_sends_put_then_patches(self):
        self.sync.connect(self.messages.append)
        self.repo.put_flag("production", "new-checkout", {**_doc["flags"]["new-checkout"], "enabled": False})
        self.assertTrue(self.sync.handle_event(self._event(2)))
        self.assertEqual([m.type for m in self.messages], ["put", "patch"])
        put, patch = self.messages
        self.assertEqual(set(put.data["flags"]), {"new-checkout"})
        self.assertEqual((patch.kind, patch.key, patch.version), ("flag", "new-checkout", 2))
        self.assertFalse(patch.data["enabled"])

    def test_stale_and_duplicate_events_ignored(self):
        self.sync.connect(self.messages.append)
        for v in [1, 1, 0]:
            self.assertFalse(self.sync.handle_event(self._event(v)))
        self.assertFalse(self.sync.handle_event(ChangeEvent("flag", "new-checkout", "staging", 9)))
        self.assertEqual([m.type for m in self.messages], ["put"])

    def test_delete(self):
        self.sync.connect(self.messages.append)
        self.repo.delete_flag("production", "new-checkout")
        self.assertTrue(self.sync.handle_event(self._event(2, deleted=True)))
        self.assertIsNone(self.sync.store.get_flag("new-checkout"))
        self.assertEqual((self.messages[-1].type, self.messages[-1].version), ("delete", 2))
        # The put event that preceded the delete arrives late.
        self.assertFalse(self.sync.handle_event(self._event(2)))

    def test_new_item(self):
        self.repo.put_flag("production", "fresh", {"default": True})
        self.assertTrue(self.sync.handle_event(self._event(1, key="fresh")))
        self.assertEqual(self.sync.store.state("flag", "fresh"), "FRESH")

    def test_transient_failure_marks_stale(self):
        self.repo.put_flag("production", "new-checkout", {**_doc["flags"]["new-checkout"], "enabled": False})
        self.repo.failures = 2
        self.assertFalse(self.sync.handle_event(self._event(2)))
        # Still serving version 1, flagged for refresh.
        self.assertEqual(self.sync.store.version("flag", "new-checkout"), 1)
        self.assertEqual(self.sync.store.state("flag", "new-checkout"), "STALE")

        self.assertEqual(self.sync.refresh_stale(), 1)
        self.assertEqual(self.sync.store.version("flag", "new-checkout"), 2)
        self.assertEqual(self.sync.store.state("flag", "new-checkout"), "FRESH")

    def test_retry_succeeds(self):
        self.repo.put_flag("production", "new-checkout", {**_doc["flags"]["new-checkout"], "enabled": False})
        self.repo.failures = 1
        self.assertTrue(self.sync.handle_event(self._event(2)))

    def test_transient_failure_of_new_item(self):
        self.repo.put_flag("production", "fresh", {"default": True})
        self.repo.failures = 2
        self.assertFalse(self.sync.handle_event(self._event(1, key="fresh")))
        self.assertEqual(self.sync.store.state("flag", "fresh"), "LOADING")
        self.assertEqual(self.sync.refresh_stale(), 1)
        self.assertEqual(self.sync.store.state("flag", "fresh"), "FRESH")

    def test_refresh_evicts_deleted(self):
        self.sync.connect(self.messages.append)
        self.sync.store.mark_stale("flag", "new-checkout")
        self.repo.delete_flag("production", "new-checkout")
        self.sync.refresh_stale()
        self.assertEqual(self.sync.store.state("flag", "new-checkout"), "ABSENT")
        self.assertEqual((self.messages[-1].type, self.messages[-1].version), ("delete", None))

    def test_failing_listener_is_disconnected(self):
        closed = []

        def listener(message):
            if message.type == "patch":
                raise RuntimeError("client went away")

        conn = self.sync.connect(listener, on_close=lambda: closed.append(True))
        self.assertTrue(conn.is_open)
        self.repo.put_flag("production", "new-checkout", {**_doc["flags"]["new-checkout"], "enabled": False})
        self.sync.handle_event(self._event(2))
        self.assertFalse(conn.is_open)
        self.assertEqual(closed, [True])


class TestCacheSynchronizerThreads(unittest.TestCase):
    def test_end_to_end(self):
        repo = InMemoryRepository()
        repo.import_config("production", _doc)
        store = VersionedConfigStore("production", ttl=60)
        sync = CacheSynchronizer(repo, "production", store, Settings(poll_interval=0.05), backoff=_no_wait)
        sync.start()
        try:
            messages = []
            sync.connect(messages.append)
            for i in range(5):
                repo.put_flag("production", "new-checkout", {**_doc["flags"]["new-checkout"], "enabled": i % 2 == 0})
            self.assertTrue(_wait_for(lambda: store.version("flag", "new-checkout") == 6))
            self.assertTrue(store.get_flag("new-checkout").enabled)
            versions = [m.version for m in messages if m.type == "patch"]
            self.assertEqual(versions, sorted(versions))
        finally:
            sync.stop()
