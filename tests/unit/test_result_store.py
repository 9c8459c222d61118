"""Unit tests for the result store."""

import threading

from pagecrawl.services.result_store import ResultStore


class TestResultStore:
    """Test ResultStore append, cap and ordering."""

    def test_insertion_order(self):
        store = ResultStore()
        for i in range(3):
            assert store.append({"url": f"https://example.com/{i}"}) is True
        assert [r["url"] for r in store.records()] == [
            "https://example.com/0",
            "https://example.com/1",
            "https://example.com/2",
        ]
        assert len(store) == 3
        assert store.is_full is False

    def test_cap_drops_and_counts(self):
        store = ResultStore(max_records=2)
        results = [store.append({"i": i}) for i in range(5)]
        assert results == [True, True, False, False, False]
        assert store.is_full is True
        assert store.dropped == 3
        assert store.records() == [{"i": 0}, {"i": 1}]

    def test_records_are_copies(self):
        record = {"a": 1}
        store = ResultStore()
        store.append(record)
        record["a"] = 2
        store.records()[0]["a"] = 3
        assert store.records() == [{"a": 1}]

    def test_concurrent_appends_respect_cap(self):
        store = ResultStore(max_records=50)

        def worker():
            for i in range(20):
                store.append({"i": i})

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store) == 50
        assert store.dropped == 150
