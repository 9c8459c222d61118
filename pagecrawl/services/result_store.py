"""Append-only, capped store of extracted records for one run."""

from threading import Lock

from pagecrawl.models.outcome_models import ExtractedRecord


class ResultStore:
    """Insertion-ordered record sequence with a hard cap.

    Appends after the cap is reached are dropped and counted; the caller
    reports them.
    """

    def __init__(self, max_records: int | None = None):
        """Initialize an empty store.

        Args:
            max_records: Maximum records kept (None for unlimited).
        """
        self._max_records = max_records
        self._records: list[ExtractedRecord] = []
        self._dropped = 0
        self._lock = Lock()

    def append(self, record: ExtractedRecord) -> bool:
        """Store a record.

        Returns:
            True if stored, False if dropped because the store is full.
        """
        with self._lock:
            if self._max_records is not None and len(self._records) >= self._max_records:
                self._dropped += 1
                return False
            self._records.append(dict(record))
            return True

    @property
    def is_full(self) -> bool:
        with self._lock:
            return self._max_records is not None and len(self._records) >= self._max_records

    @property
    def dropped(self) -> int:
        return self._dropped

    def records(self) -> list[ExtractedRecord]:
        """Copy of the stored records in insertion order."""
        with self._lock:
            return [dict(record) for record in self._records]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
