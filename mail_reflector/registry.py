"""Consecutive-failure registry for poison messages."""

from __future__ import annotations

import threading

import structlog

logger = structlog.get_logger()

DEFAULT_THRESHOLD = 3


class ProblematicUidRegistry:
    """Counts consecutive fetch failures per UID.

    Once a UID reaches *threshold* failures it is skipped until
    :meth:`record_success` or :meth:`clear` is called (or the process
    restarts).  Safe to use from worker threads.
    """

    def __init__(self, threshold: int = DEFAULT_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self._threshold = threshold
        self._failures: dict[int, int] = {}
        self._uid_validity: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def threshold(self) -> int:
        return self._threshold

    def record_failure(self, uid: int) -> int:
        """Increment the failure count for *uid* and return the new count."""
        with self._lock:
            count = self._failures.get(uid, 0) + 1
            self._failures[uid] = count
        if count == self._threshold:
            logger.warning("uid_marked_problematic", uid=uid, failures=count)
        return count

    def record_success(self, uid: int) -> None:
        with self._lock:
            self._failures.pop(uid, None)

    def failures(self, uid: int) -> int:
        with self._lock:
            return self._failures.get(uid, 0)

    def is_blocked(self, uid: int) -> bool:
        """True once *uid* has failed *threshold* times in a row."""
        with self._lock:
            return self._failures.get(uid, 0) >= self._threshold

    def blocked(self) -> list[int]:
        with self._lock:
            return sorted(uid for uid, n in self._failures.items() if n >= self._threshold)

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()

    def observe_uid_validity(self, mailbox: str, uid_validity: int | None) -> bool:
        """Record the UIDVALIDITY of *mailbox*; clear all counts if it changed.

        Returns *True* when the registry was reset.
        """
        if uid_validity is None:
            return False
        with self._lock:
            previous = self._uid_validity.get(mailbox)
            self._uid_validity[mailbox] = uid_validity
            changed = previous is not None and previous != uid_validity
            if changed:
                self._failures.clear()
        if changed:
            logger.warning(
                "uid_validity_changed",
                mailbox=mailbox,
                previous=previous,
                current=uid_validity,
            )
        return changed

    def __len__(self) -> int:
        with self._lock:
            return len(self._failures)
