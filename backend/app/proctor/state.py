"""Client-local durable state that has to survive a reload of the exam client.

Keys are scoped by exam and student: the store may be a shared redis, and
one student's anchor or counter must never be read or cleared for another.
"""
import logging
from typing import Optional

from ..core.cache import CacheManager, cache as default_cache

logger = logging.getLogger(__name__)


def anchor_key(exam_id: str, student_id: str) -> str:
    return f"exam-session-{exam_id}-{student_id}"


def violation_key(exam_id: str, student_id: str) -> str:
    return f"tab-switch-count-{exam_id}-{student_id}"


class SessionStateStore:
    """Start-instant anchor and violation counter, stored without expiry"""

    def __init__(self, cache: Optional[CacheManager] = None):
        self.cache = cache or default_cache

    def get_anchor(self, exam_id: str, student_id: str) -> Optional[float]:
        value = self.cache.get(anchor_key(exam_id, student_id))
        if isinstance(value, dict) and value.get("startInstant") is not None:
            return float(value["startInstant"])
        return None

    def set_anchor_if_absent(self, exam_id: str, student_id: str, start_instant: float) -> float:
        """Persist ``start_instant`` unless an anchor exists; returns the effective anchor."""
        existing = self.get_anchor(exam_id, student_id)
        if existing is not None:
            return existing
        self.cache.persist(anchor_key(exam_id, student_id), {"startInstant": start_instant})
        return start_instant

    def get_violation_count(self, exam_id: str, student_id: str) -> int:
        value = self.cache.get(violation_key(exam_id, student_id))
        try:
            return int(value) if value is not None else 0
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed violation count for exam={exam_id} student={student_id}: {value!r}")
            return 0

    def set_violation_count(self, exam_id: str, student_id: str, count: int):
        self.cache.persist(violation_key(exam_id, student_id), count)

    def clear(self, exam_id: str, student_id: str):
        self.cache.delete(anchor_key(exam_id, student_id))
        self.cache.delete(violation_key(exam_id, student_id))
