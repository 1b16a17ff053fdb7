"""
Per-printer in-memory queue index

Holds the jobs that are ready to run for each printer, in the order they were
loaded from the store, plus a watermark (newest created_at seen) so that the
next load only asks for jobs that arrived later.

Not thread-safe on its own; the dispatcher's lock serializes every call.
"""

from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional

from printdispatch.models import Job


class QueueIndex:
    """Map of printer id -> FIFO of ready jobs"""

    def __init__(self):
        self._queues: Dict[str, Deque[Job]] = {}
        self._ids: Dict[str, set] = {}
        self._watermarks: Dict[str, datetime] = {}

    def append(self, resource_id: str, jobs: Iterable[Job]) -> int:
        """Merge jobs into the printer's queue, skipping ids already queued"""
        queue = self._queues.setdefault(resource_id, deque())
        ids = self._ids.setdefault(resource_id, set())

        added = 0
        newest = self._watermarks.get(resource_id)
        for job in jobs:
            if job.created_at and (newest is None or job.created_at > newest):
                newest = job.created_at
            if job.id in ids:
                continue
            queue.append(job)
            ids.add(job.id)
            added += 1

        if newest is not None:
            self._watermarks[resource_id] = newest
        if not queue:
            self._drop(resource_id)
        return added

    def shift(self, resource_id: str) -> Optional[Job]:
        """Pop the head job; the printer entry disappears once it drains"""
        queue = self._queues.get(resource_id)
        if not queue:
            self._drop(resource_id)
            return None

        job = queue.popleft()
        self._ids[resource_id].discard(job.id)
        if not queue:
            self._drop(resource_id)
        return job

    def remove(self, resource_id: str, job_id: str) -> bool:
        queue = self._queues.get(resource_id)
        if not queue or job_id not in self._ids[resource_id]:
            return False

        for job in list(queue):
            if job.id == job_id:
                queue.remove(job)
                break
        self._ids[resource_id].discard(job_id)
        if not queue:
            self._drop(resource_id)
        return True

    def clear(self, resource_id: str) -> int:
        """Drop a printer's queue and watermark. Returns jobs dropped."""
        dropped = len(self._queues.get(resource_id, ()))
        self._drop(resource_id)
        return dropped

    def clear_all(self) -> None:
        self._queues.clear()
        self._ids.clear()
        self._watermarks.clear()

    def _drop(self, resource_id: str) -> None:
        self._queues.pop(resource_id, None)
        self._ids.pop(resource_id, None)
        self._watermarks.pop(resource_id, None)

    # ==================== Queries ====================

    def is_empty(self, resource_id: str) -> bool:
        return not self._queues.get(resource_id)

    def length(self, resource_id: str) -> int:
        return len(self._queues.get(resource_id, ()))

    def watermark(self, resource_id: str) -> Optional[datetime]:
        return self._watermarks.get(resource_id)

    def resource_ids(self) -> List[str]:
        return list(self._queues.keys())

    def peek(self, resource_id: str) -> Optional[Job]:
        queue = self._queues.get(resource_id)
        return queue[0] if queue else None

    def stats(self) -> Dict:
        per_resource = {rid: len(queue) for rid, queue in self._queues.items()}
        return {
            "total_resources": len(per_resource),
            "total_jobs": sum(per_resource.values()),
            "per_resource_counts": per_resource,
        }
