import asyncio
from typing import Dict


class ProjectLocks:
    """One asyncio.Lock per project; projects never block each other."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_project(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock
