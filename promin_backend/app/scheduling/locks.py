import threading
from contextlib import contextmanager
from typing import Dict, List


class ProjectLocks:
    """One re-entrant lock per project so cascades over the same task graph
    run one at a time inside this process.

    An entry lives only while some thread holds or waits for it; the last
    one out removes it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # project_id -> [lock, number of holders and waiters]
        self._locks: Dict[int, List] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, project_id: int):
        with self._guard:
            entry = self._locks.get(project_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[project_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[project_id]


project_locks = ProjectLocks()
