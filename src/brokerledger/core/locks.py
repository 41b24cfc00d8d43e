"""Per-portfolio locks serializing ledger updates of one portfolio."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class PortfolioLocks:
    """
    Registry of one lock per portfolio.

    Ingestions of the same portfolio run one at a time; different
    portfolios never wait on each other here.
    """

    def __init__(self):
        self._locks: Dict[int, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, portfolio_id: int) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(portfolio_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[portfolio_id] = lock
            return lock

    @contextmanager
    def hold(self, portfolio_id: int) -> Iterator[None]:
        lock = self.lock_for(portfolio_id)
        with lock:
            yield
