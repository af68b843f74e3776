"""
Folio allocation under concurrent callers.

Every worker opens its own session and transaction, as separate
application instances would.  The counter row lock (BEGIN IMMEDIATE on
SQLite, SELECT ... FOR UPDATE on PostgreSQL) must serialize them so no
folio is returned twice and none is skipped.

Run with: pytest tests/concurrency -v
Skip with: pytest -m "not slow_locks"
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from dte_kernel.db.engine import session_scope
from dte_kernel.exceptions import RangeBelowCounterError, RangeExhaustedError
from dte_kernel.models.folio import FolioCounter, IssuedFolio
from dte_kernel.services.folio_allocator import FolioAllocator
from tests.conftest import ACCOUNT_ID

pytestmark = pytest.mark.slow_locks

WORKERS = 8


def _grant(session_factory, clock, kind, start, end, account_id=ACCOUNT_ID):
    with session_scope(session_factory) as session:
        FolioAllocator(session, clock).grant_range(account_id, kind, start, end)


def _allocate_all(session_factory, clock, calls, account_id=ACCOUNT_ID, kind=33):
    """Run ``calls`` allocations across WORKERS threads released together."""
    barrier = threading.Barrier(min(WORKERS, calls))

    def worker(index: int):
        if index < barrier.parties:
            barrier.wait()
        with session_scope(session_factory) as session:
            return FolioAllocator(session, clock).allocate(account_id, kind)

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        futures = [pool.submit(worker, i) for i in range(calls)]
        return [f.result() for f in futures]


class TestConcurrentAllocation:
    def test_concurrent_callers_get_distinct_contiguous_folios(self, session_factory, clock):
        _grant(session_factory, clock, 33, 100, 199)

        folios = _allocate_all(session_factory, clock, 40)

        assert len(set(folios)) == 40
        assert sorted(folios) == list(range(100, 140))

    def test_counter_matches_issued_history(self, session_factory, clock):
        _grant(session_factory, clock, 33, 1, 500)
        _allocate_all(session_factory, clock, 25)

        with session_scope(session_factory) as session:
            counter = session.execute(select(FolioCounter)).scalar_one()
            issued = session.execute(select(func.count()).select_from(IssuedFolio)).scalar_one()
        assert counter.current_value == 25
        assert issued == 25

    def test_exhaustion_under_contention(self, session_factory, clock):
        _grant(session_factory, clock, 33, 1, 5)
        barrier = threading.Barrier(WORKERS)

        def worker():
            barrier.wait()
            try:
                with session_scope(session_factory) as session:
                    return FolioAllocator(session, clock).allocate(ACCOUNT_ID, 33)
            except RangeExhaustedError:
                return None

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = [f.result() for f in [pool.submit(worker) for _ in range(WORKERS)]]

        issued = sorted(r for r in results if r is not None)
        assert issued == [1, 2, 3, 4, 5]
        assert results.count(None) == WORKERS - 5

    def test_distinct_keys_do_not_interfere(self, session_factory, clock):
        _grant(session_factory, clock, 33, 1, 100)
        _grant(session_factory, clock, 61, 1, 100)
        barrier = threading.Barrier(WORKERS)

        def worker(kind: int):
            barrier.wait()
            with session_scope(session_factory) as session:
                return kind, FolioAllocator(session, clock).allocate(ACCOUNT_ID, kind)

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            futures = [pool.submit(worker, 33 if i % 2 else 61) for i in range(WORKERS)]
            results = [f.result() for f in futures]

        for kind in (33, 61):
            folios = sorted(folio for k, folio in results if k == kind)
            assert folios == list(range(1, WORKERS // 2 + 1))

    def test_concurrent_counter_creation(self, session_factory, clock):
        """Two first-time grants for one key race to create the counter row."""
        barrier = threading.Barrier(2)
        ranges = [(1, 10), (11, 20)]
        outcomes = []

        def worker(start: int, end: int):
            barrier.wait()
            try:
                _grant(session_factory, clock, 33, start, end)
                outcomes.append((start, end))
            except RangeBelowCounterError:
                # The later range won the race and raised the floor past this one
                outcomes.append("below_counter")

        threads = [threading.Thread(target=worker, args=r) for r in ranges]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(outcomes) == 2
        assert (11, 20) in outcomes
        with session_scope(session_factory) as session:
            counters = session.execute(select(FolioCounter)).scalars().all()
        assert len(counters) == 1
