"""
FolioAllocator -- authorized, gap-free, never-reused document numbering.

Responsibility:
    Hands out the next folio for an (account, document kind) from the
    Authority-granted ranges, records every folio that leaves the allocator,
    ingests new ranges, and reports usage and numbering gaps.

Architecture position:
    Kernel > Services -- imperative shell over models/folio.py.
    Called by dte_services.issuance_service inside the first issuance
    transaction; the caller owns commit/rollback.

Invariants enforced:
    - Per-key total order: every mutation locks the FolioCounter row
      (``SELECT ... FOR UPDATE``), so concurrent allocators for one key are
      serialized across threads and processes; distinct keys never contend.
    - No reuse: a folio appears at most once in IssuedFolio
      (uq_issued_folio) and release() only voids it.
    - Only authorized numbers: a folio outside every open range is never
      issued.  Numbers between ranges are skipped, not reported as gaps.
    - The counter never decreases; a rolled-back transaction returns the
      folio because the increment was never committed.

Failure modes:
    - RangeExhaustedError: no open range holds another folio (counter
      untouched).
    - OutOfRangeError / FolioInUseError from reserve().
    - FolioNotIssuedError from release().
    - InvalidFolioRangeError / RangeOverlapError / RangeBelowCounterError
      from grant_range().
    - IntegrityError on concurrent counter creation is absorbed by a
      savepoint retry.

Audit relevance:
    Each allocation is logged at INFO with account, kind and folio;
    exhaustion and range retirement at WARNING.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.policies import FolioPolicy
from dte_kernel.exceptions import (
    FolioInUseError,
    FolioNotIssuedError,
    InvalidFolioRangeError,
    OutOfRangeError,
    RangeBelowCounterError,
    RangeExhaustedError,
    RangeOverlapError,
)
from dte_kernel.logging_config import get_logger
from dte_kernel.models.folio import (
    FolioCounter,
    FolioRange,
    FolioStatus,
    IssuedFolio,
    RangeRetirement,
)

logger = get_logger("services.folio_allocator")


@dataclass(frozen=True, slots=True)
class FolioGap:
    """Consecutive missing folios ``start..end`` (inclusive)."""

    start: int
    end: int
    count: int


@dataclass(frozen=True, slots=True)
class FolioStatusReport:
    """Numbering capacity of one (account, kind)."""

    account_id: str
    document_kind: int
    current_value: int
    next_folio: int | None
    range_start: int | None
    range_end: int | None
    total: int
    used: int
    available: int
    usage_pct: Decimal
    needs_renewal: bool


def detect_gaps(folios: Iterable[int]) -> list[FolioGap]:
    """Gaps between consecutive values of ``folios`` (order and duplicates ignored)."""
    ordered = sorted(set(folios))
    gaps: list[FolioGap] = []
    for previous, current in zip(ordered, ordered[1:]):
        if current > previous + 1:
            gaps.append(FolioGap(previous + 1, current - 1, current - previous - 1))
    return gaps


class FolioAllocator:
    """
    Folio allocation over locked counter rows.

    Contract:
        All operations run in the caller's transaction and flush, never
        commit.  The counter row stays locked until the caller commits or
        rolls back, so callers must not do network I/O between allocate()
        and the end of the transaction.

    Guarantees:
        - allocate() returns strictly increasing folios per key, each inside
          an open range, each recorded exactly once.
        - A range whose last folio is issued is retired as ``exhausted``.

    Non-goals:
        - Does NOT release folios automatically on downstream failure.
        - Does NOT verify grant proofs; the issuance service does that.

    Usage:
        with session_scope() as session:
            folio = FolioAllocator(session).allocate("acme", 33)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: FolioPolicy | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._policy = policy or FolioPolicy()

    # ------------------------------------------------------------------
    # Counter locking
    # ------------------------------------------------------------------

    def _select_counter(self, account_id: str, document_kind: int):
        return (
            select(FolioCounter)
            .where(
                FolioCounter.account_id == account_id,
                FolioCounter.document_kind == document_kind,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def _lock_counter(
        self, account_id: str, document_kind: int, create: bool = False
    ) -> FolioCounter | None:
        """
        Lock (and optionally create) the counter row for a key.

        Creation uses a savepoint so a concurrent creator's IntegrityError
        does not roll back the caller's other work.
        """
        self._session.expire_all()
        counter = self._session.execute(
            self._select_counter(account_id, document_kind)
        ).scalar_one_or_none()
        if counter is not None or not create:
            return counter

        savepoint = self._session.begin_nested()
        try:
            counter = FolioCounter(
                account_id=account_id, document_kind=document_kind, current_value=0
            )
            self._session.add(counter)
            self._session.flush()
            savepoint.commit()
            return counter
        except IntegrityError:
            logger.debug(
                "folio_counter_race_retry",
                extra={"account_id": account_id, "document_kind": document_kind},
            )
            savepoint.rollback()
            self._session.expire_all()
            return self._session.execute(
                self._select_counter(account_id, document_kind)
            ).scalar_one()

    def _open_ranges(self, account_id: str, document_kind: int) -> list[FolioRange]:
        return list(
            self._session.execute(
                select(FolioRange)
                .where(
                    FolioRange.account_id == account_id,
                    FolioRange.document_kind == document_kind,
                    FolioRange.retired_at.is_(None),
                )
                .order_by(FolioRange.range_start)
            ).scalars()
        )

    def _claimed_above(self, account_id: str, document_kind: int, floor: int) -> set[int]:
        return set(
            self._session.execute(
                select(IssuedFolio.folio).where(
                    IssuedFolio.account_id == account_id,
                    IssuedFolio.document_kind == document_kind,
                    IssuedFolio.folio > floor,
                )
            ).scalars()
        )

    def _retire(self, folio_range: FolioRange, reason: RangeRetirement) -> None:
        folio_range.retired_at = self._clock.now_utc()
        folio_range.retired_reason = reason.value
        logger.warning(
            "folio_range_retired",
            extra={
                "account_id": folio_range.account_id,
                "document_kind": folio_range.document_kind,
                "range_start": folio_range.range_start,
                "range_end": folio_range.range_end,
                "reason": reason.value,
            },
        )

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(self, account_id: str, document_kind: int) -> int:
        """
        Claim the next authorized folio for a key.

        Preconditions:
            The caller is within an active transaction.

        Postconditions:
            - The counter equals the returned folio.
            - An IssuedFolio(status=issued) row exists for it.

        Raises:
            RangeExhaustedError: No open range holds another folio.
        """
        counter = self._lock_counter(account_id, document_kind)
        if counter is None:
            raise RangeExhaustedError(account_id, document_kind, 0)

        claimed = self._claimed_above(account_id, document_kind, counter.current_value)
        candidate = counter.current_value + 1
        chosen_range = None
        for folio_range in self._open_ranges(account_id, document_kind):
            if folio_range.range_end < candidate:
                continue
            candidate = max(candidate, folio_range.range_start)
            while candidate <= folio_range.range_end and candidate in claimed:
                candidate += 1
            if candidate <= folio_range.range_end:
                chosen_range = folio_range
                break
            # Every remaining folio of this range was reserved
            self._retire(folio_range, RangeRetirement.EXHAUSTED)

        if chosen_range is None:
            self._session.flush()
            logger.warning(
                "folio_range_exhausted",
                extra={
                    "account_id": account_id,
                    "document_kind": document_kind,
                    "current_value": counter.current_value,
                },
            )
            raise RangeExhaustedError(account_id, document_kind, counter.current_value)

        counter.current_value = candidate
        self._session.add(
            IssuedFolio(
                account_id=account_id,
                document_kind=document_kind,
                folio=candidate,
                status=FolioStatus.ISSUED.value,
                issued_at=self._clock.now_utc(),
            )
        )
        if candidate == chosen_range.range_end:
            self._retire(chosen_range, RangeRetirement.EXHAUSTED)
        self._session.flush()

        logger.info(
            "folio_allocated",
            extra={"account_id": account_id, "document_kind": document_kind, "folio": candidate},
        )
        return candidate

    def reserve(self, account_id: str, document_kind: int, folio: int) -> IssuedFolio:
        """
        Claim a specific folio; later allocate() calls skip it.

        Raises:
            OutOfRangeError: ``folio`` is in no open range.
            FolioInUseError: ``folio`` was already issued or reserved.
        """
        counter = self._lock_counter(account_id, document_kind)
        if counter is None or self.active_range(account_id, document_kind, folio) is None:
            raise OutOfRangeError(account_id, document_kind, folio)
        if self._find_issued(account_id, document_kind, folio) is not None:
            raise FolioInUseError(account_id, document_kind, folio)

        issued = IssuedFolio(
            account_id=account_id,
            document_kind=document_kind,
            folio=folio,
            status=FolioStatus.RESERVED.value,
            issued_at=self._clock.now_utc(),
        )
        self._session.add(issued)
        self._session.flush()
        logger.info(
            "folio_reserved",
            extra={"account_id": account_id, "document_kind": document_kind, "folio": folio},
        )
        return issued

    def release(
        self, account_id: str, document_kind: int, folio: int, reason: str
    ) -> IssuedFolio:
        """
        Void an issued or reserved folio.  Idempotent; never makes it reusable.

        Raises:
            FolioNotIssuedError: The folio never left the allocator.
        """
        issued = self._session.execute(
            select(IssuedFolio)
            .where(
                IssuedFolio.account_id == account_id,
                IssuedFolio.document_kind == document_kind,
                IssuedFolio.folio == folio,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if issued is None:
            raise FolioNotIssuedError(account_id, document_kind, folio)
        if issued.status == FolioStatus.VOIDED.value:
            return issued

        issued.status = FolioStatus.VOIDED.value
        issued.voided_at = self._clock.now_utc()
        issued.void_reason = reason
        self._session.flush()
        logger.info(
            "folio_voided",
            extra={
                "account_id": account_id,
                "document_kind": document_kind,
                "folio": folio,
                "reason": reason,
            },
        )
        return issued

    def attach_document(
        self, account_id: str, document_kind: int, folio: int, document_id: str
    ) -> None:
        """Link an issued folio to the document that consumed it."""
        issued = self._find_issued(account_id, document_kind, folio)
        if issued is None:
            raise FolioNotIssuedError(account_id, document_kind, folio)
        issued.document_id = document_id
        self._session.flush()

    # ------------------------------------------------------------------
    # Ranges
    # ------------------------------------------------------------------

    def grant_range(
        self,
        account_id: str,
        document_kind: int,
        range_start: int,
        range_end: int,
        grant_xml: str = "",
        supersede: bool = False,
    ) -> FolioRange:
        """
        Ingest a newly authorized range.

        Postconditions:
            - The counter exists and is at least ``range_start - 1``.
            - With ``supersede``, overlapping open ranges are retired as
              ``superseded``.

        Raises:
            InvalidFolioRangeError, RangeOverlapError, RangeBelowCounterError
        """
        if range_start < 1:
            raise InvalidFolioRangeError(range_start, range_end, "folios start at 1")
        if range_start > range_end:
            raise InvalidFolioRangeError(range_start, range_end, "start is after end")

        counter = self._lock_counter(account_id, document_kind, create=True)
        if range_end <= counter.current_value:
            raise RangeBelowCounterError(
                account_id, document_kind, range_end, counter.current_value
            )

        overlapping = [
            r
            for r in self._open_ranges(account_id, document_kind)
            if r.range_start <= range_end and range_start <= r.range_end
        ]
        if overlapping and not supersede:
            existing = overlapping[0]
            raise RangeOverlapError(
                account_id,
                document_kind,
                range_start,
                range_end,
                existing.range_start,
                existing.range_end,
            )
        for existing in overlapping:
            self._retire(existing, RangeRetirement.SUPERSEDED)

        folio_range = FolioRange(
            account_id=account_id,
            document_kind=document_kind,
            range_start=range_start,
            range_end=range_end,
            grant_xml=grant_xml or None,
            granted_at=self._clock.now_utc(),
        )
        self._session.add(folio_range)
        counter.current_value = max(counter.current_value, range_start - 1)
        self._session.flush()

        logger.info(
            "folio_range_granted",
            extra={
                "account_id": account_id,
                "document_kind": document_kind,
                "range_start": range_start,
                "range_end": range_end,
                "superseded": len(overlapping),
            },
        )
        return folio_range

    def active_range(
        self,
        account_id: str,
        document_kind: int,
        folio: int,
        include_exhausted: bool = False,
    ) -> FolioRange | None:
        """
        Open range containing ``folio``, if any.

        ``include_exhausted`` also matches a range retired because its last
        folio was issued, which is how the final folio of a range is found
        right after allocate().
        """
        query = select(FolioRange).where(
            FolioRange.account_id == account_id,
            FolioRange.document_kind == document_kind,
            FolioRange.range_start <= folio,
            FolioRange.range_end >= folio,
        )
        if include_exhausted:
            query = query.where(
                (FolioRange.retired_at.is_(None))
                | (FolioRange.retired_reason == RangeRetirement.EXHAUSTED.value)
            )
        else:
            query = query.where(FolioRange.retired_at.is_(None))
        return self._session.execute(query.order_by(FolioRange.range_start)).scalars().first()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _find_issued(self, account_id: str, document_kind: int, folio: int) -> IssuedFolio | None:
        return self._session.execute(
            select(IssuedFolio).where(
                IssuedFolio.account_id == account_id,
                IssuedFolio.document_kind == document_kind,
                IssuedFolio.folio == folio,
            )
        ).scalar_one_or_none()

    def folio_status(self, account_id: str, document_kind: int) -> FolioStatusReport:
        """Usage of the open ranges; read-only, takes no lock."""
        counter = self._session.execute(
            select(FolioCounter).where(
                FolioCounter.account_id == account_id,
                FolioCounter.document_kind == document_kind,
            )
        ).scalar_one_or_none()
        current = counter.current_value if counter is not None else 0
        ranges = self._open_ranges(account_id, document_kind)
        claimed = self._claimed_above(account_id, document_kind, current)

        total = sum(r.size for r in ranges)
        available = 0
        next_folio = None
        next_range = None
        for folio_range in ranges:
            low = max(folio_range.range_start, current + 1)
            if low > folio_range.range_end:
                continue
            taken = sum(1 for f in claimed if low <= f <= folio_range.range_end)
            free = folio_range.range_end - low + 1 - taken
            available += free
            if next_folio is None and free:
                candidate = low
                while candidate in claimed:
                    candidate += 1
                next_folio = candidate
                next_range = folio_range

        used = total - available
        usage_pct = (
            (Decimal(used) * 100 / Decimal(total)).quantize(Decimal("0.01"), ROUND_HALF_UP)
            if total
            else Decimal("100.00")
        )
        return FolioStatusReport(
            account_id=account_id,
            document_kind=document_kind,
            current_value=current,
            next_folio=next_folio,
            range_start=next_range.range_start if next_range else None,
            range_end=next_range.range_end if next_range else None,
            total=total,
            used=used,
            available=available,
            usage_pct=usage_pct,
            needs_renewal=usage_pct >= self._policy.renewal_threshold_pct,
        )

    def gap_report(
        self,
        account_id: str,
        document_kind: int,
        issued_from: datetime | None = None,
        issued_to: datetime | None = None,
    ) -> list[FolioGap]:
        """
        Numbering gaps among folios issued in ``[issued_from, issued_to]``.

        Folios between granted ranges are not gaps: each gap is clipped to
        the ranges (open or retired) that authorized it.
        """
        query = select(IssuedFolio.folio).where(
            IssuedFolio.account_id == account_id,
            IssuedFolio.document_kind == document_kind,
        )
        if issued_from is not None:
            query = query.where(IssuedFolio.issued_at >= issued_from)
        if issued_to is not None:
            query = query.where(IssuedFolio.issued_at <= issued_to)
        folios = list(self._session.execute(query).scalars())

        ranges = list(
            self._session.execute(
                select(FolioRange).where(
                    FolioRange.account_id == account_id,
                    FolioRange.document_kind == document_kind,
                )
            ).scalars()
        )

        gaps: list[FolioGap] = []
        for gap in detect_gaps(folios):
            for folio_range in sorted(ranges, key=lambda r: r.range_start):
                start = max(gap.start, folio_range.range_start)
                end = min(gap.end, folio_range.range_end)
                if start <= end:
                    gaps.append(FolioGap(start, end, end - start + 1))
        return _merge(gaps)


def _merge(gaps: list[FolioGap]) -> list[FolioGap]:
    """Collapse overlapping pieces produced by overlapping (superseded) ranges."""
    merged: list[FolioGap] = []
    for gap in sorted(gaps, key=lambda g: g.start):
        if merged and gap.start <= merged[-1].end + 1:
            last = merged[-1]
            end = max(last.end, gap.end)
            merged[-1] = FolioGap(last.start, end, end - last.start + 1)
        else:
            merged.append(gap)
    return merged
