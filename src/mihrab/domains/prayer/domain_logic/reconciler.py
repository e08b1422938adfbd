"""Status reconciliation: bring automatic prayer statuses up to date.

Only records still in an automatic state (``none``, ``upcoming``,
``pending``) and not confirmed by the user are ever touched. For those:

* before the scheduled instant        -> ``upcoming``
* after it, inside an excused period  -> ``excused``
* after it, within the grace window   -> ``pending``
* after the grace window              -> ``missed``

The decision is a pure function of (record, now, offset, periods), so
running reconciliation twice without time passing writes nothing the
second time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from mihrab.core.storage.document_store import WriteOp
from mihrab.domains.prayer.connectors import RecordStore
from mihrab.domains.prayer.domain_logic.excused_periods import is_excused
from mihrab.domains.prayer.domain_logic.models import (
    AUTOMATIC_STATUSES,
    PRAYER_COLLECTION,
    ExcusedPeriod,
    PrayerRecord,
    PrayerStatus,
)
from mihrab.domains.prayer.domain_logic.timeutil import (
    ensure_aware,
    scheduled_instant_or_now,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE = timedelta(minutes=120)

# The conditional write re-checks these on the stored document, so a user
# mark that lands between our read and our write is not overwritten.
_AUTOMATIC_VALUES = sorted(s.value for s in AUTOMATIC_STATUSES)


def is_reconcilable(record: PrayerRecord) -> bool:
    return not record.confirmed and record.status in AUTOMATIC_STATUSES


def effective_instant(record: PrayerRecord, now: datetime, current_offset: int) -> datetime:
    """The record's due instant in the caller's current offset."""
    return scheduled_instant_or_now(
        record.date,
        record.scheduled_time,
        created_offset=record.timezone_offset,
        current_offset=current_offset,
        now=now,
    )


def derive_status(
    record: PrayerRecord,
    now: datetime,
    *,
    current_offset: int,
    periods: Iterable[ExcusedPeriod] = (),
    grace: timedelta = DEFAULT_GRACE,
) -> PrayerStatus:
    """Return the status ``record`` should have at ``now``.

    Confirmed or non-automatic records keep their status unchanged.
    """
    if not is_reconcilable(record):
        return record.status

    now = ensure_aware(now, current_offset)
    instant = effective_instant(record, now, current_offset)

    if now < instant:
        return PrayerStatus.UPCOMING
    if is_excused(record.date, record.prayer_name, periods):
        return PrayerStatus.EXCUSED
    if now < instant + grace:
        return PrayerStatus.PENDING
    return PrayerStatus.MISSED


class StatusReconciler:
    """Applies :func:`derive_status` to a record set and persists the diff.

    Usage::

        reconciler = StatusReconciler(store, grace=timedelta(minutes=90))
        changed = await reconciler.reconcile(now, records, periods, current_offset=180)
    """

    def __init__(self, store: RecordStore, *, grace: timedelta = DEFAULT_GRACE) -> None:
        self._store = store
        self._grace = grace

    @property
    def grace(self) -> timedelta:
        return self._grace

    def plan(
        self,
        now: datetime,
        records: Sequence[PrayerRecord],
        periods: Sequence[ExcusedPeriod],
        *,
        current_offset: int,
    ) -> list[PrayerRecord]:
        """Return updated copies of the records whose status would change."""
        stamp = ensure_aware(now, current_offset).isoformat()
        changed: list[PrayerRecord] = []
        for record in records:
            status = derive_status(
                record,
                now,
                current_offset=current_offset,
                periods=periods,
                grace=self._grace,
            )
            if status is not record.status:
                changed.append(record.with_status(status, updated_at=stamp))
        return changed

    async def reconcile(
        self,
        now: datetime,
        records: Sequence[PrayerRecord],
        periods: Sequence[ExcusedPeriod],
        *,
        current_offset: int,
    ) -> list[PrayerRecord]:
        """Persist status changes for ``records`` in a single batch.

        Returns:
            The records actually written. A record the user confirmed after
            it was read is skipped by the conditional write and left out.

        Raises:
            RecordStoreError: If the batch fails; nothing was written.
        """
        changed = self.plan(now, records, periods, current_offset=current_offset)
        if not changed:
            return []

        ops = [
            WriteOp.update_if(
                PRAYER_COLLECTION,
                record.key,
                {"status": record.status.value, "updated_at": record.updated_at},
                {"status": _AUTOMATIC_VALUES, "confirmed": [False]},
            )
            for record in changed
        ]
        applied = set(await self._store.batch_write(ops))
        written = [record for record in changed if record.key in applied]

        skipped = len(changed) - len(written)
        if skipped:
            logger.info("Skipped %d record(s) confirmed since they were read", skipped)
        logger.debug("Reconciled %d record(s)", len(written))
        return written
