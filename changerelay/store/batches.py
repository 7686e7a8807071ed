from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update

from changerelay.models import ChangeTrackingVersion, SlaveChangeTrackingVersion
from changerelay.schemas import ALL_SYNC_BITS, ChangeTrackingBatch, SyncBit

logger = logging.getLogger(__name__)


def _to_batch(row) -> ChangeTrackingBatch:
    return ChangeTrackingBatch(
        ctid=row.ctid,
        start_version=row.sync_start_version or 0,
        stop_version=row.sync_stop_version or 0,
        progress=SyncBit(row.sync_bitwise or 0),
        start_time=row.sync_start_time,
    )


class BatchLogMixin:
    """Batch bookkeeping stored in ``tblCTVersion`` and ``tblCTSlaveVersion`` on a relay."""

    def get_last_batch(self, slave_identifier: Optional[str] = None) -> ChangeTrackingBatch | None:
        with self._session_factory() as session:
            if slave_identifier is None:
                stmt = select(ChangeTrackingVersion).order_by(ChangeTrackingVersion.ctid.desc()).limit(1)
            else:
                stmt = (
                    select(SlaveChangeTrackingVersion)
                    .where(SlaveChangeTrackingVersion.slave_identifier == slave_identifier)
                    .order_by(SlaveChangeTrackingVersion.ctid.desc())
                    .limit(1)
                )
            row = session.execute(stmt).scalars().first()
            return _to_batch(row) if row is not None else None

    def get_batch(self, ctid: int, slave_identifier: Optional[str] = None) -> ChangeTrackingBatch | None:
        with self._session_factory() as session:
            if slave_identifier is None:
                row = session.get(ChangeTrackingVersion, ctid)
            else:
                row = session.get(SlaveChangeTrackingVersion, (ctid, slave_identifier))
            return _to_batch(row) if row is not None else None

    def get_pending_batches(self, after_ctid: int, required: SyncBit) -> list[ChangeTrackingBatch]:
        bits = int(required)
        stmt = (
            select(ChangeTrackingVersion)
            .where(
                ChangeTrackingVersion.ctid > after_ctid,
                ChangeTrackingVersion.sync_bitwise.op("&")(bits) == bits,
            )
            .order_by(ChangeTrackingVersion.ctid.asc())
        )
        with self._session_factory() as session:
            return [_to_batch(row) for row in session.execute(stmt).scalars()]

    def get_incomplete_slave_batches(self, slave_identifier: str) -> list[ChangeTrackingBatch]:
        """Slave batches newer than the slave's most recent fully completed batch."""

        model = SlaveChangeTrackingVersion
        last_complete = (
            select(func.coalesce(func.max(model.ctid), 0))
            .where(model.slave_identifier == slave_identifier, model.sync_bitwise == int(ALL_SYNC_BITS))
            .correlate(None)
            .scalar_subquery()
        )
        stmt = (
            select(model)
            .where(model.slave_identifier == slave_identifier, model.ctid > last_complete)
            .order_by(model.ctid.asc())
        )
        with self._session_factory() as session:
            return [_to_batch(row) for row in session.execute(stmt).scalars()]

    def create_batch(
        self,
        start_version: int,
        stop_version: Optional[int],
        *,
        ctid: Optional[int] = None,
    ) -> ChangeTrackingBatch:
        with self._session_factory() as session:
            row = ChangeTrackingVersion(
                sync_start_version=start_version,
                sync_stop_version=stop_version,
                sync_bitwise=0,
                sync_start_time=datetime.now(),
            )
            if ctid is not None:
                row.ctid = ctid
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug("Created CTID %s on %s (%s - %s)", row.ctid, self.name, start_version, stop_version)
            return _to_batch(row)

    def create_slave_batch(self, batch: ChangeTrackingBatch, slave_identifier: str) -> ChangeTrackingBatch:
        with self._session_factory() as session:
            existing = session.get(SlaveChangeTrackingVersion, (batch.ctid, slave_identifier))
            if existing is not None:
                return _to_batch(existing)
            row = SlaveChangeTrackingVersion(
                ctid=batch.ctid,
                slave_identifier=slave_identifier,
                sync_start_version=batch.start_version,
                sync_stop_version=batch.stop_version,
                sync_bitwise=0,
                sync_start_time=datetime.now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_batch(row)

    def _execute_write(self, stmt) -> int:
        with self._session_factory() as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            rowcount = result.rowcount or 0
            session.commit()
        return rowcount

    def update_stop_version(self, ctid: int, stop_version: int) -> None:
        self._execute_write(
            update(ChangeTrackingVersion)
            .where(ChangeTrackingVersion.ctid == ctid)
            .values(sync_stop_version=stop_version)
        )

    def write_bit(self, ctid: int, phase: SyncBit, slave_identifier: Optional[str] = None) -> bool:
        """Set ``phase`` on a batch only when it is currently unset. Returns whether a row changed."""

        bit = int(phase)
        if slave_identifier is None:
            model = ChangeTrackingVersion
            stmt = update(model).where(model.ctid == ctid)
        else:
            model = SlaveChangeTrackingVersion
            stmt = update(model).where(model.ctid == ctid, model.slave_identifier == slave_identifier)
        stmt = stmt.where(model.sync_bitwise.op("&")(bit) == 0).values(sync_bitwise=model.sync_bitwise + bit)
        changed = bool(self._execute_write(stmt))
        logger.debug("Wrote bit %s for CTID %s on %s (changed=%s)", bit, ctid, self.name, changed)
        return changed

    def mark_batches_complete(
        self,
        ctids: Iterable[int],
        stop_time: datetime,
        slave_identifier: str,
    ) -> None:
        ids = list(ctids)
        if not ids:
            return
        self._execute_write(
            update(SlaveChangeTrackingVersion)
            .where(
                SlaveChangeTrackingVersion.slave_identifier == slave_identifier,
                SlaveChangeTrackingVersion.ctid.in_(ids),
            )
            .values(sync_bitwise=int(ALL_SYNC_BITS), sync_stop_time=stop_time)
        )

    def revert_batch(self, ctid: int) -> None:
        self._execute_write(
            update(ChangeTrackingVersion).where(ChangeTrackingVersion.ctid == ctid).values(sync_bitwise=0)
        )
        logger.warning("Reverted CTID %s on %s", ctid, self.name)

    def get_last_start_time(
        self,
        ctid: int,
        phase: SyncBit,
        slave_identifier: Optional[str] = None,
    ) -> datetime:
        bit = int(phase)
        model = ChangeTrackingVersion if slave_identifier is None else SlaveChangeTrackingVersion
        stmt = select(func.max(model.sync_start_time)).where(
            model.sync_bitwise.op("&")(bit) > 0,
            model.ctid < ctid,
        )
        if slave_identifier is not None:
            stmt = stmt.where(model.slave_identifier == slave_identifier)
        with self._session_factory() as session:
            last_start = session.execute(stmt).scalar()
        if last_start is None:
            return datetime.now() - timedelta(days=1)
        return last_start

    def get_old_ctids_master(self, chop_date: datetime) -> list[int]:
        stmt = select(ChangeTrackingVersion.ctid).where(ChangeTrackingVersion.sync_start_time < chop_date)
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())

    def get_old_ctids_relay(self, chop_date: datetime) -> list[int]:
        """CTIDs every slave has finished before ``chop_date``."""

        model = SlaveChangeTrackingVersion
        stmt = (
            select(model.ctid)
            .group_by(model.ctid)
            .having(
                func.count() == func.count(model.sync_stop_time),
                func.max(model.sync_stop_time) < chop_date,
            )
        )
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())

    def get_old_ctids_slave(self, chop_date: datetime, slave_identifier: str) -> list[int]:
        model = SlaveChangeTrackingVersion
        stmt = select(model.ctid).where(
            model.slave_identifier == slave_identifier,
            model.sync_stop_time < chop_date,
        )
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())

    def delete_old_batches(self, chop_date: datetime) -> int:
        """Delete batches started before ``chop_date``. The newest batch and any batch a slave has not finished are kept."""

        last = self.get_last_batch()
        if last is None:
            return 0
        unfinished = select(SlaveChangeTrackingVersion.ctid).where(SlaveChangeTrackingVersion.sync_stop_time.is_(None))
        return self._execute_write(
            delete(ChangeTrackingVersion).where(
                ChangeTrackingVersion.sync_start_time < chop_date,
                ChangeTrackingVersion.ctid < last.ctid,
                ChangeTrackingVersion.ctid.not_in(unfinished),
            )
        )

    def delete_old_slave_batches(self, chop_date: datetime) -> int:
        model = SlaveChangeTrackingVersion
        return self._execute_write(
            delete(model).where(model.sync_stop_time.is_not(None), model.sync_stop_time < chop_date)
        )
