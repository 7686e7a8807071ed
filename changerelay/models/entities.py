from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy import BigInteger, Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from changerelay.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
Identifier = BigInteger().with_variant(Integer, "sqlite")


class ChangeTrackingVersion(Base):
    __tablename__ = "tblCTVersion"

    ctid: Mapped[int] = mapped_column("CTID", Identifier, primary_key=True, autoincrement=True)
    sync_start_version: Mapped[int] = mapped_column("syncStartVersion", BigInteger, nullable=False, default=0)
    sync_stop_version: Mapped[Optional[int]] = mapped_column("syncStopVersion", BigInteger, nullable=True)
    sync_bitwise: Mapped[int] = mapped_column("syncBitWise", Integer, nullable=False, default=0)
    sync_start_time: Mapped[datetime] = mapped_column(
        "syncStartTime", DateTime, nullable=False, default=datetime.now
    )
    sync_stop_time: Mapped[Optional[datetime]] = mapped_column("syncStopTime", DateTime, nullable=True)


class SlaveChangeTrackingVersion(Base):
    __tablename__ = "tblCTSlaveVersion"

    ctid: Mapped[int] = mapped_column("CTID", BigInteger, primary_key=True, autoincrement=False)
    slave_identifier: Mapped[str] = mapped_column("slaveIdentifier", String(100), primary_key=True)
    sync_start_version: Mapped[int] = mapped_column("syncStartVersion", BigInteger, nullable=False, default=0)
    sync_stop_version: Mapped[Optional[int]] = mapped_column("syncStopVersion", BigInteger, nullable=True)
    sync_bitwise: Mapped[int] = mapped_column("syncBitWise", Integer, nullable=False, default=0)
    sync_start_time: Mapped[datetime] = mapped_column(
        "syncStartTime", DateTime, nullable=False, default=datetime.now
    )
    sync_stop_time: Mapped[Optional[datetime]] = mapped_column("syncStopTime", DateTime, nullable=True)


class ErrorLogEntry(Base):
    __tablename__ = "tblCTError"

    id: Mapped[int] = mapped_column("CelId", Integer, primary_key=True, autoincrement=True)
    error: Mapped[str] = mapped_column("CelError", Text, nullable=False)
    headers: Mapped[Optional[str]] = mapped_column("CelHeaders", Text, nullable=True)
    log_date: Mapped[datetime] = mapped_column("CelLogDate", DateTime, nullable=False, default=datetime.now)
    sent: Mapped[bool] = mapped_column("CelSent", Boolean, nullable=False, default=False)


class DdlEvent(Base):
    __tablename__ = "tblDDLEvent"

    id: Mapped[int] = mapped_column("DdeID", Integer, primary_key=True, autoincrement=True)
    event_time: Mapped[datetime] = mapped_column("DdeTime", DateTime, nullable=False, default=datetime.now)
    event_data: Mapped[str] = mapped_column("DdeEventData", Text, nullable=False)


class InitializeRecord(Base):
    __tablename__ = "tblCTInitialize"

    table_name: Mapped[str] = mapped_column("tableName", String(500), primary_key=True)
    in_progress: Mapped[bool] = mapped_column("inProgress", Boolean, nullable=False, default=False)
    next_synch_version: Mapped[Optional[int]] = mapped_column("nextSynchVersion", BigInteger, nullable=True)
    start_time: Mapped[Optional[datetime]] = mapped_column("iniStartTime", DateTime, nullable=True)
    finish_time: Mapped[Optional[datetime]] = mapped_column("iniFinishTime", DateTime, nullable=True)


class TrackedTable(Base):
    """Marks a source table as change tracked on backends without native change tracking."""

    __tablename__ = "tblCTTrackedTable"

    schema_name: Mapped[str] = mapped_column("schemaName", String(100), primary_key=True)
    table_name: Mapped[str] = mapped_column("tableName", String(500), primary_key=True)
    min_valid_version: Mapped[int] = mapped_column("minValidVersion", BigInteger, nullable=False, default=0)


class SourceVersion(Base):
    __tablename__ = "tblCTSourceVersion"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    current_version: Mapped[int] = mapped_column("currentVersion", BigInteger, nullable=False, default=0)


class ChangeLogEntry(Base):
    __tablename__ = "tblCTChangeLog"
    __table_args__ = (
        sa.Index("ix_tblCTChangeLog_table_version", "schemaName", "tableName", "changeVersion"),
    )

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    schema_name: Mapped[str] = mapped_column("schemaName", String(100), nullable=False)
    table_name: Mapped[str] = mapped_column("tableName", String(500), nullable=False)
    primary_key: Mapped[dict[str, Any]] = mapped_column("primaryKey", JSON, nullable=False)
    change_version: Mapped[int] = mapped_column("changeVersion", BigInteger, nullable=False)
    operation: Mapped[str] = mapped_column("operation", String(1), nullable=False)
