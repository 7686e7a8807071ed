"""create bookkeeping tables

Revision ID: 20261019_000001
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None

_IDENTIFIER = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "tblCTVersion",
        sa.Column("CTID", _IDENTIFIER, primary_key=True, autoincrement=True, nullable=False),
        sa.Column("syncStartVersion", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("syncStopVersion", sa.BigInteger(), nullable=True),
        sa.Column("syncBitWise", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("syncStartTime", sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column("syncStopTime", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "tblCTSlaveVersion",
        sa.Column("CTID", sa.BigInteger(), primary_key=True, autoincrement=False, nullable=False),
        sa.Column("slaveIdentifier", sa.String(length=100), primary_key=True, nullable=False),
        sa.Column("syncStartVersion", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("syncStopVersion", sa.BigInteger(), nullable=True),
        sa.Column("syncBitWise", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("syncStartTime", sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column("syncStopTime", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "tblCTError",
        sa.Column("CelId", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("CelError", sa.Text(), nullable=False),
        sa.Column("CelHeaders", sa.Text(), nullable=True),
        sa.Column("CelLogDate", sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column("CelSent", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        "tblDDLEvent",
        sa.Column("DdeID", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("DdeTime", sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column("DdeEventData", sa.Text(), nullable=False),
    )

    op.create_table(
        "tblCTInitialize",
        sa.Column("tableName", sa.String(length=500), primary_key=True, nullable=False),
        sa.Column("inProgress", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("nextSynchVersion", sa.BigInteger(), nullable=True),
        sa.Column("iniStartTime", sa.DateTime(), nullable=True),
        sa.Column("iniFinishTime", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "tblCTTrackedTable",
        sa.Column("schemaName", sa.String(length=100), primary_key=True, nullable=False),
        sa.Column("tableName", sa.String(length=500), primary_key=True, nullable=False),
        sa.Column("minValidVersion", sa.BigInteger(), nullable=False, server_default="0"),
    )

    op.create_table(
        "tblCTSourceVersion",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("currentVersion", sa.BigInteger(), nullable=False, server_default="0"),
    )

    op.create_table(
        "tblCTChangeLog",
        sa.Column("id", _IDENTIFIER, primary_key=True, autoincrement=True, nullable=False),
        sa.Column("schemaName", sa.String(length=100), nullable=False),
        sa.Column("tableName", sa.String(length=500), nullable=False),
        sa.Column("primaryKey", sa.JSON(), nullable=False),
        sa.Column("changeVersion", sa.BigInteger(), nullable=False),
        sa.Column("operation", sa.String(length=1), nullable=False),
    )
    op.create_index(
        "ix_tblCTChangeLog_table_version",
        "tblCTChangeLog",
        ["schemaName", "tableName", "changeVersion"],
    )


def downgrade() -> None:
    op.drop_index("ix_tblCTChangeLog_table_version", table_name="tblCTChangeLog")
    op.drop_table("tblCTChangeLog")
    op.drop_table("tblCTSourceVersion")
    op.drop_table("tblCTTrackedTable")
    op.drop_table("tblCTInitialize")
    op.drop_table("tblDDLEvent")
    op.drop_table("tblCTError")
    op.drop_table("tblCTSlaveVersion")
    op.drop_table("tblCTVersion")
