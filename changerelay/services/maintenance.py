from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from changerelay.config import Settings
from changerelay.store import SqlStore

logger = logging.getLogger(__name__)


def chop_date(settings: Settings, now: datetime) -> datetime:
    return now - timedelta(hours=settings.change_retention_hours or 0)


class MasterMaintenance:
    """Drops master-side change tables of batches started before the retention window."""

    def __init__(self, settings: Settings, master_ct: SqlStore, relay: SqlStore, *, clock: Callable[[], datetime] = datetime.now) -> None:
        self.settings = settings
        self.master_ct = master_ct
        self.relay = relay
        self.clock = clock

    def run(self) -> list[str]:
        chop = chop_date(self.settings, self.clock())
        ctids = self.relay.get_old_ctids_master(chop)
        dropped = self.master_ct.drop_tables_for_ctids(ctids)
        logger.info("Master maintenance dropped %s table(s) for %s batch(es) before %s", len(dropped), len(ctids), chop)
        return dropped


class RelayMaintenance:
    """Drops relay tables every slave has finished with and prunes old batch rows."""

    def __init__(self, settings: Settings, relay: SqlStore, *, clock: Callable[[], datetime] = datetime.now) -> None:
        self.settings = settings
        self.relay = relay
        self.clock = clock

    def run(self) -> list[str]:
        chop = chop_date(self.settings, self.clock())
        ctids = self.relay.get_old_ctids_relay(chop)
        dropped = self.relay.drop_tables_for_ctids(ctids)
        slave_rows = self.relay.delete_old_slave_batches(chop)
        batch_rows = self.relay.delete_old_batches(chop)
        logger.info(
            "Relay maintenance dropped %s table(s), %s batch row(s) and %s slave batch row(s) before %s",
            len(dropped),
            batch_rows,
            slave_rows,
            chop,
        )
        return dropped


class SlaveMaintenance:
    def __init__(self, settings: Settings, relay: SqlStore, slave_ct: SqlStore, *, clock: Callable[[], datetime] = datetime.now) -> None:
        self.settings = settings
        self.relay = relay
        self.slave_ct = slave_ct
        self.clock = clock

    def run(self) -> list[str]:
        chop = chop_date(self.settings, self.clock())
        ctids = self.relay.get_old_ctids_slave(chop, self.settings.slave_identifier or "")
        dropped = self.slave_ct.drop_tables_for_ctids(ctids)
        logger.info("Slave maintenance dropped %s table(s) before %s", len(dropped), chop)
        return dropped
