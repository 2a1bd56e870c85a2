from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import Callable, Iterable, Optional, TypeVar, Union

from sqlalchemy.orm import Session, sessionmaker

from database import session_scope
from models import now_ms
from remote_store import RemoteStore
from schemas import Dataset, PlanRecord, TransactionRecord
from services import DatasetService, get_app_state

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", TransactionRecord, PlanRecord)


class SyncStatus(str, Enum):
    offline = "offline"
    syncing = "syncing"
    synced = "synced"
    error = "error"


def merge_tombstones(*maps: dict[str, int]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for tombstones in maps:
        for record_id, deleted_at in tombstones.items():
            if deleted_at > merged.get(record_id, -1):
                merged[record_id] = deleted_at
    return merged


def _canonical(record: Union[TransactionRecord, PlanRecord]) -> str:
    return json.dumps(record.to_wire(), sort_keys=True, separators=(",", ":"))


def _wins_over(candidate: RecordT, current: RecordT) -> bool:
    if candidate.last_modified != current.last_modified:
        return candidate.last_modified > current.last_modified
    # equal stamps: pick by content so the outcome ignores argument order
    return _canonical(candidate) > _canonical(current)


def merge_records(
    local: Iterable[RecordT], remote: Iterable[RecordT], tombstones: dict[str, int]
) -> list[RecordT]:
    survivors: dict[str, RecordT] = {}
    for record in [*local, *remote]:
        deleted_at = tombstones.get(record.id)
        if deleted_at is not None and deleted_at > record.last_modified:
            continue
        current = survivors.get(record.id)
        if current is None or _wins_over(record, current):
            survivors[record.id] = record
    return [survivors[record_id] for record_id in sorted(survivors)]


def merge_datasets(
    local: Dataset, remote: Dataset, now: Optional[int] = None
) -> Dataset:
    """Last-write-wins merge of two full datasets.

    Tombstones are unioned (latest deletion wins) and drop every record last
    touched before its deletion, whichever side the record came from.
    Surviving duplicates keep the newer ``last_modified``. The cycle start
    day follows whichever dataset was modified last; ties keep the local one.
    """
    tombstones = merge_tombstones(local.deleted_ids, remote.deleted_ids)
    if remote.last_modified > local.last_modified:
        cycle_start_day = remote.cycle_start_day
    else:
        cycle_start_day = local.cycle_start_day
    return Dataset(
        transactions=merge_records(local.transactions, remote.transactions, tombstones),
        plans=merge_records(local.plans, remote.plans, tombstones),
        cycle_start_day=cycle_start_day,
        deleted_ids=dict(sorted(tombstones.items())),
        last_modified=now if now is not None else now_ms(),
    )


class SyncService:
    """Pull, merge, write back and push, one cycle at a time.

    A cycle requested while another is running is dropped. Failures only
    change ``status``; nothing is raised to the caller.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        remote_store: Optional[RemoteStore],
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.session_factory = session_factory
        self.remote_store = remote_store
        self.clock = clock
        self.status = SyncStatus.offline
        self.last_error: Optional[str] = None
        self._lock = threading.Lock()

    def _config(self) -> tuple[bool, Optional[str], int]:
        with session_scope(self.session_factory) as session:
            state = get_app_state(session)
            return state.sync_enabled, state.sync_id, state.last_synced_at

    def is_enabled(self) -> bool:
        enabled, sync_id, _ = self._config()
        return bool(enabled and sync_id and self.remote_store is not None)

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def status_payload(self) -> dict[str, object]:
        enabled, sync_id, last_synced_at = self._config()
        active = bool(enabled and sync_id and self.remote_store is not None)
        status = self.status if active else SyncStatus.offline
        return {
            "status": status.value,
            "enabled": enabled,
            "sync_id": sync_id,
            "remote_configured": self.remote_store is not None,
            "last_synced_at": last_synced_at,
            "last_error": self.last_error,
            "in_flight": self.in_flight,
        }

    def sync_now(self, source: str = "manual") -> bool:
        if not self._lock.acquire(blocking=False):
            logger.info("sync_skipped: source=%s reason=in_flight", source)
            return False
        try:
            return self._run_cycle(source)
        finally:
            self._lock.release()

    def _run_cycle(self, source: str) -> bool:
        enabled, sync_id, _ = self._config()
        if not (enabled and sync_id and self.remote_store is not None):
            self.status = SyncStatus.offline
            return False

        self.status = SyncStatus.syncing
        started = self.clock()
        try:
            with session_scope(self.session_factory) as session:
                local = DatasetService(session).load()

            remote = self.remote_store.pull(sync_id)
            if remote is not None:
                merged = merge_datasets(local, remote, now=started)
            else:
                merged = local

            with session_scope(self.session_factory) as session:
                datasets = DatasetService(session)
                # fold in edits made while the pull was on the wire
                merged = merge_datasets(datasets.load(), merged, now=started)
                datasets.replace(merged, commit=False)

            self.remote_store.push(sync_id, merged)

            with session_scope(self.session_factory) as session:
                get_app_state(session).last_synced_at = started
        except Exception as exc:
            logger.exception("sync_failed: source=%s", source)
            self.status = SyncStatus.error
            self.last_error = str(exc) or exc.__class__.__name__
            return False

        self.status = SyncStatus.synced
        self.last_error = None
        logger.info(
            "sync_done: source=%s transactions=%d plans=%d tombstones=%d",
            source,
            len(merged.transactions),
            len(merged.plans),
            len(merged.deleted_ids),
        )
        return True
