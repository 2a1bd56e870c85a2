import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from models import now_ms
from schemas import BackupDocument, Dataset
from services import DatasetService
from sync import merge_records

logger = logging.getLogger(__name__)

BACKUP_FOLDER = "GridFinance"
BACKUP_FILENAME = "backup.json"


class InvalidBackup(ValueError):
    pass


def build_backup_document(session: Session) -> BackupDocument:
    dataset = DatasetService(session).load()
    return BackupDocument(
        transactions=dataset.transactions,
        plans=dataset.plans,
        cycle_start_day=dataset.cycle_start_day,
        deleted_ids=dataset.deleted_ids,
        export_date=datetime.now(timezone.utc),
    )


def parse_backup(
    raw: Union[bytes, str, dict[str, Any]], today: Optional[date] = None
) -> BackupDocument:
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InvalidBackup("Backup file is not valid JSON") from exc
    if not isinstance(raw, dict):
        raise InvalidBackup("Invalid backup file format")
    if not isinstance(raw.get("transactions"), list) or not isinstance(
        raw.get("plans"), list
    ):
        raise InvalidBackup("Invalid backup file format")
    try:
        return BackupDocument.model_validate(raw, context={"today": today})
    except ValidationError as exc:
        raise InvalidBackup(f"Invalid backup file: {exc.error_count()} errors") from exc


def import_backup(session: Session, document: BackupDocument) -> dict[str, int]:
    """Overwrite all local data with the backup content.

    The import counts as a fresh local edit so the next sync pushes it.
    """
    dataset = Dataset(
        # repeated ids collapse onto their latest version
        transactions=merge_records(document.transactions, [], {}),
        plans=merge_records(document.plans, [], {}),
        cycle_start_day=document.cycle_start_day,
        deleted_ids=document.deleted_ids,
        last_modified=now_ms(),
    )
    datasets = DatasetService(session)
    datasets.clear(commit=False)
    datasets.replace(dataset, commit=False)
    session.commit()
    counts = {"transactions": len(dataset.transactions), "plans": len(dataset.plans)}
    logger.info(
        "backup_imported: transactions=%d plans=%d",
        counts["transactions"],
        counts["plans"],
    )
    return counts


def write_backup_file(document: BackupDocument, directory: Path) -> Path:
    folder = Path(directory) / BACKUP_FOLDER
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / BACKUP_FILENAME
    tmp_path = path.with_suffix(".json.tmp")
    tmp_path.write_text(
        json.dumps(document.to_wire(), indent=2, ensure_ascii=False), encoding="utf-8"
    )
    tmp_path.replace(path)
    logger.info("backup_saved: path=%s", path)
    return path


def read_backup_file(
    directory: Path, today: Optional[date] = None
) -> BackupDocument:
    path = Path(directory) / BACKUP_FOLDER / BACKUP_FILENAME
    if not path.exists():
        raise InvalidBackup(f"No backup file found in {BACKUP_FOLDER}.")
    return parse_backup(path.read_bytes(), today)
