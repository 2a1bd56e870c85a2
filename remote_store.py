from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from config import Settings
from models import now_ms
from recurrence import local_today
from schemas import Dataset


class RemoteStoreError(RuntimeError):
    pass


class RemoteStore(ABC):
    """One row per sync id holding the full serialized dataset."""

    @abstractmethod
    def pull(self, sync_id: str) -> Optional[Dataset]:
        """Fetch the row for ``sync_id``; None when no row exists yet."""

    @abstractmethod
    def push(self, sync_id: str, dataset: Dataset) -> None:
        """Upsert the row for ``sync_id``, replacing its content."""


class InMemoryRemoteStore(RemoteStore):
    def __init__(self) -> None:
        self._rows: dict[str, dict] = {}
        self._lock = threading.Lock()
        self.pull_count = 0
        self.push_count = 0

    def pull(self, sync_id: str) -> Optional[Dataset]:
        with self._lock:
            self.pull_count += 1
            row = self._rows.get(sync_id)
        if row is None:
            return None
        return Dataset.model_validate(row)

    def push(self, sync_id: str, dataset: Dataset) -> None:
        with self._lock:
            self.push_count += 1
            self._rows[sync_id] = dataset.to_wire()


class SupabaseRemoteStore(RemoteStore):
    def __init__(self, settings: Settings) -> None:
        if not settings.remote_configured:
            raise ValueError("Supabase URL and key are required for remote sync")
        self.base_url = settings.supabase_url.rstrip("/")
        self.key = settings.supabase_key
        self.table = settings.sync_table
        self.timeout = settings.sync_timeout_secs
        self.timezone = settings.timezone

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, req: Request) -> bytes:
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                return resp.read()
        except HTTPError as exc:
            raise RemoteStoreError(
                f"Remote store returned HTTP {exc.code} for {req.get_method()}"
            ) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise RemoteStoreError("Remote store unreachable") from exc

    def pull(self, sync_id: str) -> Optional[Dataset]:
        url = (
            f"{self.base_url}/rest/v1/{self.table}"
            f"?sync_id=eq.{quote(sync_id, safe='')}&select=data&limit=1"
        )
        body = self._request(Request(url, headers=self._headers(), method="GET"))
        try:
            rows = json.loads(body.decode("utf-8") or "[]")
        except json.JSONDecodeError as exc:
            raise RemoteStoreError("Unexpected remote store response") from exc
        if not rows:
            return None
        data = rows[0].get("data") if isinstance(rows[0], dict) else None
        if not isinstance(data, dict):
            raise RemoteStoreError("Remote row has no dataset document")
        return Dataset.model_validate(
            data, context={"today": local_today(self.timezone)}
        )

    def push(self, sync_id: str, dataset: Dataset) -> None:
        url = f"{self.base_url}/rest/v1/{self.table}?on_conflict=sync_id"
        payload = {
            "sync_id": sync_id,
            "data": dataset.to_wire(),
            "updated_at": now_ms(),
        }
        req = Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers=self._headers(
                {
                    "Content-Type": "application/json",
                    "Prefer": "resolution=merge-duplicates,return=minimal",
                }
            ),
            method="POST",
        )
        self._request(req)


def build_remote_store(settings: Settings) -> Optional[RemoteStore]:
    if not settings.remote_configured:
        return None
    return SupabaseRemoteStore(settings)
