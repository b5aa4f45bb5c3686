from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import httpx

from narration_service.clients.s3_storage import S3StorageClient
from narration_service.clients.supabase_storage import SupabaseStorageClient
from narration_service.config import Settings
from narration_service.errors import StorageError

LOCK_STRIPES = 64


@dataclass(frozen=True)
class StoredArtifact:
    path: str
    url: str


def build_object_store(settings: Settings, bucket: str) -> Any:
    backend = (settings.storage_backend or "supabase").lower()
    if backend == "s3":
        return S3StorageClient(
            bucket=bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            public_url=settings.s3_public_url,
            addressing_style=settings.s3_addressing_style,
        )
    if backend == "supabase":
        return SupabaseStorageClient(
            api_url=settings.supabase_url,
            public_url=settings.supabase_public_url,
            bucket=bucket,
            api_key=settings.supabase_service_key,
            timeout=settings.storage_timeout,
        )
    raise ValueError(f"unknown storage backend: {settings.storage_backend}")


class ArtifactReplacer:
    """Swaps the stored object behind a slot for a freshly named one.

    New objects are named ``{slot}-{timestamp_ms}.{ext}`` so every write gets a
    URL no cache has seen. The new object is written first, then ``commit``
    records it, and only then are the older variants of the slot deleted. A
    failed write or commit raises and leaves the previous artifact in place,
    a failed cleanup is only logged.
    """

    def __init__(
        self,
        storage: Any,
        clock: Callable[[], int] | None = None,
        logger: Optional[logging.Logger] = None,
        lock_stripes: int = LOCK_STRIPES,
    ) -> None:
        self.storage = storage
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.log = logger or logging.getLogger(__name__)
        self._last_stamp: Dict[str, int] = {}
        self._slot_locks: List[Lock] = [Lock() for _ in range(max(1, lock_stripes))]

    def replace(
        self,
        slot_key: str,
        data: bytes,
        content_type: str,
        extension: str = "mp3",
        commit: Callable[[StoredArtifact], Any] | None = None,
    ) -> StoredArtifact:
        with self._slot_lock(slot_key):
            existing = self._list_variants(slot_key)
            stamp = self._next_stamp(slot_key, existing)
            name = f"{slot_key}-{stamp}.{extension.lstrip('.')}"
            try:
                url = self.storage.upload_bytes(name, data, content_type=content_type)
            except httpx.HTTPError as exc:
                raise StorageError(f"upload failed for {name}: {exc}") from exc
            self._last_stamp[slot_key] = stamp
            artifact = StoredArtifact(path=name, url=url)
            if commit is not None:
                try:
                    commit(artifact)
                except BaseException:
                    self.log.warning("artifact commit failed", extra={"slot": slot_key, "path": name})
                    self._delete(slot_key, [name])
                    raise
            stale = [key for key in existing if key != name]
            if stale:
                self._delete(slot_key, stale)
            self.log.info(
                "artifact replaced",
                extra={"slot": slot_key, "path": name, "removed": len(stale)},
            )
            return artifact

    def purge(self, slot_key: str) -> int:
        with self._slot_lock(slot_key):
            self._last_stamp.pop(slot_key, None)
            existing = self._list_variants(slot_key)
            if not existing:
                return 0
            return len(existing) if self._delete(slot_key, existing) else 0

    def _list_variants(self, slot_key: str) -> List[str]:
        pattern = re.compile(rf"^{re.escape(slot_key)}-\d+\.[A-Za-z0-9]+$")
        try:
            objects = self.storage.list_files(f"{slot_key}-")
        except (StorageError, httpx.HTTPError) as exc:
            self.log.warning("artifact listing failed", extra={"slot": slot_key, "error": str(exc)})
            return []
        return [obj["key"] for obj in objects if obj.get("key") and pattern.match(obj["key"])]

    def _next_stamp(self, slot_key: str, existing: List[str]) -> int:
        stamp = self.clock()
        seen = [self._last_stamp.get(slot_key, -1)]
        for key in existing:
            digits = key[len(slot_key) + 1 :].split(".", 1)[0]
            seen.append(int(digits))
        return max(stamp, max(seen) + 1)

    def _delete(self, slot_key: str, keys: List[str]) -> bool:
        try:
            self.storage.delete_files(keys)
        except (StorageError, httpx.HTTPError) as exc:
            self.log.warning(
                "stale artifact cleanup failed",
                extra={"slot": slot_key, "keys": keys, "error": str(exc)},
            )
            return False
        return True

    def _slot_lock(self, slot_key: str) -> Lock:
        return self._slot_locks[hash(slot_key) % len(self._slot_locks)]
