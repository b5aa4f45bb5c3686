from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx

from narration_service.errors import StorageError


class SupabaseStorageClient:
    def __init__(
        self,
        api_url: str | None,
        public_url: str | None,
        bucket: str,
        api_key: str | None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = (api_url or "").rstrip("/")
        self.public_url_base = (public_url or "").rstrip("/")
        self.bucket = bucket.strip("/")
        self.api_key = (api_key or "").strip()
        self.timeout = timeout
        self._transport = transport
        self._memory: Dict[str, tuple[bytes, datetime]] = {}

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def upload_bytes(self, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        object_path = self._normalize_path(path)
        if not self.is_configured():
            self._memory[object_path] = (content, datetime.now(timezone.utc))
            return self.public_url(object_path)

        url = f"{self.api_url}/storage/v1/object/{self.bucket}/{object_path}"
        headers = {
            **self._auth_headers(),
            "Content-Type": content_type,
            "x-upsert": "false",
            "cache-control": "no-cache, no-store, must-revalidate",
        }
        with self._client() as client:
            response = client.post(url, headers=headers, content=content)
            if response.status_code not in (200, 201):
                raise StorageError(f"Supabase upload failed: {response.status_code} {response.text}")
        return self.public_url(object_path)

    def list_files(self, prefix: str | None = None) -> List[dict[str, Any]]:
        key_prefix = self._normalize_path(prefix or "")
        if not self.is_configured():
            return self._list_memory(key_prefix)
        folder, _, search = key_prefix.rpartition("/")
        url = f"{self.api_url}/storage/v1/object/list/{self.bucket}"
        items: List[dict[str, Any]] = []
        offset = 0
        page_size = 1000
        with self._client() as client:
            while True:
                payload = {"prefix": folder, "search": search, "limit": page_size, "offset": offset}
                response = client.post(url, headers=self._auth_headers(), json=payload)
                if response.status_code != 200:
                    raise StorageError(f"Supabase list failed: {response.status_code} {response.text}")
                page = response.json() or []
                for obj in page:
                    name = obj.get("name")
                    if not name or obj.get("id") is None:
                        continue
                    key = f"{folder}/{name}" if folder else name
                    if not key.startswith(key_prefix):
                        continue
                    metadata = obj.get("metadata") or {}
                    items.append(
                        {
                            "key": key,
                            "size": metadata.get("size"),
                            "last_modified": obj.get("updated_at"),
                            "url": self.public_url(key),
                        }
                    )
                if len(page) < page_size:
                    break
                offset += page_size
        return items

    def delete_files(self, paths: List[str]) -> None:
        keys = [self._normalize_path(path) for path in paths if path]
        if not keys:
            return
        if not self.is_configured():
            for key in keys:
                self._memory.pop(key, None)
            return
        url = f"{self.api_url}/storage/v1/object/{self.bucket}"
        with self._client() as client:
            response = client.request("DELETE", url, headers=self._auth_headers(), json={"prefixes": keys})
            if response.status_code != 200:
                raise StorageError(f"Supabase delete failed: {response.status_code} {response.text}")

    def download_bytes(self, path: str) -> bytes:
        key = self._normalize_path(path)
        if not self.is_configured():
            if key not in self._memory:
                raise StorageError("object not found in memory storage")
            return self._memory[key][0]
        url = f"{self.api_url}/storage/v1/object/{self.bucket}/{key}"
        with self._client() as client:
            response = client.get(url, headers=self._auth_headers())
            if response.status_code != 200:
                raise StorageError(f"Supabase download failed: {response.status_code} {response.text}")
            return response.content

    def public_url(self, path: str) -> str:
        base = self.public_url_base or f"{self.api_url.rstrip('/')}/storage/v1/object/public"
        joined_path = "/".join(part.strip("/") for part in (self.bucket, path))
        return f"{base.rstrip('/')}/{joined_path}"

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def _auth_headers(self) -> dict[str, str]:
        return {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}

    def _list_memory(self, prefix: str) -> List[dict[str, Any]]:
        items: List[dict[str, Any]] = []
        for key, (data, modified) in self._memory.items():
            if prefix and not key.startswith(prefix):
                continue
            items.append({"key": key, "size": len(data), "last_modified": modified, "url": self.public_url(key)})
        return items

    def _normalize_path(self, path: str) -> str:
        return path.strip().lstrip("/")
