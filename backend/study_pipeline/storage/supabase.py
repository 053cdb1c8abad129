"""Supabase Storage implementation of the blob store gateway."""

from __future__ import annotations

from typing import Sequence
from urllib.parse import quote

import httpx

from study_pipeline.core.errors import NETWORK, TIMEOUT, StorageError, TransportError
from study_pipeline.core.logging import get_logger
from study_pipeline.storage.blob import normalize_key

logger = get_logger(__name__)


class SupabaseBlobStore:
    """Talks to the Supabase Storage REST API of one bucket."""

    def __init__(
        self,
        base_url: str,
        bucket: str,
        api_key: str,
        *,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "apikey": self._api_key}

    def _object_url(self, path: str, *, section: str = "object") -> str:
        key = quote(normalize_key(path))
        return f"{self.base_url}/storage/v1/{section}/{self.bucket}/{key}"

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransportError(detail=f"Storage request timed out: {exc}", code=TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise TransportError(detail=f"Storage request failed: {exc}", code=NETWORK) from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise TransportError(
                detail=f"Storage returned {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )
        if response.status_code == 404:
            raise StorageError(detail=f"Object not found: {url}", code="NOT_FOUND", retryable=False, status=404)
        if response.status_code == 409:
            raise StorageError(detail=f"Object already exists: {url}", code="ALREADY_EXISTS", retryable=False, status=409)
        if response.is_error:
            raise StorageError(
                detail=f"Storage returned {response.status_code}: {response.text[:200]}",
                retryable=False,
                status=response.status_code,
            )
        return response

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        overwrite: bool = False,
        content_type: str | None = None,
    ) -> None:
        await self._send(
            "POST",
            self._object_url(path),
            content=data,
            headers={
                "x-upsert": "true" if overwrite else "false",
                "Content-Type": content_type or "application/octet-stream",
            },
        )

    async def get(self, path: str) -> bytes:
        response = await self._send("GET", self._object_url(path))
        return response.content

    async def remove(self, paths: Sequence[str]) -> None:
        if not paths:
            return
        await self._send(
            "DELETE",
            f"{self.base_url}/storage/v1/object/{self.bucket}",
            json={"prefixes": [normalize_key(path) for path in paths]},
        )

    async def sign(self, path: str, ttl_seconds: int) -> str:
        response = await self._send(
            "POST",
            self._object_url(path, section="object/sign"),
            json={"expiresIn": ttl_seconds},
        )
        try:
            signed = response.json().get("signedURL")
        except ValueError:
            signed = None
        if not signed:
            raise StorageError(detail="Signing response carried no signedURL", retryable=False)
        return f"{self.base_url}/storage/v1{signed}"

    def public_url(self, path: str) -> str:
        return self._object_url(path, section="object/public")


__all__ = ["SupabaseBlobStore"]
