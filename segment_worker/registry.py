from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    pass


class SourceRegistry(Protocol):
    def get_duration(self, source_id: str) -> float:
        """Current duration in seconds of a (possibly still growing) source."""

    def get_playback_ref(self, stream_id: str) -> Optional[str]:
        """Playback handle of a parent stream, if it has one."""


def _first_playback_id(data: Dict[str, Any]) -> Optional[str]:
    for item in data.get("playback_ids") or []:
        if isinstance(item, dict) and item.get("id"):
            return str(item["id"])
    return None


class HttpSourceRegistry:
    """Source registry reached over HTTP with basic auth.

    Expects ``GET /assets/{id}`` and ``GET /live-streams/{id}`` returning a
    ``{"data": {...}}`` envelope.
    """

    def __init__(
        self,
        base_url: str,
        token_id: str | None = None,
        token_secret: str | None = None,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = httpx.BasicAuth(token_id, token_secret or "") if token_id else None
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            auth=self.auth,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )

    def _get(self, path: str) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.get(path)
        except httpx.HTTPError as exc:
            raise RegistryError(f"registry request failed for {path}: {exc}") from exc
        if response.status_code >= 400:
            raise RegistryError(
                f"registry error for {path}: {response.status_code} {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistryError(f"registry returned non-JSON body for {path}") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise RegistryError(f"registry response for {path} has no data object")
        return data

    def get_duration(self, source_id: str) -> float:
        data = self._get(f"/assets/{source_id}")
        duration = data.get("duration")
        if duration is None:
            raise RegistryError(f"source {source_id} reports no duration yet")
        try:
            return float(duration)
        except (TypeError, ValueError) as exc:
            raise RegistryError(f"source {source_id} reports invalid duration {duration!r}") from exc

    def get_playback_ref(self, stream_id: str) -> Optional[str]:
        return _first_playback_id(self._get(f"/live-streams/{stream_id}"))
