"""
Market snapshot providers.

The auto-revoke scheduler pulls one MarketCondition per tick from a
provider. Providers are async; a provider that cannot produce a snapshot
raises SnapshotUnavailable and the tick is skipped.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx
from pydantic import ValidationError

from delegation_engine.permissions.errors import SnapshotUnavailable
from delegation_engine.permissions.schema import MarketCondition

logger = logging.getLogger(__name__)


class MarketSnapshotProvider(ABC):
    @abstractmethod
    async def current(self) -> MarketCondition:
        ...

    async def close(self) -> None:
        return None


class StaticSnapshotProvider(MarketSnapshotProvider):
    """Serves a fixed snapshot; replace it with `set()` between ticks."""

    def __init__(self, market: MarketCondition) -> None:
        self._market = market

    def set(self, market: MarketCondition) -> None:
        self._market = market

    async def current(self) -> MarketCondition:
        return self._market


class HttpSnapshotProvider(MarketSnapshotProvider):
    """
    Fetches the snapshot from a JSON endpoint.

    The endpoint must return an object matching MarketCondition
    (volatility, trend, volume, liquidity, optional sentiment and timestamp).
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._headers = {"Accept": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def current(self) -> MarketCondition:
        client = await self._ensure_client()
        try:
            resp = await client.get(self.url)
            resp.raise_for_status()
            return MarketCondition.model_validate(resp.json())
        except httpx.HTTPError as exc:
            logger.warning("Market snapshot request to %s failed: %s", self.url, exc)
            raise SnapshotUnavailable(f"snapshot request failed: {exc}") from exc
        except (ValidationError, ValueError) as exc:
            logger.warning("Market snapshot from %s is malformed: %s", self.url, exc)
            raise SnapshotUnavailable(f"malformed snapshot: {exc}") from exc
