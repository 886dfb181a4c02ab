from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict

from sessionauth.logging import get_logger

logger = get_logger(__name__)


class RefreshCoordinator:
    """Single-flight guard for refresh-token exchanges.

    The first caller presenting a refresh token runs ``verify_and_mint``;
    callers presenting the same token while that is in flight await the same
    future and observe the same access token or the same exception. The
    registry entry is dropped as soon as the leader finishes, so a later call
    with the same token starts a fresh exchange.
    """

    def __init__(self, verify_and_mint: Callable[[str], Awaitable[str]]) -> None:
        self._verify_and_mint = verify_and_mint
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def refresh(self, raw_token: str) -> str:
        async with self._lock:
            future = self._in_flight.get(raw_token)
            leader = future is None
            if leader:
                future = asyncio.get_running_loop().create_future()
                self._in_flight[raw_token] = future

        if not leader:
            logger.debug("refresh_joined_in_flight")
            return await asyncio.shield(future)

        try:
            result = await self._verify_and_mint(raw_token)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # the leader re-raises, so the future may have no other reader
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            async with self._lock:
                self._in_flight.pop(raw_token, None)
