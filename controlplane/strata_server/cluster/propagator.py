"""
Change propagator.

Consumes ChangeNotices from the cluster bus and reloads the local config
store whenever a peer committed a revision this member has not seen yet.

Invariants:
    - Notices from this member are ignored (its snapshot is already current)
    - A notice at or below the local revision causes no reload
    - Reload failures are logged and do not stop the loop; the next notice
      retries

How to change safely:
    - Keep the reload path idempotent; notices may arrive more than once
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .base import ChangeBus, ChangeNotice

if TYPE_CHECKING:
    from ..store.config_store import ConfigStore

logger = logging.getLogger(__name__)


class ChangePropagator:
    """Keeps a ConfigStore in sync with commits made by peers.

    Example:
        >>> propagator = ChangePropagator(bus, store)
        >>> task = asyncio.create_task(propagator.start())
    """

    def __init__(self, bus: ChangeBus, store: ConfigStore) -> None:
        self.bus = bus
        self.store = store
        self._running = False
        self._reload_count = 0
        self._skipped_count = 0
        self._error_count = 0
        self._last_notice: ChangeNotice | None = None

    async def start(self) -> None:
        """Run until stop() is called or the bus closes."""
        if self._running:
            logger.warning("Propagator already running")
            return

        self._running = True
        logger.info("Starting change propagator", extra={"member_id": self.store.node_id})

        try:
            async for notice in self.bus.subscribe(self.store.node_id):
                if not self._running:
                    break
                await self.handle_notice(notice)
        except asyncio.CancelledError:
            logger.info("Propagator cancelled")
        except Exception as e:
            logger.error(f"Propagator error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        logger.info("Stopping change propagator")

    async def handle_notice(self, notice: ChangeNotice) -> bool:
        """Reload if ``notice`` is newer than the local snapshot.

        Returns:
            True if the store was reloaded
        """
        self._last_notice = notice
        if notice.origin == self.store.node_id:
            self._skipped_count += 1
            return False
        if self.store.is_finished_initial_load and notice.revision <= self.store.revision:
            self._skipped_count += 1
            return False

        try:
            await self.store.reload()
        except Exception as e:
            self._error_count += 1
            logger.error(
                f"Failed to reload config after peer commit: {e}",
                extra={"origin": notice.origin, "revision": notice.revision},
                exc_info=True,
            )
            return False

        self._reload_count += 1
        logger.debug(
            "Reloaded config after peer commit",
            extra={"origin": notice.origin, "revision": notice.revision},
        )
        return True

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "reload_count": self._reload_count,
            "skipped_count": self._skipped_count,
            "error_count": self._error_count,
            "last_revision": self._last_notice.revision if self._last_notice else None,
        }
