import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from .access import AccessPolicy
from .chains.base import Blockchain
from .errors import RPCError
from .ledger import LedgerService
from .models import Batch, Checkpoint
from .storage import Storage

logger = logging.getLogger(__name__)

IDLE = "idle"
RETRY = "retry"
ADVANCED = "advanced"


@dataclass
class SyncIntervals:
    idle_sec: float = 60
    retry_sec: float = 10
    pace_sec: float = 1


class SyncEngine:
    """Fetch, apply, checkpoint loop for one chain.

    The checkpoint is written only after every event of a batch went through
    the ledger, so a crash re-fetches the whole batch; the ledger's event-key
    claim turns the replay into a no-op.
    """

    def __init__(
        self,
        chain: Blockchain,
        storage: Storage,
        ledger: LedgerService,
        policy: AccessPolicy,
        intervals: Optional[SyncIntervals] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.chain = chain
        self.storage = storage
        self.ledger = ledger
        self.policy = policy
        self.intervals = intervals or SyncIntervals()
        self.stop_event = stop_event or asyncio.Event()
        self.checkpoint: Optional[Checkpoint] = None
        self.stats = {
            "batches": 0,
            "applied_events": 0,
            "failed_events": 0,
            "fetch_errors": 0,
            "checkpoint_errors": 0,
            "state": "starting",
        }

    def load_checkpoint(self) -> Checkpoint:
        initial = self.chain.initial_checkpoint()
        self.checkpoint = self.storage.load_or_init_checkpoint(
            self.chain.name, initial.position, initial.cursor_token
        )
        logger.info(
            "Starting sync from position %s (cursor %s) for %s",
            self.checkpoint.position, self.checkpoint.cursor_token, self.chain.name,
        )
        return self.checkpoint

    async def apply_batch(self, batch: Batch) -> int:
        applied = 0
        for raw in batch.raw_events:
            try:
                event = self.chain.decode(raw)
                transition = self.ledger.apply(self.chain.name, event)
                decision = self.policy.evaluate(transition)
                if decision is not None:
                    await self.policy.enforce_quietly(decision)
            except Exception:
                self.stats["failed_events"] += 1
                logger.exception("Error processing %s trade event: %r", self.chain.name, raw)
                continue
            applied += 1
        self.stats["applied_events"] += applied
        return applied

    async def step(self) -> str:
        checkpoint = self.checkpoint or self.load_checkpoint()

        try:
            batch = await self.chain.fetch_batch(checkpoint)
        except RPCError as e:
            self.stats["fetch_errors"] += 1
            logger.warning("Failed to query %s events: %s", self.chain.name, e)
            return RETRY

        if batch is None:
            logger.info(
                "Synced to head at position %s for %s, waiting for new events...",
                checkpoint.position, self.chain.name,
            )
            return IDLE

        logger.info(
            "Found %d events in %s for %s", len(batch.raw_events), batch.window, self.chain.name
        )
        await self.apply_batch(batch)

        try:
            self.checkpoint = self.storage.save_checkpoint(batch.checkpoint)
        except sqlite3.Error as e:
            self.stats["checkpoint_errors"] += 1
            logger.warning("Failed to update last synced checkpoint for %s: %s", self.chain.name, e)
            return RETRY
        self.stats["batches"] += 1
        return ADVANCED

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0 or self.stop_event.is_set():
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        self.load_checkpoint()
        while not self.stop_event.is_set():
            outcome = await self.step()
            self.stats["state"] = outcome
            if outcome == IDLE:
                await self._sleep(self.intervals.idle_sec)
            elif outcome == RETRY:
                await self._sleep(self.intervals.retry_sec)
            else:
                await self._sleep(self.intervals.pace_sec)
        self.stats["state"] = "stopped"
        logger.info("%s sync stopped at position %s", self.chain.name, self.checkpoint.position if self.checkpoint else None)

    def stop(self) -> None:
        self.stop_event.set()
