"""Sync checkpoint loop.

States:
    INITIAL_CATCH_UP -> STEADY_STATE -> TERMINATED(error)
                                     -> STOPPED (after request_stop())

INITIAL_CATCH_UP calls sync_once() seeded with the stored token until it
succeeds, then persists the returned token. Homeserver errors are logged and
retried straight away (or after `retry_delay`), forever unless
`max_catchup_attempts` is set.

STEADY_STATE hands a callback to sync_forever(). For every batch the
callback first writes the batch's token to the credential store, then runs
the registered handlers, then tells the sync to continue. The token is on
disk before any handler sees the batch: a crash in between means handlers
may see that batch again on restart, never that the token goes backwards.

If a token cannot be written the loop stops with DurabilityError, even
though the connection may be fine: carrying on would lose the resume point.
UnrecoverableSyncError from sync_forever also terminates the loop. The loop
never restarts itself.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from matrixsync.errors import (
    CorruptSession,
    DurabilityError,
    HomeserverError,
    MatrixSyncError,
    RetryLimitReached,
    SessionIOError,
    SessionNotFound,
)
from matrixsync.homeserver import HomeserverClient, LoopControl, SyncBatch
from matrixsync.session.models import CheckpointToken
from matrixsync.session.store import CredentialStore

logger = logging.getLogger(__name__)

BatchHandler = Callable[[SyncBatch], Awaitable[None]]


class SyncState(str, Enum):
    INITIAL_CATCH_UP = "initial_catch_up"
    STEADY_STATE = "steady_state"
    TERMINATED = "terminated"
    STOPPED = "stopped"


class SyncCheckpointLoop:
    """Keep syncing and keep the stored checkpoint current."""

    def __init__(
        self,
        client: HomeserverClient,
        store: CredentialStore,
        *,
        checkpoint: CheckpointToken | None = None,
        retry_delay: float = 0.0,
        max_catchup_attempts: int | None = None,
    ):
        self.client = client
        self.store = store
        self.checkpoint = checkpoint
        self.retry_delay = retry_delay
        self.max_catchup_attempts = max_catchup_attempts

        self.state = SyncState.INITIAL_CATCH_UP
        self.error: MatrixSyncError | None = None
        self.batches_processed = 0
        self._handlers: list[BatchHandler] = []
        self._stop_requested = False

    def add_handler(self, handler: BatchHandler) -> None:
        """Register a coroutine run for every batch, after its token is saved."""
        self._handlers.append(handler)

    def request_stop(self) -> None:
        """Stop after the batch currently being handled."""
        self._stop_requested = True

    async def run(self) -> None:
        """Catch up, then sync until stopped.

        Raises:
            DurabilityError: A checkpoint could not be written.
            UnrecoverableSyncError: The sync hit a non-retryable error.
        """
        try:
            await self.initial_catch_up()
            await self.steady_state()
        except MatrixSyncError as e:
            self.state = SyncState.TERMINATED
            self.error = e
            logger.error(f"Sync terminated: {e}")
            raise

    async def initial_catch_up(self) -> CheckpointToken:
        logger.info("Launching a first sync to ignore past messages…")

        attempts = 0
        while True:
            attempts += 1
            try:
                batch = await self.client.sync_once(self.checkpoint)
            except HomeserverError as e:
                logger.warning(f"An error occurred during initial sync: {e}. Trying again…")
                if self.max_catchup_attempts is not None and attempts >= self.max_catchup_attempts:
                    raise RetryLimitReached("Initial sync", attempts) from e
                if self.retry_delay:
                    await asyncio.sleep(self.retry_delay)
                continue

            self._persist(batch.next_batch)
            self.state = SyncState.STEADY_STATE
            return batch.next_batch

    async def steady_state(self) -> None:
        logger.info("The client is ready! Listening to new messages…")
        await self.client.sync_forever(self.checkpoint, self._on_batch)
        self.state = SyncState.STOPPED
        logger.info("Sync stopped")

    async def _on_batch(self, batch: SyncBatch) -> LoopControl:
        self._persist(batch.next_batch)
        self.batches_processed += 1

        for handler in self._handlers:
            try:
                await handler(batch)
            except Exception as e:
                logger.error(f"Batch handler {getattr(handler, '__name__', handler)} failed: {e}")

        return LoopControl.STOP if self._stop_requested else LoopControl.CONTINUE

    def _persist(self, token: CheckpointToken) -> None:
        try:
            self.store.save_checkpoint(token)
        except (SessionIOError, SessionNotFound, CorruptSession) as e:
            raise DurabilityError(f"Could not persist sync token: {e}") from e
        self.checkpoint = token
        logger.debug("Sync token persisted")
