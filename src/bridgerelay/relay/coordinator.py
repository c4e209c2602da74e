"""Relay coordinator.

Watches both ledgers for Burned events and submits the matching mint on the
other ledger under the relay authority.

Flow per direction (A -> B shown, B -> A is symmetric):
1. Subscription on A delivers ``Burned{account, amount}``
2. Event is journaled (when a journal is configured) and queued for B
3. B's single writer submits ``mint(account, amount)``
4. Inclusion is awaited in its own task; the writer moves on
5. Outcome is logged, recorded and journaled

Without a journal the coordinator is a pure pass-through: a redelivered event
is minted twice and a failed submission is dropped after its attempts.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncContextManager, AsyncIterator, Callable, Coroutine, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bridgerelay.ledger.base import (
    BRIDGE_EVENT,
    MINT_FUNCTION,
    BroadcastUncertain,
    EventCallback,
    LedgerClient,
    SubmissionFailure,
    TransactionHandle,
)
from bridgerelay.relay.journal import RelayJournal
from bridgerelay.relay.models import RelayStatus
from bridgerelay.token.events import BurnedEvent
from bridgerelay.utils.locks import LedgerSubmissionLock, LockTimeoutError

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


class CoordinatorState(str, Enum):
    """Lifecycle of the coordinator."""

    IDLE = "idle"
    LISTENING = "listening"


@dataclass(frozen=True)
class MintRequest:
    """Intent to mint on the destination ledger, derived 1:1 from a burn."""

    account: str
    amount: int
    destination_ledger: str
    source_ledger: str
    sequence_number: int
    attempt: int = 0  # Attempts already made

    @classmethod
    def from_burn(cls, event: BurnedEvent, destination_ledger: str) -> "MintRequest":
        return cls(
            account=event.account,
            amount=event.amount,
            destination_ledger=destination_ledger,
            source_ledger=event.source_ledger,
            sequence_number=event.sequence_number,
        )

    @property
    def source_key(self) -> str:
        return f"{self.source_ledger}#{self.sequence_number}"


@dataclass
class RelayOutcome:
    """Observability record emitted once per finished relay attempt chain."""

    source_ledger: str
    sequence_number: int
    destination_ledger: str
    account: str
    amount: int
    success: bool
    attempts: int
    mint_tx_hash: Optional[str] = None
    error: Optional[str] = None
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RelayCoordinator:
    """Relays burns on each ledger of a pair into mints on the other."""

    def __init__(
        self,
        ledger_a: LedgerClient,
        ledger_b: LedgerClient,
        session_scope: Optional[SessionScope] = None,
        mint_max_attempts: int = 1,
        retry_backoff_seconds: float = 2.0,
        inclusion_timeout: Optional[float] = 120.0,
        shutdown_timeout: float = 30.0,
        lock_timeout: Optional[float] = 30.0,
        max_outcomes: int = 1000,
    ):
        """Initialize the coordinator.

        Args:
            ledger_a: Client for ledger A
            ledger_b: Client for ledger B
            session_scope: Journal session factory; None disables deduplication
            mint_max_attempts: Submission attempts per burn (1 = no retry)
            retry_backoff_seconds: Delay before the first retry, doubled each time
            inclusion_timeout: Seconds to wait for a mint to be included
            shutdown_timeout: Seconds stop() waits for in-flight work
            lock_timeout: Seconds to wait for the destination's submission lock
            max_outcomes: Number of outcome records kept in memory
        """
        if ledger_a.name == ledger_b.name:
            raise ValueError(f"Ledger pair needs two distinct ledgers, got {ledger_a.name} twice")
        if mint_max_attempts < 1:
            raise ValueError("mint_max_attempts must be at least 1")

        self._ledgers: dict[str, LedgerClient] = {
            ledger_a.name: ledger_a,
            ledger_b.name: ledger_b,
        }
        self._routes: dict[str, str] = {
            ledger_a.name: ledger_b.name,
            ledger_b.name: ledger_a.name,
        }
        self._session_scope = session_scope
        self.mint_max_attempts = mint_max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.inclusion_timeout = inclusion_timeout
        self.shutdown_timeout = shutdown_timeout
        self.lock_timeout = lock_timeout

        self.state = CoordinatorState.IDLE
        self._accepting = False
        self._queues: dict[str, asyncio.Queue] = {}
        self._submitters: dict[str, asyncio.Task] = {}
        self._callbacks: dict[str, EventCallback] = {}
        self._inflight: set[asyncio.Task] = set()
        self._journal_lock = asyncio.Lock()
        # Sources paused after a burn could not be journaled, and where to replay from
        self._suspended: set[str] = set()
        self._resume_from: dict[str, int] = {}

        self.outcomes: deque[RelayOutcome] = deque(maxlen=max_outcomes)
        self.duplicates_skipped = 0

    @property
    def deduplicates(self) -> bool:
        """True when a journal guards against redelivered events."""
        return self._session_scope is not None

    def route(self, source_ledger: str) -> str:
        """Destination ledger for burns observed on ``source_ledger``."""
        try:
            return self._routes[source_ledger.upper()]
        except KeyError:
            raise ValueError(f"Ledger {source_ledger} is not part of this pair") from None

    @asynccontextmanager
    async def _journal(self) -> AsyncIterator[RelayJournal]:
        # One journal transaction at a time
        async with self._journal_lock:
            async with self._session_scope() as session:
                yield RelayJournal(session)

    # ======================
    # Lifecycle
    # ======================

    async def start(self) -> None:
        """Idle -> Listening: start writers, recover journal, subscribe both ways."""
        if self.state == CoordinatorState.LISTENING:
            return

        logger.info(
            f"Starting relay {' <-> '.join(self._ledgers)} "
            f"(deduplicate={self.deduplicates}, attempts={self.mint_max_attempts})"
        )
        self._accepting = True
        for name in self._ledgers:
            self._queues[name] = asyncio.Queue()
            self._submitters[name] = asyncio.create_task(
                self._run_submitter(name), name=f"relay-submitter-{name}"
            )

        try:
            if self.deduplicates:
                await self.recover()
            for source in self._ledgers:
                await self._subscribe(source)
        except Exception:
            logger.error("Relay failed to start", exc_info=True)
            self.state = CoordinatorState.LISTENING
            await self.stop()
            raise

        self.state = CoordinatorState.LISTENING
        logger.info("Relay listening")

    async def stop(self) -> None:
        """Stop accepting events, drain in-flight work, then cancel the writers."""
        if self.state == CoordinatorState.IDLE:
            return

        logger.info("Stopping relay")
        self._accepting = False

        for source, callback in list(self._callbacks.items()):
            await self._ledgers[source].unsubscribe(BRIDGE_EVENT, callback)
        self._callbacks.clear()
        self._suspended.clear()
        self._resume_from.clear()

        try:
            await asyncio.wait_for(self.wait_idle(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Relay did not drain within {self.shutdown_timeout}s; "
                f"{len(self._inflight)} tasks cancelled"
            )

        tasks = list(self._submitters.values()) + list(self._inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._submitters.clear()
        self._inflight.clear()
        self._queues.clear()
        self.state = CoordinatorState.IDLE
        logger.info("Relay stopped")

    async def wait_idle(self) -> None:
        """Wait until the queues are empty and nothing is in flight."""
        while True:
            for queue in list(self._queues.values()):
                await queue.join()
            if not self._inflight:
                if all(queue.empty() for queue in self._queues.values()):
                    return
                continue
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _subscribe(self, source: str) -> None:
        from_sequence = None
        if self.deduplicates:
            async with self._journal() as journal:
                from_sequence = await journal.get_cursor(source)
            resume_from = self._resume_from.get(source)
            if resume_from is not None:
                from_sequence = (
                    resume_from if from_sequence is None else min(from_sequence, resume_from)
                )

        async def on_burn(event: BurnedEvent) -> None:
            await self.handle_burn(source, event)

        self._callbacks[source] = on_burn
        try:
            await self._ledgers[source].subscribe(
                BRIDGE_EVENT, on_burn, from_sequence=from_sequence
            )
        except Exception:
            self._callbacks.pop(source, None)
            raise
        self._resume_from.pop(source, None)
        logger.info(
            f"Subscribed to {BRIDGE_EVENT} on {source} -> mint on {self.route(source)}"
            + (f" (resuming after #{from_sequence})" if from_sequence is not None else "")
        )

    async def resubscribe(self, source: str) -> None:
        """Re-establish the subscription on ``source`` after a connection loss.

        With a journal, delivery resumes after the last journaled burn, so
        burns emitted during the gap are picked up.
        """
        source = source.upper()
        callback = self._callbacks.pop(source, None)
        if callback is not None:
            await self._ledgers[source].unsubscribe(BRIDGE_EVENT, callback)
        await self._subscribe(source)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _suspend(self, source: str, sequence_number: int) -> None:
        """Pause ``source`` so nothing past an unjournaled burn moves the cursor.

        The subscription is re-established from just before that burn once
        the journal accepts writes again.
        """
        previous = self._resume_from.get(source)
        resume_from = sequence_number - 1
        self._resume_from[source] = resume_from if previous is None else min(previous, resume_from)
        if source in self._suspended:
            return
        self._suspended.add(source)
        self._spawn(self._resume_direction(source))

    async def _resume_direction(self, source: str) -> None:
        callback = self._callbacks.pop(source, None)
        if callback is not None:
            await self._ledgers[source].unsubscribe(BRIDGE_EVENT, callback)

        delay = self.retry_backoff_seconds
        while self._accepting:
            if delay:
                await asyncio.sleep(delay)
            if not self._accepting:
                break
            try:
                await self._subscribe(source)
            except Exception as e:
                delay = max(delay * 2, 1.0)
                logger.warning(f"Cannot resume {source} yet: {e}; next try in {delay:.1f}s")
                continue
            # Replayed deliveries start only after this task yields
            self._suspended.discard(source)
            logger.info(f"Resumed {source} after journal failure")
            return

        logger.info(f"Relay stopping; {source} resumes from the journal cursor on next start")

    # ======================
    # Detection
    # ======================

    async def handle_burn(self, source: str, event: BurnedEvent) -> Optional[MintRequest]:
        """Turn one delivered Burned event into a queued mint request.

        Returns:
            The queued request, or None if the event was skipped
        """
        if not self._accepting:
            logger.warning(f"Relay stopping, not accepting burn {source}#{event.sequence_number}")
            return None

        if event.source_ledger.upper() != source.upper():
            logger.error(
                f"Burn {event.source_ledger}#{event.sequence_number} delivered by "
                f"subscription on {source}; ignored"
            )
            return None

        destination = self.route(source)
        request = MintRequest.from_burn(event, destination)

        if self.deduplicates:
            async with self._journal_lock:
                if source in self._suspended:
                    logger.debug(f"{source} paused; burn {request.source_key} left for replay")
                    return None
                try:
                    async with self._session_scope() as session:
                        _, created = await RelayJournal(session).record_burn(event, destination)
                except Exception:
                    logger.error(
                        f"Could not journal burn {request.source_key}; "
                        f"pausing {source} until it can be replayed",
                        exc_info=True,
                    )
                    self._suspend(source, event.sequence_number)
                    return None
            if not created:
                self.duplicates_skipped += 1
                logger.info(f"Burn {request.source_key} already journaled; skipping redelivery")
                return None

        logger.info(
            f"Burn {request.source_key}: {event.amount} by {event.account} -> mint on {destination}"
        )
        self._queues[destination].put_nowait(request)
        return request

    # ======================
    # Submission
    # ======================

    async def _run_submitter(self, destination: str) -> None:
        """Single writer for the relay identity on ``destination``."""
        queue = self._queues[destination]
        client = self._ledgers[destination]

        while True:
            request: MintRequest = await queue.get()
            try:
                await self._submit(client, request)
            except Exception as e:
                logger.error(f"Unexpected error submitting {request.source_key}", exc_info=True)
                self._record(request, False, request.attempt + 1, error=str(e))
            finally:
                queue.task_done()

    async def _submit(self, client: LedgerClient, request: MintRequest) -> None:
        try:
            async with LedgerSubmissionLock(
                client.name, timeout=self.lock_timeout, operation=f"mint {request.source_key}"
            ):
                handle = await client.call(MINT_FUNCTION, (request.account, request.amount))
        except BroadcastUncertain as e:
            # May already be on its way; signing a second mint could mint twice
            handle = e.handle
            logger.warning(
                f"Broadcast of mint for {request.source_key} on {client.name} "
                f"unconfirmed ({e.reason}); awaiting {handle.tx_hash}"
            )
        except (SubmissionFailure, LockTimeoutError) as e:
            await self._attempt_failed(request, str(e), counted=True)
            return
        else:
            logger.info(
                f"Submitted mint({request.account}, {request.amount}) on {client.name} "
                f"for {request.source_key}: {handle.tx_hash}"
            )

        if self.deduplicates:
            try:
                async with self._journal() as journal:
                    await journal.mark_submitted(
                        request.source_ledger, request.sequence_number, handle.tx_hash
                    )
            except Exception:
                logger.error(
                    f"Could not journal mint {handle.tx_hash} for {request.source_key}; "
                    f"awaiting it anyway",
                    exc_info=True,
                )

        self._spawn(self._confirm(client, request, handle))

    async def _confirm(
        self, client: LedgerClient, request: MintRequest, handle: TransactionHandle
    ) -> None:
        try:
            await self._settle_mint(client, request, handle)
        except Exception as e:
            logger.error(
                f"Unexpected error settling mint {handle.tx_hash} for {request.source_key}",
                exc_info=True,
            )
            self._record(request, False, request.attempt + 1, handle.tx_hash, str(e))

    async def _settle_mint(
        self, client: LedgerClient, request: MintRequest, handle: TransactionHandle
    ) -> None:
        attempts = request.attempt + 1
        try:
            receipt = await client.await_inclusion(handle, timeout=self.inclusion_timeout)
        except asyncio.TimeoutError:
            # The mint may still land; resubmitting could mint twice
            error = f"mint {handle.tx_hash} not included within {self.inclusion_timeout}s"
            logger.error(f"{request.source_key}: {error}")
            if self.deduplicates:
                async with self._journal() as journal:
                    await journal.mark_unconfirmed(
                        request.source_ledger, request.sequence_number, error
                    )
            self._record(request, False, attempts, handle.tx_hash, error)
            return
        except SubmissionFailure as e:
            await self._attempt_failed(request, str(e), counted=False)
            return

        if self.deduplicates:
            async with self._journal() as journal:
                await journal.mark_confirmed(
                    request.source_ledger, request.sequence_number, receipt.tx_hash
                )

        logger.info(
            f"Relayed {request.source_key}: minted {request.amount} to {request.account} "
            f"on {request.destination_ledger} in {receipt.tx_hash}"
        )
        self._record(request, True, attempts, receipt.tx_hash)

    async def _attempt_failed(self, request: MintRequest, error: str, counted: bool) -> None:
        attempts = request.attempt + 1
        final = attempts >= self.mint_max_attempts or not self._accepting

        if self.deduplicates:
            async with self._journal() as journal:
                await journal.mark_attempt_failed(
                    request.source_ledger,
                    request.sequence_number,
                    error,
                    final=final,
                    counted=counted,
                )

        if final:
            if self.deduplicates:
                logger.error(
                    f"Mint for {request.source_key} failed after {attempts} attempts: {error}; "
                    f"kept as {RelayStatus.FAILED.value} for recovery"
                )
            else:
                logger.error(
                    f"Mint for {request.source_key} failed after {attempts} attempts: {error}; "
                    f"burn of {request.amount} by {request.account} is NOT relayed"
                )
            self._record(request, False, attempts, error=error)
            return

        delay = self.retry_backoff_seconds * (2 ** (attempts - 1))
        logger.warning(
            f"Mint for {request.source_key} failed (attempt {attempts}/{self.mint_max_attempts}): "
            f"{error}; retrying in {delay:.1f}s"
        )
        self._spawn(self._requeue_later(replace(request, attempt=attempts), delay))

    async def _requeue_later(self, request: MintRequest, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        if not self._accepting:
            logger.info(f"Relay stopping; {request.source_key} left for recovery")
            return
        self._queues[request.destination_ledger].put_nowait(request)

    def _record(
        self,
        request: MintRequest,
        success: bool,
        attempts: int,
        mint_tx_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> RelayOutcome:
        outcome = RelayOutcome(
            source_ledger=request.source_ledger,
            sequence_number=request.sequence_number,
            destination_ledger=request.destination_ledger,
            account=request.account,
            amount=request.amount,
            success=success,
            attempts=attempts,
            mint_tx_hash=mint_tx_hash,
            error=error,
        )
        self.outcomes.append(outcome)
        return outcome

    # ======================
    # Recovery
    # ======================

    async def recover(self) -> int:
        """Resume burns a previous run left unfinished.

        Pending and failed burns are queued again with a fresh attempt budget;
        submitted ones have their existing mint awaited instead of resubmitted.

        Returns:
            Number of burns resumed
        """
        if not self.deduplicates:
            return 0

        async with self._journal() as journal:
            rows = await journal.get_unfinished()

        for row in rows:
            request = MintRequest(
                account=row.account,
                amount=row.amount,
                destination_ledger=row.destination_ledger,
                source_ledger=row.source_ledger,
                sequence_number=row.sequence_number,
            )
            client = self._ledgers[row.destination_ledger]

            if row.status == RelayStatus.SUBMITTED and row.mint_tx_hash:
                handle = TransactionHandle(
                    ledger=client.name,
                    tx_hash=row.mint_tx_hash,
                    function=MINT_FUNCTION,
                    args=(row.account, row.amount),
                )
                self._spawn(self._confirm(client, request, handle))
            else:
                self._queues[row.destination_ledger].put_nowait(request)

        if rows:
            logger.info(f"Recovered {len(rows)} unfinished burns from journal")
        return len(rows)

    # ======================
    # Status
    # ======================

    def status(self) -> dict:
        """Snapshot of the coordinator for health reporting."""
        succeeded = sum(1 for outcome in self.outcomes if outcome.success)
        return {
            "state": self.state.value,
            "deduplicate": self.deduplicates,
            "routes": dict(self._routes),
            "queued": {name: queue.qsize() for name, queue in self._queues.items()},
            "in_flight": len(self._inflight),
            "relayed": succeeded,
            "failed": len(self.outcomes) - succeeded,
            "duplicates_skipped": self.duplicates_skipped,
        }
