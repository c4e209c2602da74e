"""Simulated ledger backed by an in-process TokenState.

Used for tests and local dry runs. Mirrors the behaviour the relay has to
cope with on a real chain: events arrive as independent callback
invocations, inclusion is asynchronous, nonces conflict when one identity
submits concurrently, and connections drop.
"""

import asyncio
import logging
import secrets
from typing import Optional

from bridgerelay.ledger.base import (
    BRIDGE_EVENT,
    BroadcastUncertain,
    EventCallback,
    LedgerClient,
    SubmissionFailure,
    SubscriptionFailure,
    TransactionHandle,
    TransactionReceipt,
)
from bridgerelay.token.events import BurnedEvent
from bridgerelay.token.state import TokenError, TokenState

logger = logging.getLogger(__name__)

# Token operations reachable through call(); the signer is the caller
CALLABLE_FUNCTIONS = ("mint", "burn", "transfer")


class InMemoryLedger(LedgerClient):
    """Ledger simulation for testing (no real chain)."""

    def __init__(
        self,
        name: str,
        authority: str = "relay",
        genesis: Optional[dict[str, int]] = None,
        signer: Optional[str] = None,
        inclusion_delay: float = 0.0,
        submission_delay: float = 0.0,
    ):
        """Initialize simulated ledger.

        Args:
            name: Ledger name ("A" or "B")
            authority: Identity the token contract accepts mints from
            genesis: Initial balances
            signer: Identity this client submits as (defaults to authority)
            inclusion_delay: Seconds between submission and inclusion
            submission_delay: Seconds between nonce lookup and acceptance
        """
        super().__init__(name)
        self.state = TokenState(self.name, authority, genesis)
        self._signer = signer or authority
        self.inclusion_delay = inclusion_delay
        self.submission_delay = submission_delay

        self._connected = True
        self._subscribers: dict[str, list[EventCallback]] = {}
        self._delivery_tasks: set[asyncio.Task] = set()
        self._inclusions: dict[str, asyncio.Future] = {}
        self._next_nonce: dict[str, int] = {}
        self._fail_next = 0
        self._fail_reason = "network error"
        self._drop_responses = 0

        self.submissions: list[TransactionHandle] = []
        self.in_flight_submissions = 0
        self.max_concurrent_submissions = 0

    @property
    def signer(self) -> str:
        return self._signer

    # ======================
    # Connection
    # ======================

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._subscribers.clear()
        for task in list(self._delivery_tasks):
            task.cancel()
        await asyncio.gather(*self._delivery_tasks, return_exceptions=True)

    def disconnect(self) -> None:
        """Simulate a dropped connection: subscriptions are lost silently."""
        self._connected = False
        self._subscribers.clear()
        logger.info(f"[{self.name}] Simulated disconnect")

    # ======================
    # Events
    # ======================

    async def subscribe(
        self,
        event_name: str,
        callback: EventCallback,
        from_sequence: Optional[int] = None,
    ) -> None:
        if not self._connected:
            raise SubscriptionFailure(self.name, f"cannot subscribe to {event_name}: not connected")

        self._subscribers.setdefault(event_name, []).append(callback)

        if from_sequence is not None and event_name == BRIDGE_EVENT:
            backlog = [
                record for record in self.state.records
                if isinstance(record, BurnedEvent) and record.sequence_number > from_sequence
            ]
            if backlog:
                logger.info(f"[{self.name}] Replaying {len(backlog)} burns after #{from_sequence}")
            for event in backlog:
                self._deliver_to(callback, event)

    async def unsubscribe(self, event_name: str, callback: EventCallback) -> None:
        callbacks = self._subscribers.get(event_name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _deliver_to(self, callback: EventCallback, event: BurnedEvent) -> None:
        # One independent task per delivery; tasks start in creation order
        task = asyncio.get_running_loop().create_task(self._invoke(callback, event))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _invoke(self, callback: EventCallback, event: BurnedEvent) -> None:
        try:
            await callback(event)
        except Exception as e:
            logger.error(f"[{self.name}] Subscriber error for burn #{event.sequence_number}: {e}")

    def _emit(self, event: BurnedEvent) -> None:
        for callback in list(self._subscribers.get(BRIDGE_EVENT, [])):
            self._deliver_to(callback, event)

    def redeliver(self, event: BurnedEvent) -> None:
        """Deliver an already emitted event again, as a reconnect replay would."""
        self._emit(event)

    async def wait_delivered(self) -> None:
        """Wait until every callback invocation scheduled so far has returned."""
        while self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)

    # ======================
    # User operations
    # ======================

    async def burn(self, account: str, amount: int) -> BurnedEvent:
        """User-side ``bridge(amount)``: burn own balance and emit the event."""
        event = self.state.burn(account, amount)
        if self._connected:
            self._emit(event)
        return event

    bridge = burn

    async def transfer(self, account: str, to: str, amount: int) -> None:
        self.state.transfer(account, to, amount)

    # ======================
    # Transactions
    # ======================

    def fail_next_submissions(self, count: int = 1, reason: str = "network error") -> None:
        """Make the next ``count`` submissions fail before reaching the ledger."""
        self._fail_next = count
        self._fail_reason = reason

    def drop_next_responses(self, count: int = 1) -> None:
        """Accept the next ``count`` submissions but lose the reply to the caller."""
        self._drop_responses = count

    async def call(
        self,
        function: str,
        args: tuple,
        nonce: Optional[int] = None,
    ) -> TransactionHandle:
        if self._fail_next > 0:
            self._fail_next -= 1
            raise SubmissionFailure(self.name, self._fail_reason)

        if function not in CALLABLE_FUNCTIONS:
            raise SubmissionFailure(self.name, f"unknown function {function}")

        self.in_flight_submissions += 1
        self.max_concurrent_submissions = max(
            self.max_concurrent_submissions, self.in_flight_submissions
        )
        try:
            expected = self._next_nonce.get(self._signer, 0)
            nonce = expected if nonce is None else nonce
            if self.submission_delay:
                await asyncio.sleep(self.submission_delay)

            # Another submission under the same identity may have landed meanwhile
            if self._next_nonce.get(self._signer, 0) != nonce:
                raise SubmissionFailure(
                    self.name,
                    f"nonce conflict for {self._signer}: got {nonce}, "
                    f"expected {self._next_nonce.get(self._signer, 0)}",
                )
            self._next_nonce[self._signer] = nonce + 1
        finally:
            self.in_flight_submissions -= 1

        handle = TransactionHandle(
            ledger=self.name,
            tx_hash=f"sim_tx_{secrets.token_hex(16)}",
            function=function,
            args=tuple(args),
            nonce=nonce,
        )
        self.submissions.append(handle)

        future = asyncio.get_running_loop().create_future()
        self._inclusions[handle.tx_hash] = future
        task = asyncio.get_running_loop().create_task(self._include(handle, future))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

        logger.debug(f"[{self.name}] Accepted {function}{tuple(args)} nonce={nonce}")
        if self._drop_responses > 0:
            self._drop_responses -= 1
            raise BroadcastUncertain(self.name, "response lost after broadcast", handle)
        return handle

    async def _include(self, handle: TransactionHandle, future: asyncio.Future) -> None:
        if self.inclusion_delay:
            await asyncio.sleep(self.inclusion_delay)

        operation = getattr(self.state, handle.function)
        try:
            operation(self._signer, *handle.args)
            receipt = TransactionReceipt(
                ledger=self.name,
                tx_hash=handle.tx_hash,
                success=True,
                block_number=self.state.next_sequence,
            )
        except TokenError as e:
            receipt = TransactionReceipt(
                ledger=self.name, tx_hash=handle.tx_hash, success=False, error=str(e)
            )

        if not future.done():
            future.set_result(receipt)

    async def await_inclusion(
        self, handle: TransactionHandle, timeout: Optional[float] = None
    ) -> TransactionReceipt:
        future = self._inclusions.get(handle.tx_hash)
        if future is None:
            raise SubmissionFailure(self.name, f"unknown transaction {handle.tx_hash}")

        # Receipts stay queryable after inclusion, as on a real chain
        receipt = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)

        if not receipt.success:
            raise SubmissionFailure(self.name, f"transaction reverted: {receipt.error}")
        return receipt

    # ======================
    # Reads
    # ======================

    async def get_balance(self, account: str) -> int:
        return self.state.balance_of(account)

    async def total_supply(self) -> int:
        return self.state.total_supply

    def minted_calls(self) -> list[tuple]:
        """Arguments of every accepted mint submission, in order."""
        return [handle.args for handle in self.submissions if handle.function == "mint"]
