"""Tests for the relay coordinator."""

import asyncio

import pytest

from bridgerelay.ledger import InMemoryLedger, SubscriptionFailure
from bridgerelay.relay import CoordinatorState, RelayCoordinator, RelayJournal, RelayStatus
from bridgerelay.token import BurnedEvent


async def combined_supply(*ledgers: InMemoryLedger) -> int:
    return sum([await ledger.total_supply() for ledger in ledgers])


@pytest.fixture
def baseline(ledger_a, ledger_b) -> RelayCoordinator:
    """Pass-through coordinator without a journal."""
    return RelayCoordinator(ledger_a, ledger_b, retry_backoff_seconds=0)


@pytest.fixture
def journaled(ledger_a, ledger_b, session_scope) -> RelayCoordinator:
    """Coordinator deduplicating through the journal."""
    return RelayCoordinator(
        ledger_a,
        ledger_b,
        session_scope=session_scope,
        mint_max_attempts=3,
        retry_backoff_seconds=0,
    )


async def journal_row(session_scope, ledger: str, sequence_number: int):
    async with session_scope() as session:
        return await RelayJournal(session).get(ledger, sequence_number)


class FlakyScope:
    """Journal session scope whose next ``failures`` sessions cannot be opened."""

    def __init__(self, scope):
        self.scope = scope
        self.failures = 0

    def __call__(self):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("database is locked")
        return self.scope()


class TestLifecycle:
    """Tests for start/stop and construction."""

    def test_same_ledger_twice_rejected(self, ledger_a):
        """Test that a pair needs two distinct ledgers."""
        with pytest.raises(ValueError):
            RelayCoordinator(ledger_a, InMemoryLedger("a"))

    def test_routes(self, baseline: RelayCoordinator):
        """Test that each ledger routes to the other."""
        assert baseline.route("A") == "B"
        assert baseline.route("b") == "A"
        with pytest.raises(ValueError):
            baseline.route("C")

    @pytest.mark.asyncio
    async def test_start_and_stop(self, baseline: RelayCoordinator):
        """Test the Idle -> Listening -> Idle lifecycle."""
        assert baseline.state == CoordinatorState.IDLE

        await baseline.start()
        assert baseline.state == CoordinatorState.LISTENING

        await baseline.start()  # already listening
        assert baseline.state == CoordinatorState.LISTENING

        await baseline.stop()
        assert baseline.state == CoordinatorState.IDLE

    @pytest.mark.asyncio
    async def test_start_fails_when_subscription_fails(self, ledger_a, ledger_b):
        """Test that a failed subscription leaves the coordinator idle."""
        ledger_b.disconnect()
        coordinator = RelayCoordinator(ledger_a, ledger_b)

        with pytest.raises(SubscriptionFailure):
            await coordinator.start()

        assert coordinator.state == CoordinatorState.IDLE

    @pytest.mark.asyncio
    async def test_stopped_coordinator_ignores_burns(self, baseline, ledger_a, ledger_b, settle):
        """Test that burns after stop are not relayed."""
        await baseline.start()
        await baseline.stop()

        await ledger_a.burn("alice", 100)
        await settle(baseline, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == []


class TestRelay:
    """Tests for the burn -> mint flow."""

    @pytest.mark.asyncio
    async def test_burn_on_a_mints_on_b(self, baseline, ledger_a, ledger_b, settle):
        """Test that a burn of 100 yields exactly one mint of 100 to the same account."""
        await baseline.start()

        await ledger_a.burn("alice", 100)
        await settle(baseline, ledger_a, ledger_b)

        assert await ledger_a.get_balance("alice") == 900
        assert await ledger_b.get_balance("alice") == 100
        assert ledger_b.minted_calls() == [("alice", 100)]

        outcome = baseline.outcomes[-1]
        assert outcome.success
        assert outcome.source_ledger == "A"
        assert outcome.destination_ledger == "B"
        assert outcome.attempts == 1
        assert outcome.mint_tx_hash.startswith("sim_tx_")

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_burn_on_b_mints_on_a(self, baseline, ledger_a, ledger_b, settle):
        """Test the reverse direction."""
        await baseline.start()

        await ledger_b.burn("bob", 50)
        await settle(baseline, ledger_a, ledger_b)

        assert await ledger_b.get_balance("bob") == 450
        assert await ledger_a.get_balance("bob") == 50
        assert ledger_a.minted_calls() == [("bob", 50)]
        assert ledger_b.minted_calls() == []

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_directions_are_independent(self, baseline, ledger_a, ledger_b, settle):
        """Test that a burn never produces a mint on its own ledger."""
        await baseline.start()

        await ledger_a.burn("alice", 10)
        await ledger_a.burn("carol", 20)
        await settle(baseline, ledger_a, ledger_b)

        assert ledger_a.minted_calls() == []
        assert sorted(ledger_b.minted_calls()) == [("alice", 10), ("carol", 20)]

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_combined_supply_conserved(self, baseline, ledger_a, ledger_b, settle):
        """Test that supply(A) + supply(B) is unchanged once all transfers settle."""
        before = await combined_supply(ledger_a, ledger_b)
        await baseline.start()

        await ledger_a.burn("alice", 100)
        await ledger_b.burn("bob", 200)
        await ledger_a.burn("carol", 300)
        await settle(baseline, ledger_a, ledger_b)

        # Round trip back from B
        await ledger_b.burn("alice", 100)
        await settle(baseline, ledger_a, ledger_b)

        assert await combined_supply(ledger_a, ledger_b) == before
        assert ledger_a.state.check_invariant()
        assert ledger_b.state.check_invariant()
        assert await ledger_a.get_balance("alice") == 1000

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_misrouted_event_ignored(self, baseline, ledger_a, ledger_b, settle):
        """Test that an event is only accepted from its own ledger's subscription."""
        await baseline.start()

        event = BurnedEvent(account="bob", amount=5, source_ledger="B", sequence_number=0)
        assert await baseline.handle_burn("A", event) is None
        await settle(baseline, ledger_a, ledger_b)

        assert ledger_a.minted_calls() == []
        assert ledger_b.minted_calls() == []

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_unauthorized_relay_cannot_mint(self, ledger_a, settle):
        """Test that a relay not holding the mint authority gets a reverted mint."""
        ledger_b = InMemoryLedger("B", authority="relay", signer="impostor")
        coordinator = RelayCoordinator(ledger_a, ledger_b, retry_backoff_seconds=0)
        await coordinator.start()

        await ledger_a.burn("alice", 100)
        await settle(coordinator, ledger_a, ledger_b)

        assert await ledger_b.get_balance("alice") == 0
        outcome = coordinator.outcomes[-1]
        assert not outcome.success
        assert "Unauthorized" in outcome.error

        await coordinator.stop()


class TestSubmissionOrdering:
    """Tests for the single writer per destination ledger."""

    @pytest.mark.asyncio
    async def test_concurrent_burns_do_not_conflict(self, ledger_a, settle):
        """Test that simultaneous burns are submitted one at a time."""
        ledger_b = InMemoryLedger("B", submission_delay=0.01, inclusion_delay=0.02)
        coordinator = RelayCoordinator(ledger_a, ledger_b)
        await coordinator.start()

        for amount in (1, 2, 3, 4, 5):
            await ledger_a.burn("alice", amount)
        await settle(coordinator, ledger_a, ledger_b)

        assert ledger_b.max_concurrent_submissions == 1
        assert [handle.nonce for handle in ledger_b.submissions] == [0, 1, 2, 3, 4]
        assert all(outcome.success for outcome in coordinator.outcomes)
        assert await ledger_b.get_balance("alice") == 15

        await coordinator.stop()


class TestBaselineMode:
    """Tests for the pass-through coordinator without a journal."""

    @pytest.mark.asyncio
    async def test_redelivery_double_mints_known_violation(
        self, baseline, ledger_a, ledger_b, settle
    ):
        """Known violation: a redelivered event is minted again without the journal.

        Combined supply grows by the redelivered amount.
        """
        before = await combined_supply(ledger_a, ledger_b)
        await baseline.start()

        event = await ledger_a.burn("alice", 100)
        await settle(baseline, ledger_a, ledger_b)
        ledger_a.redeliver(event)
        await settle(baseline, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100), ("alice", 100)]
        assert await ledger_b.get_balance("alice") == 200
        assert await combined_supply(ledger_a, ledger_b) == before + 100

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_failed_submission_is_dropped(self, baseline, ledger_a, ledger_b, settle):
        """Test that a failed mint is logged and not retried."""
        before = await combined_supply(ledger_a, ledger_b)
        await baseline.start()

        ledger_b.fail_next_submissions(1)
        await ledger_a.burn("alice", 100)
        await settle(baseline, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == []
        assert await combined_supply(ledger_a, ledger_b) == before - 100
        outcome = baseline.outcomes[-1]
        assert not outcome.success
        assert "network error" in outcome.error

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_burns_during_disconnect_are_lost(self, baseline, ledger_a, ledger_b, settle):
        """Test that without a cursor a resubscription starts from now."""
        await baseline.start()

        ledger_a.disconnect()
        await ledger_a.burn("alice", 100)
        await ledger_a.connect()
        await baseline.resubscribe("A")
        await ledger_a.burn("alice", 1)
        await settle(baseline, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 1)]

        await baseline.stop()

    @pytest.mark.asyncio
    async def test_recover_without_journal(self, baseline):
        """Test that there is nothing to recover without a journal."""
        assert await baseline.recover() == 0


class TestJournaledMode:
    """Tests for deduplication, retry and recovery through the journal."""

    @pytest.mark.asyncio
    async def test_redelivery_mints_once(
        self, journaled, ledger_a, ledger_b, session_scope, settle
    ):
        """Test that a redelivered event is skipped."""
        before = await combined_supply(ledger_a, ledger_b)
        await journaled.start()

        event = await ledger_a.burn("alice", 100)
        await settle(journaled, ledger_a, ledger_b)
        ledger_a.redeliver(event)
        ledger_a.redeliver(event)
        await settle(journaled, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]
        assert await combined_supply(ledger_a, ledger_b) == before
        assert journaled.duplicates_skipped == 2

        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.CONFIRMED
        assert row.mint_tx_hash == journaled.outcomes[-1].mint_tx_hash
        assert row.attempts == 1

        await journaled.stop()

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_mints_once(self, journaled, ledger_a, ledger_b, settle):
        """Test that redelivery racing the first delivery is still deduplicated."""
        await journaled.start()

        event = await ledger_a.burn("alice", 100)
        ledger_a.redeliver(event)
        await settle(journaled, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]

        await journaled.stop()

    @pytest.mark.asyncio
    async def test_failed_submission_is_retried(
        self, journaled, ledger_a, ledger_b, session_scope, settle
    ):
        """Test that transient failures are retried until the mint succeeds."""
        await journaled.start()

        ledger_b.fail_next_submissions(2)
        event = await ledger_a.burn("alice", 100)
        await settle(journaled, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]
        outcome = journaled.outcomes[-1]
        assert outcome.success
        assert outcome.attempts == 3

        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.CONFIRMED
        assert row.attempts == 3
        assert row.error_message is None

        await journaled.stop()

    @pytest.mark.asyncio
    async def test_exhausted_attempts_are_recovered_on_restart(
        self, journaled, ledger_a, ledger_b, session_scope, settle
    ):
        """Test that a burn left FAILED is minted by the next run."""
        await journaled.start()

        ledger_b.fail_next_submissions(3)
        event = await ledger_a.burn("alice", 100)
        await settle(journaled, ledger_a, ledger_b)
        await journaled.stop()

        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.FAILED
        assert row.attempts == 3
        assert ledger_b.minted_calls() == []

        restarted = RelayCoordinator(ledger_a, ledger_b, session_scope=session_scope)
        await restarted.start()
        await settle(restarted, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]
        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.CONFIRMED

        await restarted.stop()

    @pytest.mark.asyncio
    async def test_restart_resumes_from_cursor(
        self, journaled, ledger_a, ledger_b, session_scope, settle
    ):
        """Test that burns emitted while the relay was down are backfilled."""
        before = await combined_supply(ledger_a, ledger_b)
        await journaled.start()
        await ledger_a.burn("alice", 100)
        await settle(journaled, ledger_a, ledger_b)
        await journaled.stop()

        # Relay down
        await ledger_a.burn("carol", 30)
        await ledger_b.burn("bob", 20)

        restarted = RelayCoordinator(ledger_a, ledger_b, session_scope=session_scope)
        await restarted.start()
        await settle(restarted, ledger_a, ledger_b)

        # B was never burned on before, so its burn was emitted before any cursor existed
        assert sorted(ledger_b.minted_calls()) == [("alice", 100), ("carol", 30)]
        assert await combined_supply(ledger_a, ledger_b) == before - 20

        await restarted.stop()

    @pytest.mark.asyncio
    async def test_resubscribe_backfills_gap(self, journaled, ledger_a, ledger_b, settle):
        """Test that burns during a dropped connection are relayed after resubscribing."""
        await journaled.start()
        await ledger_a.burn("alice", 1)
        await settle(journaled, ledger_a, ledger_b)

        ledger_a.disconnect()
        await ledger_a.burn("alice", 100)
        await ledger_a.connect()
        await journaled.resubscribe("A")
        await settle(journaled, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 1), ("alice", 100)]

        await journaled.stop()

    @pytest.mark.asyncio
    async def test_status_counts(self, journaled, ledger_a, ledger_b, settle):
        """Test the health snapshot."""
        await journaled.start()
        event = await ledger_a.burn("alice", 100)
        await settle(journaled, ledger_a, ledger_b)
        ledger_a.redeliver(event)
        await settle(journaled, ledger_a, ledger_b)

        status = journaled.status()
        assert status["state"] == "listening"
        assert status["deduplicate"] is True
        assert status["routes"] == {"A": "B", "B": "A"}
        assert status["relayed"] == 1
        assert status["failed"] == 0
        assert status["duplicates_skipped"] == 1

        await journaled.stop()


class TestShutdown:
    """Tests for cooperative stop."""

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_mints(self, ledger_a, settle):
        """Test that stop waits for accepted burns to be minted."""
        ledger_b = InMemoryLedger("B", inclusion_delay=0.05)
        coordinator = RelayCoordinator(ledger_a, ledger_b, shutdown_timeout=5.0)
        await coordinator.start()

        await ledger_a.burn("alice", 100)
        await ledger_a.wait_delivered()
        await coordinator.stop()

        assert await ledger_b.get_balance("alice") == 100
        assert coordinator.outcomes[-1].success

    @pytest.mark.asyncio
    async def test_unconfirmed_mint_is_awaited_after_restart(
        self, ledger_a, session_scope, settle
    ):
        """Test that a mint still pending at shutdown is confirmed, not resubmitted."""
        ledger_b = InMemoryLedger("B", inclusion_delay=0.3)
        coordinator = RelayCoordinator(
            ledger_a, ledger_b, session_scope=session_scope, shutdown_timeout=0.01
        )
        await coordinator.start()

        event = await ledger_a.burn("alice", 100)
        while True:
            row = await journal_row(session_scope, "A", event.sequence_number)
            if row is not None and row.status == RelayStatus.SUBMITTED:
                break
            await asyncio.sleep(0.005)
        await coordinator.stop()

        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.SUBMITTED

        restarted = RelayCoordinator(ledger_a, ledger_b, session_scope=session_scope)
        await restarted.start()
        await settle(restarted, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]
        assert await ledger_b.get_balance("alice") == 100
        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.CONFIRMED

        await restarted.stop()


class TestUncertainBroadcast:
    """Tests for mints whose broadcast reply was lost."""

    @pytest.mark.asyncio
    async def test_lost_reply_is_awaited_not_resent(
        self, journaled, ledger_a, ledger_b, session_scope, settle
    ):
        """Test that a mint accepted without a reply is confirmed, not signed again."""
        await journaled.start()

        ledger_b.drop_next_responses(1)
        event = await ledger_a.burn("alice", 100)
        await settle(journaled, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]
        assert await ledger_b.get_balance("alice") == 100
        outcome = journaled.outcomes[-1]
        assert outcome.success
        assert outcome.attempts == 1

        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.CONFIRMED
        assert row.mint_tx_hash == ledger_b.submissions[0].tx_hash
        assert row.attempts == 1

        await journaled.stop()

    @pytest.mark.asyncio
    async def test_lost_reply_without_journal(self, ledger_a, ledger_b, settle):
        """Test that retries left over do not resend an uncertain mint."""
        coordinator = RelayCoordinator(
            ledger_a, ledger_b, mint_max_attempts=3, retry_backoff_seconds=0
        )
        await coordinator.start()

        ledger_b.drop_next_responses(1)
        await ledger_a.burn("alice", 100)
        await settle(coordinator, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]
        assert coordinator.outcomes[-1].success

        await coordinator.stop()


class TestJournalFailures:
    """Tests for journal writes that fail while relaying."""

    @pytest.mark.asyncio
    async def test_unjournaled_burn_is_replayed(
        self, ledger_a, ledger_b, session_scope, settle
    ):
        """Test that a burn the journal rejected, and the burns after it, are relayed."""
        flaky = FlakyScope(session_scope)
        coordinator = RelayCoordinator(
            ledger_a, ledger_b, session_scope=flaky, retry_backoff_seconds=0
        )
        await coordinator.start()

        flaky.failures = 1
        first = await ledger_a.burn("alice", 100)
        second = await ledger_a.burn("carol", 30)
        await settle(coordinator, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100), ("carol", 30)]
        for event in (first, second):
            row = await journal_row(session_scope, "A", event.sequence_number)
            assert row.status == RelayStatus.CONFIRMED

        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_unjournaled_burn_survives_restart(
        self, ledger_a, ledger_b, session_scope, settle
    ):
        """Test that later burns cannot move the cursor past one the journal rejected."""
        flaky = FlakyScope(session_scope)
        coordinator = RelayCoordinator(
            ledger_a,
            ledger_b,
            session_scope=flaky,
            retry_backoff_seconds=60,
            shutdown_timeout=0.1,
        )
        await coordinator.start()
        await ledger_a.burn("alice", 100)
        await settle(coordinator, ledger_a, ledger_b)

        flaky.failures = 1
        lost = await ledger_a.burn("alice", 50)
        later = await ledger_a.burn("carol", 30)
        await ledger_a.wait_delivered()

        assert await journal_row(session_scope, "A", lost.sequence_number) is None
        assert await journal_row(session_scope, "A", later.sequence_number) is None
        await coordinator.stop()

        restarted = RelayCoordinator(ledger_a, ledger_b, session_scope=session_scope)
        await restarted.start()
        await settle(restarted, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100), ("alice", 50), ("carol", 30)]
        row = await journal_row(session_scope, "A", lost.sequence_number)
        assert row.status == RelayStatus.CONFIRMED

        await restarted.stop()

    @pytest.mark.asyncio
    async def test_confirmation_error_is_recorded(
        self, journaled, ledger_a, ledger_b, session_scope, settle, monkeypatch
    ):
        """Test that an error while confirming a mint yields a failed outcome."""

        async def mark_confirmed(self, *args, **kwargs):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(RelayJournal, "mark_confirmed", mark_confirmed)
        await journaled.start()

        event = await ledger_a.burn("alice", 100)
        await settle(journaled, ledger_a, ledger_b)

        outcome = journaled.outcomes[-1]
        assert not outcome.success
        assert outcome.error == "disk I/O error"
        assert outcome.mint_tx_hash == ledger_b.submissions[0].tx_hash
        assert journaled.status()["failed"] == 1

        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.SUBMITTED
        await journaled.stop()

        monkeypatch.undo()
        restarted = RelayCoordinator(ledger_a, ledger_b, session_scope=session_scope)
        await restarted.start()
        await settle(restarted, ledger_a, ledger_b)

        assert ledger_b.minted_calls() == [("alice", 100)]
        row = await journal_row(session_scope, "A", event.sequence_number)
        assert row.status == RelayStatus.CONFIRMED

        await restarted.stop()
