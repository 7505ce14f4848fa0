"""Tests for row execution: unit ordering, billing, retries and classification."""

import asyncio
import dataclasses
from unittest.mock import AsyncMock

import pytest

from bulkgen.exceptions import ErrorKind
from bulkgen.models import BatchStatus, RowStatus, TransactionType
from bulkgen.providers.base import ProviderError, ProviderJobState, ProviderJobStatus
from bulkgen.services.orchestrator import BatchOrchestrator
from bulkgen.services.row_executor import JobWaiter
from tests.support.factories import make_row_spec, make_row_specs
from tests.support.fakes import HANG
from tests.support.waiting import drain, wait_until

OWNER = "user-1"


@pytest.fixture
async def funded(orchestrator):
    await orchestrator.ledger.grant(OWNER, 10)
    return orchestrator


async def _launch_one(orchestrator, *prompts, **overrides):
    batch_id = await orchestrator.launch_batch(
        OWNER, [make_row_spec(*prompts, **overrides)], staged=False
    )
    await drain(orchestrator)
    status = await orchestrator.get_batch_status(batch_id)
    return status, status.rows[0]


class TestUnitExecution:
    async def test_units_render_sequentially_in_order(self, funded, provider):
        """[P0] A row's units never overlap and run in ordinal order.

        GIVEN: A row with three scenes
        WHEN: The row executes
        THEN: Each unit is submitted only after the previous one finished
        """
        status, row = await _launch_one(funded, "intro", "middle", "outro")

        assert row.status == RowStatus.COMPLETED
        assert provider.events == [
            ("submit", "intro"),
            ("done", "intro"),
            ("submit", "middle"),
            ("done", "middle"),
            ("submit", "outro"),
            ("done", "outro"),
        ]
        assert [unit.output_ref for unit in row.units] == [
            "https://cdn.test/videos/intro.mp4",
            "https://cdn.test/videos/middle.mp4",
            "https://cdn.test/videos/outro.mp4",
        ]

    async def test_charges_rendered_duration_not_estimate(self, funded, provider):
        """[P0] Reserve on the estimate, debit on what was rendered.

        GIVEN: Three 8s units (estimate 24s → 3 credits) that render at 4s each
        WHEN: The row completes
        THEN: 2 credits are charged and 1 is released back to the balance
        """
        provider.rendered_durations.update({"a": 4.0, "b": 4.0, "c": 4.0})

        status, row = await _launch_one(funded, "a", "b", "c")

        assert row.credits_reserved == 3
        assert row.credits_charged == 2
        assert status.total_credits_charged == 2
        assert await funded.ledger.get_balance(OWNER) == 8
        assert await funded.ledger.net_charged(row.id) == 2

    async def test_units_carry_row_identity(self, funded, provider):
        await _launch_one(funded, "a", "b")

        row_ids = {request.row_id for request in provider.submitted}
        assert len(row_ids) == 1
        assert [request.ordinal for request in provider.submitted] == [0, 1]


class TestRetryPolicy:
    async def test_rate_limited_unit_is_retried(self, funded, provider):
        """[P0] RATE_LIMITED is transient: the second attempt succeeds."""
        provider.script("scene", ErrorKind.RATE_LIMITED, None)

        _, row = await _launch_one(funded, "scene")

        assert row.status == RowStatus.COMPLETED
        assert row.units[0].attempts == 2
        assert provider.submissions_for("scene") == 2

    async def test_provider_error_exhausts_attempts_and_refunds(self, funded, provider):
        """[P0] PROVIDER_ERROR fails the row after MAX_UNIT_ATTEMPTS.

        GIVEN: MAX_UNIT_ATTEMPTS=3 and a unit that always fails
        WHEN: The row executes
        THEN: 3 attempts are made, the row fails and its reservation is refunded
        """
        provider.script("scene", *([ErrorKind.PROVIDER_ERROR] * 3))

        status, row = await _launch_one(funded, "scene")

        assert row.status == RowStatus.FAILED
        assert row.error_kind == ErrorKind.PROVIDER_ERROR
        assert row.units[0].attempts == 3
        assert status.status == BatchStatus.PARTIALLY_FAILED
        assert await funded.ledger.get_balance(OWNER) == 10
        assert await funded.ledger.net_charged(row.id) == 0
        types = sorted(tx.type.value for tx in await funded.ledger.transactions_for_row(row.id))
        assert types == [TransactionType.REFUND.value, TransactionType.RESERVE.value]

    async def test_invalid_params_is_not_retried(self, funded, provider):
        provider.script("bad", ProviderError(ErrorKind.INVALID_PARAMS, "prompt rejected"))

        _, row = await _launch_one(funded, "bad")

        assert row.status == RowStatus.FAILED
        assert row.error_kind == ErrorKind.INVALID_PARAMS
        assert row.units[0].attempts == 1
        assert "prompt rejected" in row.error_message

    async def test_later_unit_failure_keeps_earlier_outputs(self, funded, provider):
        """[P1] A failed row still reports which units rendered."""
        provider.script("second", ErrorKind.INVALID_PARAMS)

        _, row = await _launch_one(funded, "first", "second", "third")

        assert row.status == RowStatus.FAILED
        assert [unit.status for unit in row.units] == [
            RowStatus.COMPLETED,
            RowStatus.FAILED,
            RowStatus.PENDING,
        ]
        assert provider.submissions_for("third") == 0

    async def test_unexpected_poll_exception_is_transient(self, funded, provider, monkeypatch):
        """[P0] An unclassified poll failure counts as PROVIDER_ERROR and polling continues.

        GIVEN: A provider whose first poll raises a plain RuntimeError
        WHEN: The row executes
        THEN: The job is polled again and the row completes on its first submission
        """
        real_poll = provider.poll
        polls = 0

        async def flaky_poll(job_id):
            nonlocal polls
            polls += 1
            if polls == 1:
                raise RuntimeError("boom")
            return await real_poll(job_id)

        monkeypatch.setattr(provider, "poll", flaky_poll)

        _, row = await _launch_one(funded, "scene")

        assert row.status == RowStatus.COMPLETED
        assert row.error_kind is None
        assert row.units[0].attempts == 1
        assert provider.submissions_for("scene") == 1
        assert polls >= 2

    async def test_timeout_retried_once(self, session_factory, provider, settings):
        """[P1] A hung job times out, is retried once, then fails TIMEOUT."""
        fast_timeout = dataclasses.replace(settings, unit_timeout_seconds=0.05)
        orch = BatchOrchestrator(session_factory, provider, None, fast_timeout)
        await orch.start()
        try:
            await orch.ledger.grant(OWNER, 5)
            provider.script("slow", HANG, HANG)

            _, row = await _launch_one(orch, "slow")
        finally:
            await orch.shutdown()

        assert row.status == RowStatus.FAILED
        assert row.error_kind == ErrorKind.TIMEOUT
        assert row.units[0].attempts == 2
        assert await orch.ledger.get_balance(OWNER) == 5


class TestCreditExhaustion:
    async def test_row_fails_without_provider_call(self, orchestrator, provider):
        """[P0] No credits → CREDIT_EXHAUSTED before anything is rendered.

        GIVEN: A balance of 2 and three 1-credit rows
        WHEN: The batch runs
        THEN: Two rows complete, the third fails CREDIT_EXHAUSTED with no
              submission, and retrying after a top-up completes the batch
        """
        await orchestrator.ledger.grant(OWNER, 2)
        batch_id = await orchestrator.launch_batch(OWNER, make_row_specs(3), staged=False)
        await drain(orchestrator)

        status = await orchestrator.get_batch_status(batch_id)
        failed = [row for row in status.rows if row.status == RowStatus.FAILED]
        assert status.status == BatchStatus.PARTIALLY_FAILED
        assert len(failed) == 1
        assert failed[0].error_kind == ErrorKind.CREDIT_EXHAUSTED
        assert failed[0].user_action.startswith("Add more credits")
        assert len(provider.submitted) == 2

        await orchestrator.ledger.grant(OWNER, 1)
        assert await orchestrator.retry_failed(batch_id) == 1
        await drain(orchestrator)

        status = await orchestrator.get_batch_status(batch_id)
        assert status.status == BatchStatus.COMPLETED
        assert await orchestrator.ledger.get_balance(OWNER) == 0


class TestAuthAlert:
    async def test_auth_error_alerts_once(self, funded, provider, mocker):
        """[P1] Rejected credentials page an operator, throttled per provider."""
        send_alert = mocker.patch(
            "bulkgen.services.row_executor.send_alert", new_callable=AsyncMock
        )
        provider.script("row-0", ProviderError(ErrorKind.AUTH_ERROR, "invalid api key"))
        provider.script("row-1", ProviderError(ErrorKind.AUTH_ERROR, "invalid api key"))

        batch_id = await funded.launch_batch(OWNER, make_row_specs(2), staged=False)
        await drain(funded)

        status = await funded.get_batch_status(batch_id)
        assert all(row.error_kind == ErrorKind.AUTH_ERROR for row in status.rows)
        send_alert.assert_awaited_once()
        assert send_alert.await_args.kwargs["level"] == "CRITICAL"

    async def test_retry_while_alert_in_flight_still_runs(self, funded, provider, mocker):
        """[P0] Retrying a row whose failure alert is still being sent re-runs it.

        GIVEN: A row failed with AUTH_ERROR whose executor is blocked sending the alert
        WHEN: The batch is retried before the alert call returns
        THEN: The row runs again once the alert finishes and the batch completes
        """
        release = asyncio.Event()

        async def slow_alert(**kwargs):
            await release.wait()

        mocker.patch("bulkgen.services.row_executor.send_alert", side_effect=slow_alert)
        provider.script("row-0", ProviderError(ErrorKind.AUTH_ERROR, "invalid api key"), None)
        batch_id = await funded.launch_batch(OWNER, make_row_specs(1), staged=False)

        async def settled() -> bool:
            status = await funded.get_batch_status(batch_id)
            return status.status == BatchStatus.PARTIALLY_FAILED

        await wait_until(settled)
        assert await funded.retry_failed(batch_id) == 1

        release.set()
        await drain(funded)

        status = await funded.get_batch_status(batch_id)
        assert status.status == BatchStatus.COMPLETED
        assert status.rows[0].status == RowStatus.COMPLETED
        assert provider.submissions_for("row-0") == 2
        assert await funded.ledger.get_balance(OWNER) == 9


class TestConcurrency:
    async def test_rows_in_progress_bounded_by_pool(self, funded, provider):
        """[P0] Never more than MAX_CONCURRENT_ROWS jobs at once."""
        provider.polls_until_done = 5

        batch_id = await funded.launch_batch(OWNER, make_row_specs(6), staged=False)
        await drain(funded)

        status = await funded.get_batch_status(batch_id)
        assert status.counts.completed == 6
        assert provider.peak_running == 2

    async def test_counts_sum_to_total_mid_run(self, funded, provider):
        """[P0] Row counts always add up, including while rows are rendering.

        GIVEN: 5 rows with the first two held at the provider (pool size 2)
        WHEN: Status is read mid-run and again after the run
        THEN: completed + failed + pending + in_progress == total both times
        """
        gates = [provider.hold("row-0"), provider.hold("row-1")]
        batch_id = await funded.launch_batch(OWNER, make_row_specs(5), staged=False)
        await provider.wait_for_submissions(2)

        counts = (await funded.get_batch_status(batch_id)).counts
        assert (counts.in_progress, counts.pending, counts.completed, counts.failed) == (2, 3, 0, 0)
        assert counts.completed + counts.failed + counts.pending + counts.in_progress == counts.total

        for gate in gates:
            gate.set()
        await drain(funded)

        counts = (await funded.get_batch_status(batch_id)).counts
        assert counts.completed == counts.total == 5
        assert counts.completed + counts.failed + counts.pending + counts.in_progress == counts.total


class TestCallbacks:
    async def test_callback_completes_unit_before_next_poll(
        self, session_factory, provider, settings
    ):
        """[P1] A delivered callback ends the wait without another poll.

        GIVEN: A 5s poll interval
        WHEN: The provider calls back with a finished job
        THEN: The row completes well before the next poll would run
        """
        slow_polls = dataclasses.replace(
            settings, poll_interval_seconds=5.0, unit_timeout_seconds=30.0
        )
        orch = BatchOrchestrator(session_factory, provider, None, slow_polls)
        await orch.start()
        try:
            await orch.ledger.grant(OWNER, 5)
            batch_id = await orch.launch_batch(OWNER, [make_row_spec("scene")], staged=False)
            await provider.wait_for_submissions(1)
            job_id = next(iter(provider.jobs))
            callback = ProviderJobStatus(
                job_id=job_id,
                state=ProviderJobState.SUCCEEDED,
                output_ref="https://cdn.test/callback/scene.mp4",
                duration_seconds=8.0,
            )
            while not orch.handle_provider_callback(callback):
                await asyncio.sleep(0.005)

            await drain(orch, timeout=2.0)
            status = await orch.get_batch_status(batch_id)
        finally:
            await orch.shutdown()

        assert status.status == BatchStatus.COMPLETED
        assert status.rows[0].units[0].output_ref == "https://cdn.test/callback/scene.mp4"

    async def test_unknown_callback_is_ignored(self, orchestrator):
        status = ProviderJobStatus(job_id="nobody", state=ProviderJobState.SUCCEEDED)
        assert orchestrator.handle_provider_callback(status) is False


class TestJobWaiter:
    async def test_non_terminal_status_not_delivered(self):
        waiter = JobWaiter()
        future = waiter.register("job-1")

        running = ProviderJobStatus(job_id="job-1", state=ProviderJobState.RUNNING)
        assert waiter.deliver(running) is False
        assert not future.done()

        done = ProviderJobStatus(job_id="job-1", state=ProviderJobState.FAILED, error_kind=ErrorKind.TIMEOUT)
        assert waiter.deliver(done) is True
        assert future.result() is done
        assert waiter.deliver(done) is False

    async def test_discard_cancels_pending_future(self):
        waiter = JobWaiter()
        future = waiter.register("job-1")

        waiter.discard("job-1")

        assert future.cancelled()
        assert waiter.waiting == 0
