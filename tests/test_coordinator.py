"""Submission state machine: single ledger call, warnings after success, detach on close."""

import asyncio
from decimal import Decimal

import httpx
import pytest

from app.api.v1.payments.coordinator import GENERIC_FAILURE, PaymentSubmissionCoordinator
from app.api.v1.payments.notifications import NotificationCenter
from app.api.v1.payments.receipts import ReceiptLifecycleManager
from app.api.v1.payments.reconciliation import ReconciliationRefresh
from app.api.v1.payments.schemas import PaymentLineItem, PaymentRequest
from app.core.enums import NotificationLevel, PaymentMethod, PaymentPurpose, SubmissionState
from app.core.exceptions import (
    ReceiptGenerationFailed,
    RefreshFailed,
    SubmissionRejected,
    SubmissionUnknownOutcome,
    ValidationError,
)


@pytest.fixture()
def request_term1() -> PaymentRequest:
    return PaymentRequest(
        student_identifier="ADM-001",
        details=[
            PaymentLineItem(
                purpose=PaymentPurpose.TUITION_FEE,
                term_number=1,
                paid_amount=Decimal("5000"),
                payment_method=PaymentMethod.CASH,
            )
        ],
    )


@pytest.fixture()
def notifications() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture()
def receipts(ledger_client, printer, tmp_path):
    manager = ReceiptLifecycleManager(ledger_client, printer=printer, spool_dir=str(tmp_path))
    yield manager
    manager.close()


@pytest.fixture()
def coordinator(ledger_client, receipts, notifications) -> PaymentSubmissionCoordinator:
    return PaymentSubmissionCoordinator(
        ledger_client, receipts, ReconciliationRefresh(ledger_client), notifications
    )


def _gate_pay(ledger):
    """Hold the ledger call open until the returned event is set."""
    gate = asyncio.Event()

    async def pay(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return ledger._pay(request, "ADM-001")

    ledger.pay_override = pay
    return gate


async def test_success_generates_receipt_and_refreshes_once(coordinator, ledger, request_term1) -> None:
    outcome = await coordinator.submit(request_term1)

    assert outcome.succeeded
    assert outcome.state == SubmissionState.RECEIPT_READY
    assert coordinator.history == [
        SubmissionState.IDLE,
        SubmissionState.SUBMITTING,
        SubmissionState.SUCCEEDED,
        SubmissionState.RECEIPT_READY,
    ]
    assert outcome.result.transaction_reference == "101"
    assert outcome.result.receipt_no == "R-101"
    assert len(ledger.calls("pay-by-student/ADM-001")) == 1
    assert len(ledger.calls("receipts/generate")) == 1
    assert len(ledger.calls("balances/ADM-001")) == 1
    assert outcome.receipt.filename == "Receipt_R-101.pdf"
    assert not outcome.receipt.released
    assert outcome.warnings == []

    term1 = next(b for b in outcome.snapshot.balances if b.category.code == "TUITION_TERM_1")
    assert term1.paid_amount == Decimal("5000")
    assert term1.outstanding == Decimal("0")


async def test_timeout_is_unknown_outcome_and_not_retried(coordinator, ledger, request_term1) -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    ledger.pay_override = timeout
    outcome = await coordinator.submit(request_term1)

    assert outcome.state == SubmissionState.FAILED
    assert isinstance(outcome.error, SubmissionUnknownOutcome)
    assert "Verify the student's ledger" in outcome.error.message
    assert len(ledger.calls("pay-by-")) == 1
    assert ledger.calls("receipts/") == []
    assert ledger.calls("balances/") == []
    assert coordinator.can_submit


async def test_gateway_error_is_unknown_outcome(coordinator, ledger, request_term1) -> None:
    ledger.pay_override = lambda request: httpx.Response(503, text="upstream unavailable")
    outcome = await coordinator.submit(request_term1)
    assert isinstance(outcome.error, SubmissionUnknownOutcome)
    assert outcome.error.cause == "HTTP 503"


async def test_rejection_message_is_passed_through(coordinator, ledger, notifications, request_term1) -> None:
    ledger.pay_override = lambda request: httpx.Response(
        400, json={"detail": "Term 1 tuition fee is already paid"}
    )
    outcome = await coordinator.submit(request_term1)

    assert isinstance(outcome.error, SubmissionRejected)
    assert outcome.error.message == "Term 1 tuition fee is already paid"
    assert outcome.error.status_code == 400
    assert coordinator.error is outcome.error
    [note] = notifications.history
    assert note.level == NotificationLevel.ERROR
    assert note.message == "Term 1 tuition fee is already paid"
    assert note.kind == "SubmissionRejected"


async def test_unexpected_error_becomes_generic_unknown_outcome(coordinator, ledger, request_term1) -> None:
    def boom(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("socket exploded")

    ledger.pay_override = boom
    outcome = await coordinator.submit(request_term1)
    assert isinstance(outcome.error, SubmissionUnknownOutcome)
    assert outcome.error.message == GENERIC_FAILURE


async def test_receipt_failure_is_a_warning(coordinator, ledger, notifications, request_term1) -> None:
    ledger.receipt_override = lambda request: httpx.Response(500, json={"detail": "template missing"})
    outcome = await coordinator.submit(request_term1)

    assert outcome.state == SubmissionState.SUCCEEDED
    assert SubmissionState.FAILED not in coordinator.history
    assert outcome.receipt is None
    assert outcome.snapshot is not None
    [warning] = outcome.warnings
    assert isinstance(warning, ReceiptGenerationFailed)
    messages = [n.message for n in notifications.history if n.level == NotificationLevel.WARNING]
    assert messages == ["Payment succeeded, but could not generate receipt: template missing"]


async def test_refresh_failure_is_a_warning(coordinator, ledger, request_term1) -> None:
    ledger.balances_override = lambda request: httpx.Response(500, json={"detail": "balance service down"})
    outcome = await coordinator.submit(request_term1)

    assert outcome.state == SubmissionState.RECEIPT_READY
    assert outcome.snapshot is None
    assert outcome.receipt is not None
    [warning] = outcome.warnings
    assert isinstance(warning, RefreshFailed)
    assert len(ledger.calls("pay-by-")) == 1


async def test_second_submit_while_in_flight_is_refused(coordinator, ledger, request_term1) -> None:
    gate = _gate_pay(ledger)
    task = asyncio.create_task(coordinator.submit(request_term1))
    await asyncio.sleep(0)

    assert coordinator.current == SubmissionState.SUBMITTING
    assert not coordinator.can_submit
    with pytest.raises(ValidationError):
        await coordinator.submit(request_term1)

    gate.set()
    outcome = await task
    assert outcome.succeeded
    assert coordinator.submission_count == 1
    assert len(ledger.calls("pay-by-")) == 1


async def test_accepted_payment_cannot_be_resubmitted(coordinator, request_term1) -> None:
    await coordinator.submit(request_term1)
    with pytest.raises(ValidationError) as exc:
        await coordinator.submit(request_term1)
    assert "already been accepted" in exc.value.message


async def test_explicit_resubmit_after_failure(coordinator, ledger, request_term1) -> None:
    ledger.pay_override = lambda request: httpx.Response(400, json={"detail": "Ledger locked"})
    first = await coordinator.submit(request_term1)
    assert first.state == SubmissionState.FAILED

    ledger.pay_override = None
    second = await coordinator.submit(request_term1)
    assert second.succeeded
    assert coordinator.error is None
    assert coordinator.submission_count == 2
    assert coordinator.history == [
        SubmissionState.IDLE,
        SubmissionState.SUBMITTING,
        SubmissionState.FAILED,
        SubmissionState.SUBMITTING,
        SubmissionState.SUCCEEDED,
        SubmissionState.RECEIPT_READY,
    ]


async def test_closing_dialog_detaches_without_cancelling_payment(
    coordinator, ledger, receipts, notifications, request_term1
) -> None:
    foreground, background = [], []
    notifications.subscribe(foreground.append)
    notifications.subscribe(background.append, background=True)

    gate = _gate_pay(ledger)
    task = asyncio.create_task(coordinator.submit(request_term1))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert coordinator.detached

    gate.set()
    outcome = await coordinator.wait()

    assert outcome.state == SubmissionState.RECEIPT_READY
    assert coordinator.current == SubmissionState.RECEIPT_READY
    assert outcome.receipt.released
    assert receipts.live_handles == 0
    assert len(ledger.calls("pay-by-")) == 1
    assert foreground == []
    assert [n.level for n in background] == [NotificationLevel.SUCCESS, NotificationLevel.SUCCESS]
    assert all(n.background for n in background)


async def test_state_observers_see_every_transition(coordinator, request_term1) -> None:
    seen = []
    coordinator.state.subscribe(seen.append)
    await coordinator.submit(request_term1)
    assert seen == [SubmissionState.SUBMITTING, SubmissionState.SUCCEEDED, SubmissionState.RECEIPT_READY]


def test_illegal_transition_is_refused(coordinator) -> None:
    with pytest.raises(RuntimeError):
        coordinator._transition(SubmissionState.RECEIPT_READY)
    assert coordinator.current == SubmissionState.IDLE


async def test_wait_without_submission_returns_none(coordinator) -> None:
    assert await coordinator.wait() is None


async def test_receipt_ready_does_not_wait_for_refresh(coordinator, ledger, receipts, request_term1) -> None:
    gate = asyncio.Event()
    refresh_started = asyncio.Event()

    async def slow_balances(request: httpx.Request) -> httpx.Response:
        refresh_started.set()
        await gate.wait()
        return httpx.Response(200, json={"balances": ledger.rows["ADM-001"]})

    ledger.balances_override = slow_balances
    task = asyncio.create_task(coordinator.submit(request_term1))
    await refresh_started.wait()
    for _ in range(100):
        if coordinator.current == SubmissionState.RECEIPT_READY:
            break
        await asyncio.sleep(0)

    assert coordinator.current == SubmissionState.RECEIPT_READY
    assert receipts.current.value is not None
    assert not task.done()

    gate.set()
    outcome = await task
    assert outcome.snapshot is not None
    assert outcome.receipt is receipts.current.value
