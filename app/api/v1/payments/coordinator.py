"""Payment submission state machine.

    IDLE -> SUBMITTING -> SUCCEEDED -> RECEIPT_READY
                       -> FAILED -> SUBMITTING (explicit re-submission only)

One ledger call per submission, never retried automatically: a lost response
to an accepted payment would otherwise turn into a second charge. After
success, receipt generation and reconciliation run side by side; their
failures are warnings and never move the state back to FAILED.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from app.core.enums import SubmissionState
from app.core.exceptions import (
    ReceiptGenerationFailed,
    RefreshFailed,
    ServiceError,
    SubmissionRejected,
    SubmissionUnknownOutcome,
    ValidationError,
)
from app.core.observable import Observable

from .client import LedgerClient
from .notifications import NotificationCenter
from .receipts import ReceiptHandle, ReceiptLifecycleManager
from .reconciliation import ReconciliationRefresh
from .schemas import BalanceSnapshot, PaymentRequest, PaymentResult

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[SubmissionState, Set[SubmissionState]] = {
    SubmissionState.IDLE: {SubmissionState.SUBMITTING},
    SubmissionState.SUBMITTING: {SubmissionState.SUCCEEDED, SubmissionState.FAILED},
    SubmissionState.FAILED: {SubmissionState.SUBMITTING},
    SubmissionState.SUCCEEDED: {SubmissionState.RECEIPT_READY},
    SubmissionState.RECEIPT_READY: set(),
}

GENERIC_FAILURE = "Payment could not be completed. Verify the student's ledger before trying again."


@dataclass
class SubmissionOutcome:
    state: SubmissionState
    request: PaymentRequest
    result: Optional[PaymentResult] = None
    error: Optional[ServiceError] = None
    receipt: Optional[ReceiptHandle] = None
    snapshot: Optional[BalanceSnapshot] = None
    warnings: List[ServiceError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in (SubmissionState.SUCCEEDED, SubmissionState.RECEIPT_READY)


class PaymentSubmissionCoordinator:
    """Drives one payment dialog's submission. Not shared between dialogs."""

    def __init__(
        self,
        client: LedgerClient,
        receipts: ReceiptLifecycleManager,
        reconciliation: ReconciliationRefresh,
        notifications: Optional[NotificationCenter] = None,
    ) -> None:
        self._client = client
        self._receipts = receipts
        self._reconciliation = reconciliation
        self.notifications = notifications or NotificationCenter()
        self.state: Observable[SubmissionState] = Observable(SubmissionState.IDLE)
        self.history: List[SubmissionState] = [SubmissionState.IDLE]
        self.error: Optional[ServiceError] = None
        self.warnings: List[ServiceError] = []
        self.result: Optional[PaymentResult] = None
        self.submission_count = 0
        self._task: Optional[asyncio.Future] = None
        self._detached = False

    @property
    def current(self) -> SubmissionState:
        return self.state.value

    @property
    def can_submit(self) -> bool:
        """Drives the submit control; False for the whole of SUBMITTING."""
        return self.current in (SubmissionState.IDLE, SubmissionState.FAILED)

    @property
    def detached(self) -> bool:
        return self._detached

    async def submit(self, request: PaymentRequest) -> SubmissionOutcome:
        """Send ``request`` and wait for the outcome.

        Cancelling the caller (the dialog closing) does not cancel the ledger
        call: the coordinator detaches, the call runs to completion, state is
        still updated and notifications go to the background channel.
        """
        if not self.can_submit:
            if self.current == SubmissionState.SUBMITTING:
                raise ValidationError(["A payment is already being submitted"])
            raise ValidationError(["This payment has already been accepted; start a new payment"])

        self.error = None
        self.warnings = []
        self.result = None
        self._transition(SubmissionState.SUBMITTING)
        self._task = asyncio.ensure_future(self._run(request))
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            self.detach()
            raise

    async def wait(self) -> Optional[SubmissionOutcome]:
        """Outcome of the last submission, waiting for it if still in flight."""
        if self._task is None:
            return None
        return await asyncio.shield(self._task)

    def detach(self) -> None:
        if not self._detached:
            self._detached = True
            logger.info("Payment dialog closed while in state %s", self.current.value)

    # --- Internals ---
    def _transition(self, new_state: SubmissionState) -> None:
        if new_state not in TRANSITIONS[self.current]:
            raise RuntimeError(f"Illegal transition {self.current.value} -> {new_state.value}")
        self.history.append(new_state)
        self.state.set(new_state)

    async def _run(self, request: PaymentRequest) -> SubmissionOutcome:
        self.submission_count += 1
        logger.info(
            "Submitting payment for %s: %d line(s), total %s",
            request.student_identifier,
            len(request.details),
            request.total_amount,
        )
        try:
            result = await self._client.pay(request)
        except (SubmissionRejected, SubmissionUnknownOutcome) as e:
            return self._fail(request, e)
        except Exception as e:
            logger.exception("Unexpected error submitting payment for %s", request.student_identifier)
            return self._fail(request, SubmissionUnknownOutcome(GENERIC_FAILURE, cause=repr(e)))

        self.result = result
        self._transition(SubmissionState.SUCCEEDED)
        logger.info("Payment accepted for %s: %s", request.student_identifier, result.transaction_reference)
        self.notifications.success(
            f"Payment recorded (ref {result.transaction_reference})",
            background=self._detached,
        )

        receipt, snapshot = await asyncio.gather(
            asyncio.ensure_future(self._generate_receipt(result)),
            asyncio.ensure_future(self._refresh(request.student_identifier)),
        )
        return SubmissionOutcome(
            state=self.current,
            request=request,
            result=result,
            receipt=receipt,
            snapshot=snapshot,
            warnings=list(self.warnings),
        )

    def _fail(self, request: PaymentRequest, error: ServiceError) -> SubmissionOutcome:
        self.error = error
        self._transition(SubmissionState.FAILED)
        logger.warning("Payment for %s failed (%s): %s", request.student_identifier, error.kind, error.message)
        self.notifications.error(error.message or GENERIC_FAILURE, kind=error.kind, background=self._detached)
        return SubmissionOutcome(state=self.current, request=request, error=error)

    def _warn(self, error: ServiceError, message: str) -> None:
        self.warnings.append(error)
        logger.warning("%s: %s", message, error.message)
        self.notifications.warning(f"{message}: {error.message}", kind=error.kind, background=self._detached)

    async def _generate_receipt(self, result: PaymentResult) -> Optional[ReceiptHandle]:
        try:
            handle = await self._receipts.generate(result.transaction_reference, result.receipt_no)
        except ReceiptGenerationFailed as e:
            self._warn(e, "Payment succeeded, but could not generate receipt")
            return None
        except Exception as e:
            logger.exception("Unexpected error generating receipt %s", result.transaction_reference)
            self._warn(ReceiptGenerationFailed(repr(e)), "Payment succeeded, but could not generate receipt")
            return None
        self._transition(SubmissionState.RECEIPT_READY)
        if self._detached:
            # no viewer left to own it
            self._receipts.release(handle)
            self.notifications.success(
                f"Receipt {handle.filename} is available for reprint",
                background=True,
            )
        return handle

    async def _refresh(self, student_identifier: str) -> Optional[BalanceSnapshot]:
        try:
            return await self._reconciliation.refresh(student_identifier)
        except RefreshFailed as e:
            self._warn(e, "Payment succeeded, but could not refresh view")
        except Exception as e:
            logger.exception("Unexpected error refreshing balances for %s", student_identifier)
            self._warn(RefreshFailed(repr(e)), "Payment succeeded, but could not refresh view")
        return None
