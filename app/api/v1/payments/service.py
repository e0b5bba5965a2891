"""Payment service: one workflow per open payment dialog, plus request helpers for the router."""

import logging
from typing import List, Optional

from app.core.enums import PaymentMethod, PaymentPurpose, StudentIdentifierKind
from app.core.exceptions import ValidationError
from app.core.observable import Observable

from .builder import PaymentRequestBuilder, PaymentRules
from .client import LedgerClient
from .coordinator import PaymentSubmissionCoordinator, SubmissionOutcome
from .notifications import NotificationCenter
from .receipts import Printer, ReceiptLifecycleManager
from .reconciliation import ReconciliationRefresh, StudentStateCache
from .schemas import (
    BalanceSnapshot,
    FeeCategory,
    FeeCategoryBalance,
    PaymentRequest,
    PaymentSelectionPayload,
)
from .selection import PaymentSelection, SelectionModel

logger = logging.getLogger(__name__)


def selection_from_payload(payload: PaymentSelectionPayload) -> PaymentSelection:
    """Apply the UI's choices through the same transitions the dialog uses."""
    model = SelectionModel()
    for category in payload.categories:
        model.toggle_category(category, True)
    if payload.custom_amount is not None:
        if payload.categories:
            raise ValidationError(["Choose fee categories or a custom amount, not both"])
        model.set_custom_amount(payload.custom_amount, payload.custom_purpose_name)
    return model.current


def build_request_from_payload(
    student_identifier: str,
    payload: PaymentSelectionPayload,
    balances: List[FeeCategoryBalance],
    rules: Optional[PaymentRules] = None,
) -> PaymentRequest:
    builder = PaymentRequestBuilder(rules or PaymentRules.from_settings())
    return builder.build(
        selection_from_payload(payload),
        balances,
        payload.payment_method,
        student_identifier,
        identifier_kind=payload.identifier_kind,
        remarks=payload.remarks,
    )


class PaymentWorkflow:
    """Everything one payment dialog needs, exposed as observables for rendering.

    Balances are never edited locally: they come from ``load`` and from the
    reconciliation that follows a successful payment.
    """

    def __init__(
        self,
        client: LedgerClient,
        student_identifier: str,
        *,
        identifier_kind: StudentIdentifierKind = StudentIdentifierKind.ADMISSION,
        rules: Optional[PaymentRules] = None,
        printer: Optional[Printer] = None,
        cache: Optional[StudentStateCache] = None,
        notifications: Optional[NotificationCenter] = None,
    ) -> None:
        self.student_identifier = student_identifier
        self.identifier_kind = identifier_kind
        self.notifications = notifications or NotificationCenter()
        self.selection = SelectionModel()
        self.builder = PaymentRequestBuilder(rules or PaymentRules.from_settings())
        self.reconciliation = ReconciliationRefresh(client, cache)
        self.receipts = ReceiptLifecycleManager(client, printer=printer)
        self.coordinator = PaymentSubmissionCoordinator(
            client, self.receipts, self.reconciliation, self.notifications
        )
        cached = self.reconciliation.cache.get(student_identifier)
        self.balances: Observable[List[FeeCategoryBalance]] = Observable(
            list(cached.balances) if cached else []
        )
        self._unsubscribe = self.reconciliation.cache.observe(student_identifier).subscribe(
            self._on_snapshot
        )

    def _on_snapshot(self, snapshot: Optional[BalanceSnapshot]) -> None:
        self.balances.set(list(snapshot.balances) if snapshot else [])

    async def load(self) -> BalanceSnapshot:
        return await self.reconciliation.load(self.student_identifier)

    def toggle_category(self, category: FeeCategory, included: bool) -> PaymentSelection:
        return self.selection.toggle_category(category, included)

    def set_custom_amount(self, amount, purpose_name: Optional[str] = None) -> PaymentSelection:
        return self.selection.set_custom_amount(amount, purpose_name)

    def build_request(
        self,
        payment_method: PaymentMethod,
        *,
        custom_purpose: PaymentPurpose = PaymentPurpose.OTHER,
        remarks: Optional[str] = None,
    ) -> PaymentRequest:
        """A new request from the selection and balances as they are right now."""
        return self.builder.build(
            self.selection.current,
            self.balances.value,
            payment_method,
            self.student_identifier,
            identifier_kind=self.identifier_kind,
            custom_purpose=custom_purpose,
            remarks=remarks,
        )

    async def submit(
        self,
        payment_method: PaymentMethod,
        *,
        custom_purpose: PaymentPurpose = PaymentPurpose.OTHER,
        remarks: Optional[str] = None,
    ) -> SubmissionOutcome:
        """Build a fresh request and submit it. ValidationError leaves the network untouched."""
        request = self.build_request(payment_method, custom_purpose=custom_purpose, remarks=remarks)
        outcome = await self.coordinator.submit(request)
        if outcome.succeeded:
            self.selection.clear()
        return outcome

    def close(self) -> None:
        """Dialog closed: release receipts, keep any in-flight payment running in the background."""
        self.coordinator.detach()
        self.receipts.close()
        self._unsubscribe()
