"""Payments router: balances, request preview, fee collection, receipt reprint."""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from app.core.exceptions import ServiceError

from .client import LedgerClient, get_ledger_client
from .coordinator import PaymentSubmissionCoordinator
from .receipts import ReceiptLifecycleManager
from .reconciliation import ReconciliationRefresh
from .schemas import (
    BalanceSnapshot,
    PaymentOutcomeResponse,
    PaymentRequest,
    PaymentSelectionPayload,
    ReceiptInfo,
)
from . import service

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.get(
    "/{student_identifier}/balances",
    response_model=BalanceSnapshot,
)
async def get_balances(
    student_identifier: str,
    client: LedgerClient = Depends(get_ledger_client),
) -> BalanceSnapshot:
    try:
        return await client.fetch_balances(student_identifier)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_identifier}/preview",
    response_model=PaymentRequest,
)
async def preview_payment(
    student_identifier: str,
    payload: PaymentSelectionPayload,
    client: LedgerClient = Depends(get_ledger_client),
) -> PaymentRequest:
    try:
        snapshot = await client.fetch_balances(student_identifier)
        return service.build_request_from_payload(student_identifier, payload, snapshot.balances)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_identifier}/pay",
    response_model=PaymentOutcomeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def collect_payment(
    student_identifier: str,
    payload: PaymentSelectionPayload,
    client: LedgerClient = Depends(get_ledger_client),
) -> PaymentOutcomeResponse:
    try:
        snapshot = await client.fetch_balances(student_identifier)
        request = service.build_request_from_payload(student_identifier, payload, snapshot.balances)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    receipts = ReceiptLifecycleManager(client)
    coordinator = PaymentSubmissionCoordinator(client, receipts, ReconciliationRefresh(client))
    try:
        outcome = await coordinator.submit(request)
        if outcome.error is not None:
            raise HTTPException(status_code=outcome.error.status_code, detail=outcome.error.message)
        receipt = None
        if outcome.receipt is not None:
            handle = outcome.receipt
            receipt = ReceiptInfo(
                transaction_reference=handle.transaction_reference,
                receipt_no=handle.receipt_no,
                filename=handle.filename,
                content_type=handle.content_type,
                size=handle.size,
                generated_at=handle.generated_at,
            )
        return PaymentOutcomeResponse(
            state=outcome.state.value,
            transaction_reference=outcome.result.transaction_reference if outcome.result else None,
            request=request,
            receipt=receipt,
            snapshot=outcome.snapshot,
            warnings=[w.message for w in outcome.warnings],
        )
    finally:
        # the artifact is served again through the reprint endpoint
        receipts.close()


@router.get(
    "/receipts/{transaction_reference}",
    response_class=FileResponse,
)
async def reprint_receipt(
    transaction_reference: str,
    client: LedgerClient = Depends(get_ledger_client),
) -> FileResponse:
    receipts = ReceiptLifecycleManager(client)
    try:
        handle = await receipts.regenerate(transaction_reference)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    try:
        return FileResponse(
            handle.path,
            media_type=handle.content_type,
            filename=handle.filename,
            background=BackgroundTask(receipts.release, handle),
        )
    except Exception:
        receipts.release(handle)
        raise

