"""HTTP client for the external ledger, balance and receipt services."""

import logging
from urllib.parse import quote
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.enums import StudentIdentifierKind
from app.core.exceptions import (
    ReceiptGenerationFailed,
    RefreshFailed,
    SubmissionRejected,
    SubmissionUnknownOutcome,
)

from .schemas import BalanceSnapshot, PaymentRequest, PaymentResult, RawFeeTotal
from .balances import calculate_balances

logger = logging.getLogger(__name__)

PAY_PATHS = {
    StudentIdentifierKind.ADMISSION: "pay-by-student/{identifier}",
    StudentIdentifierKind.RESERVATION: "pay-by-reservation/{identifier}",
    StudentIdentifierKind.ENROLLMENT: "pay-by-enrollment/{identifier}",
}

# gateway failures say nothing about whether the ledger applied the payment
AMBIGUOUS_STATUSES = {502, 503, 504}

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}


def _segment(value: str) -> str:
    """Percent-encode one URL path segment, slashes included."""
    return quote(str(value), safe="")


def extract_error_message(response: httpx.Response, fallback: str) -> str:
    """Best human-readable message from an error response, as the server phrased it."""
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("detail")
            if isinstance(detail, str) and detail:
                return detail
            if isinstance(detail, list) and detail:
                first = detail[0]
                if isinstance(first, dict):
                    msg = first.get("msg") or first.get("message")
                    if msg:
                        return str(msg)
            message = body.get("message")
            if isinstance(message, str) and message:
                return message
    text = response.text.strip()
    return text or fallback


def _context(body: Dict[str, Any]) -> Dict[str, Any]:
    data = body.get("data")
    if isinstance(data, dict) and isinstance(data.get("context"), dict):
        return data["context"]
    if isinstance(body.get("context"), dict):
        return body["context"]
    return {}


def parse_snapshot(student_identifier: str, body: Dict[str, Any]) -> BalanceSnapshot:
    """Build a snapshot from a balance service body (optionally wrapped in ``data``)."""
    if not isinstance(body, dict):
        raise ValueError("balance response must be a JSON object")
    payload = body.get("data") if isinstance(body.get("data"), dict) and "balances" in body["data"] else body
    rows = [RawFeeTotal.model_validate(r) for r in payload.get("balances") or []]
    return BalanceSnapshot(
        student_identifier=str(payload.get("student_identifier") or student_identifier),
        balances=calculate_balances(rows),
        admission_status=payload.get("admission_status"),
        reservation_status=payload.get("reservation_status"),
        fetched_at=datetime.now(timezone.utc),
    )


class LedgerClient:
    """Thin async wrapper around the ledger API. One instance per app or per dialog."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    @classmethod
    def from_settings(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "LedgerClient":
        headers = {}
        if settings.ledger_api_token:
            headers["Authorization"] = f"Bearer {settings.ledger_api_token}"
        base_url = settings.ledger_api_base_url.rstrip("/") + "/"
        http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=settings.ledger_timeout_seconds,
            transport=transport,
        )
        return cls(http)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- Ledger ---
    async def pay(self, request: PaymentRequest) -> PaymentResult:
        """Submit every line of ``request`` in one call. Never retried here."""
        path = PAY_PATHS[request.identifier_kind].format(identifier=_segment(request.student_identifier))
        try:
            response = await self._http.post(path, json=request.to_payload())
        except httpx.TimeoutException as e:
            raise SubmissionUnknownOutcome(
                "Payment request timed out. Verify the student's ledger before trying again.",
                cause=repr(e),
            )
        except httpx.TransportError as e:
            raise SubmissionUnknownOutcome(
                "Network error occurred while processing payment. Verify the student's ledger before trying again.",
                cause=repr(e),
            )

        if response.status_code in AMBIGUOUS_STATUSES:
            raise SubmissionUnknownOutcome(
                extract_error_message(response, f"Payment gateway error {response.status_code}")
                + ". Verify the student's ledger before trying again.",
                cause=f"HTTP {response.status_code}",
            )
        if response.is_error:
            raise SubmissionRejected(
                extract_error_message(response, f"Payment failed with status {response.status_code}"),
                status_code=response.status_code if response.status_code < 500 else 422,
            )

        try:
            body = response.json()
        except ValueError:
            raise SubmissionUnknownOutcome(
                "Payment was acknowledged with an unreadable response. Verify the student's ledger.",
                cause="invalid JSON",
            )
        if not isinstance(body, dict):
            body = {}
        ctx = _context(body)
        reference = ctx.get("income_id") or body.get("transaction_reference") or ctx.get("transaction_reference")
        if not reference:
            raise SubmissionUnknownOutcome(
                "Payment successful but no transaction reference was returned. Verify the student's ledger.",
                cause="missing reference",
            )
        snapshot = None
        if isinstance(body.get("balances"), list):
            try:
                snapshot = parse_snapshot(request.student_identifier, body)
            except ValueError:
                # the payment itself was accepted; a refresh will follow
                logger.warning("Ignoring malformed balance snapshot in payment response for %s", request.student_identifier)
        receipt_no = ctx.get("receipt_no") or body.get("receipt_no")
        return PaymentResult(
            transaction_reference=str(reference),
            receipt_no=str(receipt_no) if receipt_no else None,
            snapshot=snapshot,
            raw=body,
        )

    # --- Balances ---
    async def fetch_balances(self, student_identifier: str) -> BalanceSnapshot:
        """Always a fresh round trip: cache and dedupe layers are told not to answer."""
        try:
            response = await self._http.get(
                f"balances/{_segment(student_identifier)}",
                headers=NO_CACHE_HEADERS,
                params={"_": datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")},
            )
        except httpx.HTTPError as e:
            raise RefreshFailed(f"Could not load balances for {student_identifier}: {e!r}")
        if response.is_error:
            raise RefreshFailed(
                extract_error_message(response, f"Balance query failed with status {response.status_code}")
            )
        try:
            return parse_snapshot(student_identifier, response.json())
        except ValueError as e:
            raise RefreshFailed(f"Malformed balance data for {student_identifier}: {e}")

    # --- Receipts ---
    async def generate_receipt(self, transaction_reference: str) -> Tuple[bytes, str]:
        return await self._receipt_call(
            "POST", "receipts/generate", json={"transaction_reference": transaction_reference}
        )

    async def fetch_receipt(self, transaction_reference: str) -> Tuple[bytes, str]:
        return await self._receipt_call("GET", f"receipts/{_segment(transaction_reference)}")

    async def _receipt_call(self, method: str, path: str, **kwargs) -> Tuple[bytes, str]:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ReceiptGenerationFailed(
                f"Network error occurred while generating receipt: {e!r}"
            )
        if response.is_error:
            raise ReceiptGenerationFailed(
                extract_error_message(response, f"Receipt generation failed with status {response.status_code}")
            )
        content = response.content
        if not content:
            raise ReceiptGenerationFailed("Invalid PDF received from server")
        content_type = response.headers.get("content-type", "")
        if "pdf" not in content_type.lower():
            content_type = "application/pdf"
        return content, content_type


async def get_ledger_client() -> AsyncIterator[LedgerClient]:
    async with LedgerClient.from_settings() as client:
        yield client
