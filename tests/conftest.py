import json
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
from httpx import AsyncClient

from app.api.v1.payments.client import LedgerClient, get_ledger_client
from app.main import app


LEDGER_BASE_URL = "http://ledger.test/api/v1/"
PDF_BYTES = b"%PDF-1.4\n% fake receipt\n%%EOF"


class FakeLedger:
    """In-memory stand-in for the ledger, balance and receipt services."""

    def __init__(self) -> None:
        self.rows: Dict[str, List[dict]] = {
            "ADM-001": [
                {"category": "BOOK", "total": 2000, "paid": 2000},
                {"category": "TUITION_TERM_1", "total": 5000, "paid": 0},
                {"category": "TUITION_TERM_2", "total": 5000, "paid": 0},
            ],
        }
        self.requests: List[httpx.Request] = []
        self.next_income_id = 101
        self.pay_override: Optional[Callable[[httpx.Request], httpx.Response]] = None
        self.balances_override: Optional[Callable[[httpx.Request], httpx.Response]] = None
        self.receipt_override: Optional[Callable[[httpx.Request], httpx.Response]] = None

    # --- Inspection ---
    def calls(self, prefix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith("/api/v1/" + prefix)]

    # --- Handlers ---
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len("/api/v1/"):]
        if path.startswith("pay-by-"):
            if self.pay_override is not None:
                return self.pay_override(request)
            return self._pay(request, path.split("/", 1)[1])
        if path.startswith("balances/"):
            if self.balances_override is not None:
                return self.balances_override(request)
            student = path.split("/", 1)[1]
            if student not in self.rows:
                return httpx.Response(404, json={"detail": f"Student {student} not found"})
            return httpx.Response(
                200,
                json={
                    "student_identifier": student,
                    "admission_status": "CONFIRMED",
                    "balances": self.rows[student],
                },
            )
        if path.startswith("receipts/"):
            if self.receipt_override is not None:
                return self.receipt_override(request)
            return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})
        return httpx.Response(404, json={"detail": "Not found"})

    def _pay(self, request: httpx.Request, student: str) -> httpx.Response:
        body = json.loads(request.content)
        rows = self.rows.get(student)
        if rows is None:
            return httpx.Response(404, json={"detail": f"Student {student} not found"})
        for line in body["details"]:
            code = {
                "BOOK_FEE": "BOOK",
                "ADMISSION_FEE": "ADMISSION",
                "OTHER": "OTHER",
            }.get(line["purpose"])
            if code is None:
                prefix = "TUITION" if line["purpose"] == "TUITION_FEE" else "TRANSPORT"
                code = f"{prefix}_TERM_{line['term_number']}"
            for row in rows:
                if row["category"] == code:
                    row["paid"] = float(Decimal(str(row["paid"])) + Decimal(str(line["paid_amount"])))
        income_id = self.next_income_id
        self.next_income_id += 1
        return httpx.Response(
            200,
            json={"data": {"context": {"income_id": income_id, "receipt_no": f"R-{income_id}"}}},
        )


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
async def ledger_client(ledger: FakeLedger) -> AsyncGenerator[LedgerClient, None]:
    http = httpx.AsyncClient(base_url=LEDGER_BASE_URL, transport=httpx.MockTransport(ledger.handler))
    client = LedgerClient(http)
    yield client
    await client.aclose()


class FakePrinter:
    def __init__(self, fail: bool = False) -> None:
        self.printed: List[bytes] = []
        self.fail = fail

    async def __call__(self, path) -> None:
        if self.fail:
            raise RuntimeError("printer offline")
        self.printed.append(path.read_bytes())


@pytest.fixture()
def printer() -> FakePrinter:
    return FakePrinter()


@pytest.fixture()
async def client(ledger_client: LedgerClient) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, talking to the fake ledger."""

    async def override_get_ledger_client() -> AsyncGenerator[LedgerClient, None]:
        yield ledger_client

    app.dependency_overrides[get_ledger_client] = override_get_ledger_client
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
def pdf_bytes() -> bytes:
    return PDF_BYTES


@pytest.fixture()
def failing_printer() -> FakePrinter:
    return FakePrinter(fail=True)
