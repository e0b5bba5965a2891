"""Receipt artifacts: generate, preview, download, print, and always release.

A ReceiptHandle owns a spooled temp file holding the PDF returned by the
receipt service. Whoever acquires a handle must release it on every exit
path; ``ReceiptLifecycleManager.open`` does that for the common
acquire-use-release sequence, and a newer handle always releases the one it
supersedes.
"""

import asyncio
import logging
import os
import re
import shlex
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Set

from fastapi import status

from app.core.config import settings
from app.core.exceptions import ReceiptGenerationFailed, ServiceError
from app.core.observable import Observable

from .client import LedgerClient

logger = logging.getLogger(__name__)

Printer = Callable[[Path], Awaitable[None]]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def receipt_filename(transaction_reference: str, receipt_no: Optional[str] = None) -> str:
    """Deterministic download name: Receipt_<receipt no or transaction reference>.pdf."""
    key = _UNSAFE_CHARS.sub("-", str(receipt_no or transaction_reference)).strip("-") or "receipt"
    return f"Receipt_{key}.pdf"


class ReceiptHandle:
    """Owned reference to one generated receipt. ``release`` is idempotent."""

    def __init__(
        self,
        transaction_reference: str,
        path: Path,
        content_type: str,
        size: int,
        receipt_no: Optional[str] = None,
        generated_at: Optional[datetime] = None,
        on_release: Optional[Callable[["ReceiptHandle"], None]] = None,
    ) -> None:
        self.transaction_reference = transaction_reference
        self.receipt_no = receipt_no
        self.content_type = content_type
        self.size = size
        self.generated_at = generated_at or datetime.now(timezone.utc)
        self._path = path
        self._on_release = on_release
        self._released = False

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"<ReceiptHandle {self.transaction_reference} {state}>"

    @property
    def released(self) -> bool:
        return self._released

    @property
    def filename(self) -> str:
        return receipt_filename(self.transaction_reference, self.receipt_no)

    @property
    def path(self) -> Path:
        self._ensure_live()
        return self._path

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def release(self) -> bool:
        """Reclaim the artifact. Returns True only for the call that actually released it."""
        if self._released:
            return False
        self._released = True
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        finally:
            if self._on_release is not None:
                self._on_release(self)
        logger.debug("Released receipt %s", self.transaction_reference)
        return True

    def _ensure_live(self) -> None:
        if self._released:
            raise ServiceError(
                f"Receipt {self.transaction_reference} has already been released",
                status.HTTP_410_GONE,
            )

    def __enter__(self) -> "ReceiptHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


@dataclass(frozen=True)
class ReceiptPreview:
    """Read-only view of a live handle. Does not transfer ownership."""

    transaction_reference: str
    receipt_no: Optional[str]
    filename: str
    content_type: str
    size: int
    path: Path

    def read(self) -> bytes:
        return self.path.read_bytes()


class CommandPrinter:
    """Sends a file to the system print spooler (``lp`` by default)."""

    def __init__(self, command: Optional[str] = None) -> None:
        self.command = shlex.split(command or settings.receipt_print_command)

    async def __call__(self, path: Path) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ServiceError(f"Could not start print command: {e}")
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ServiceError(
                f"Printing failed: {stderr.decode(errors='replace').strip() or proc.returncode}"
            )


class ReceiptLifecycleManager:
    def __init__(
        self,
        client: LedgerClient,
        *,
        printer: Optional[Printer] = None,
        spool_dir: Optional[str] = None,
        download_dir: Optional[str] = None,
    ) -> None:
        self._client = client
        self._printer = printer or CommandPrinter()
        self._spool_dir = spool_dir or settings.receipt_spool_dir
        self._download_dir = Path(download_dir or settings.receipt_download_dir)
        self._live: Set[ReceiptHandle] = set()
        self.current: Observable[Optional[ReceiptHandle]] = Observable(None)

    @property
    def live_handles(self) -> int:
        return len(self._live)

    # --- Acquire ---
    async def generate(self, transaction_reference: str, receipt_no: Optional[str] = None) -> ReceiptHandle:
        """Ask the receipt service for a new artifact for a just-settled payment."""
        content, content_type = await self._client.generate_receipt(transaction_reference)
        return self._acquire(transaction_reference, receipt_no, content, content_type)

    async def regenerate(self, transaction_reference: str, receipt_no: Optional[str] = None) -> ReceiptHandle:
        """Re-print the receipt of an already-settled transaction."""
        content, content_type = await self._client.fetch_receipt(transaction_reference)
        return self._acquire(transaction_reference, receipt_no, content, content_type)

    @asynccontextmanager
    async def open(
        self, transaction_reference: str, receipt_no: Optional[str] = None, *, regenerate: bool = True
    ) -> AsyncIterator[ReceiptHandle]:
        """Acquire a handle, hand it to the caller, release it however the block exits."""
        acquire = self.regenerate if regenerate else self.generate
        handle = await acquire(transaction_reference, receipt_no)
        try:
            yield handle
        finally:
            self.release(handle)

    def _acquire(
        self, transaction_reference: str, receipt_no: Optional[str], content: bytes, content_type: str
    ) -> ReceiptHandle:
        try:
            fd, name = tempfile.mkstemp(prefix="receipt-", suffix=".pdf", dir=self._spool_dir)
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
        except OSError as e:
            raise ReceiptGenerationFailed(f"Could not store receipt {transaction_reference}: {e}")

        handle = ReceiptHandle(
            transaction_reference=str(transaction_reference),
            path=Path(name),
            content_type=content_type,
            size=len(content),
            receipt_no=receipt_no,
            on_release=self._forget,
        )
        self._live.add(handle)
        previous = self.current.value
        self.current.set(handle)
        if previous is not None and previous is not handle:
            previous.release()
        logger.info("Receipt %s ready (%d bytes)", handle.transaction_reference, handle.size)
        return handle

    # --- Use ---
    def preview(self, handle: ReceiptHandle) -> ReceiptPreview:
        return ReceiptPreview(
            transaction_reference=handle.transaction_reference,
            receipt_no=handle.receipt_no,
            filename=handle.filename,
            content_type=handle.content_type,
            size=handle.size,
            path=handle.path,
        )

    def download(
        self, handle: ReceiptHandle, filename: Optional[str] = None, directory: Optional[str] = None
    ) -> Path:
        """Copy the artifact into the download directory and return the written path."""
        source = handle.path
        target_dir = Path(directory) if directory else self._download_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / (filename or handle.filename)
        shutil.copyfile(source, target)
        logger.info("Receipt %s downloaded to %s", handle.transaction_reference, target)
        return target

    async def print(self, handle: ReceiptHandle) -> None:
        await self._printer(handle.path)
        logger.info("Receipt %s sent to printer", handle.transaction_reference)

    # --- Release ---
    def release(self, handle: Optional[ReceiptHandle]) -> bool:
        if handle is None:
            return False
        return handle.release()

    def close(self) -> None:
        """Release whatever this manager still owns (dialog closed, navigation away)."""
        for handle in list(self._live):
            handle.release()

    def _forget(self, handle: ReceiptHandle) -> None:
        self._live.discard(handle)
        if self.current.value is handle:
            self.current.set(None)
