from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    ledger_api_base_url: str = Field("http://localhost:8000/api/v1", alias="LEDGER_API_BASE_URL")
    ledger_api_token: Optional[str] = Field(None, alias="LEDGER_API_TOKEN")
    ledger_timeout_seconds: float = Field(30.0, alias="LEDGER_TIMEOUT_SECONDS")

    receipt_spool_dir: Optional[str] = Field(None, alias="RECEIPT_SPOOL_DIR")
    receipt_download_dir: str = Field("downloads", alias="RECEIPT_DOWNLOAD_DIR")
    receipt_print_command: str = Field("lp", alias="RECEIPT_PRINT_COMMAND")

    enforce_term_sequence: bool = Field(False, alias="ENFORCE_TERM_SEQUENCE")
    enforce_book_fee_first: bool = Field(False, alias="ENFORCE_BOOK_FEE_FIRST")
    max_payment_amount: Decimal = Field(Decimal("1000000"), alias="MAX_PAYMENT_AMOUNT")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True


settings = Settings()
