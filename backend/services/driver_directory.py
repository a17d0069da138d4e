# services/driver_directory.py
# ============================================================================
# DRIVER TOP-UP BOT — DRIVER DIRECTORY
# ============================================================================
# Lookup and balance update of driver records, keyed by canonical identity.
#
# Implementations:
#   - InMemoryDriverDirectory      tests and local runs
#   - GoogleSheetsDriverDirectory  the operator's "Data Driver" spreadsheet
#
# Serialization of balance read-modify-write per identity is the caller's
# job (the orchestrator holds the identity lock); timeouts are applied by
# the caller as well.
#
# pip install google-api-python-client google-auth
# ============================================================================

import asyncio
import os
import re
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

import structlog

from schemas.errors import DirectoryError, InvalidIdentity
from schemas.topup import DriverRecord
from services.formatting import format_timestamp
from services.validation import normalize_identity

logger = structlog.get_logger().bind(component="driver_directory")


# =============================================================================
# INTERFACE
# =============================================================================

class IDriverDirectory(ABC):
    """Driver directory contract."""

    @abstractmethod
    async def lookup(self, identity: str) -> Optional[DriverRecord]:
        """Return the driver with this identity, or None."""
        pass

    @abstractmethod
    async def update_balance(self, identity: str, new_balance: int) -> None:
        """
        Overwrite the driver's balance.

        Raises:
            DirectoryError: driver missing or the write did not land
        """
        pass

    @abstractmethod
    async def list_drivers(self) -> List[DriverRecord]:
        pass


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryDriverDirectory(IDriverDirectory):
    """
    Dict-backed directory.

    ``fail_updates`` makes the next N update_balance() calls raise
    DirectoryError; ``lookup_delay`` / ``update_delay`` stall calls so timeout
    handling can be exercised.
    """

    def __init__(self, drivers: Optional[Iterable[DriverRecord]] = None):
        self._drivers: Dict[str, DriverRecord] = {}
        self._lock = asyncio.Lock()
        self.fail_updates = 0
        self.lookup_delay = 0.0
        self.update_delay = 0.0
        self.update_calls = 0
        for driver in drivers or []:
            self._drivers[driver.identity] = driver

    def add(self, driver: DriverRecord) -> None:
        self._drivers[driver.identity] = driver

    async def lookup(self, identity: str) -> Optional[DriverRecord]:
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        async with self._lock:
            driver = self._drivers.get(identity)
            return driver.model_copy() if driver else None

    async def update_balance(self, identity: str, new_balance: int) -> None:
        self.update_calls += 1
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        if self.fail_updates > 0:
            self.fail_updates -= 1
            raise DirectoryError(f"simulated write failure for {identity}")

        async with self._lock:
            driver = self._drivers.get(identity)
            if driver is None:
                raise DirectoryError(f"driver {identity} not found")
            self._drivers[identity] = driver.model_copy(update={
                "balance": new_balance,
                "last_update": format_timestamp(),
            })

    async def list_drivers(self) -> List[DriverRecord]:
        async with self._lock:
            return [d.model_copy() for d in self._drivers.values()]


# =============================================================================
# GOOGLE SHEETS
# =============================================================================

# Header names (lower-cased) that map onto DriverRecord fields
_KNOWN_COLUMNS = {"id", "name", "email", "status", "phone", "balance", "lastupdate", "rating"}


def _column_letter(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


_CURRENCY_PREFIX = re.compile(r"^rp\.?\s*", re.IGNORECASE)
_DOT_GROUPED = re.compile(r"-?\d{1,3}(\.\d{3})+")
_COMMA_GROUPED = re.compile(r"-?\d{1,3}(,\d{3})+(\.\d+)?")


def _to_int(value: Any) -> int:
    """
    Whole rupiah from a sheet cell. Fractions are truncated toward zero;
    "Rp 150.000" cells use id-ID grouping.

    Raises:
        ValueError: the cell holds no number
    """
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, int):
        return value

    text = _CURRENCY_PREFIX.sub("", str(value).strip()).replace(" ", "")
    if _DOT_GROUPED.fullmatch(text):
        text = text.replace(".", "")
    elif _COMMA_GROUPED.fullmatch(text):
        text = text.replace(",", "")

    try:
        amount = Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"not a number: {value!r}")
    return int(amount)


class GoogleSheetsDriverDirectory(IDriverDirectory):
    """
    Driver directory stored in a Google Sheet.

    Row 1 is the header row; columns are located by (case-insensitive) header
    name, so column order in the sheet does not matter. Phone cells are
    compared in canonical 62... form.
    """

    SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

    def __init__(
        self,
        spreadsheet_id: Optional[str] = None,
        credentials_path: Optional[str] = None,
        sheet_range: str = "Data Driver!A:M",
        service: Any = None,
    ):
        self.spreadsheet_id = spreadsheet_id or os.getenv("GOOGLE_SHEETS_SPREADSHEET_ID")
        self.credentials_path = credentials_path or os.getenv(
            "GOOGLE_SHEETS_CREDENTIALS_PATH",
            "credentials/google_service_account.json",
        )
        self.sheet_range = sheet_range
        self.sheet_name = sheet_range.split("!", 1)[0]
        self._service = service
        self._initialized = service is not None

    async def initialize(self) -> bool:
        """Build the Sheets API client from the service account file."""
        if self._initialized:
            return True

        if not self.spreadsheet_id:
            logger.warning("sheets_disabled", reason="GOOGLE_SHEETS_SPREADSHEET_ID not set")
            return False

        if not os.path.exists(self.credentials_path):
            logger.warning("sheets_credentials_missing", path=self.credentials_path)
            return False

        from google.oauth2 import service_account
        from googleapiclient.discovery import build

        credentials = service_account.Credentials.from_service_account_file(
            self.credentials_path,
            scopes=self.SCOPES,
        )
        self._service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        self._initialized = True
        logger.info("sheets_initialized", spreadsheet_id=self.spreadsheet_id, range=self.sheet_range)
        return True

    async def _run(self, fn):
        if not self._initialized and not await self.initialize():
            raise DirectoryError("Google Sheets directory is not configured")
        try:
            return await asyncio.get_running_loop().run_in_executor(None, fn)
        except DirectoryError:
            raise
        except Exception as e:
            logger.error("sheets_call_failed", error=str(e))
            raise DirectoryError(f"sheets call failed: {e}") from e

    async def _read_rows(self) -> List[List[Any]]:
        def fetch():
            return self._service.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id,
                range=self.sheet_range,
                valueRenderOption="UNFORMATTED_VALUE",
            ).execute()

        result = await self._run(fetch)
        return result.get("values", [])

    @staticmethod
    def _headers(rows: List[List[Any]]) -> List[str]:
        if not rows:
            return []
        return [str(h).strip().lower() for h in rows[0]]

    @staticmethod
    def _row_identity(headers: List[str], row: List[Any]) -> Optional[str]:
        if "phone" not in headers:
            return None
        index = headers.index("phone")
        if index >= len(row) or row[index] == "":
            return None
        try:
            return normalize_identity(row[index])
        except InvalidIdentity:
            return None

    @classmethod
    def _row_to_record(cls, headers: List[str], row: List[Any]) -> Optional[DriverRecord]:
        """
        Raises:
            DirectoryError: the balance cell holds no readable number
        """
        identity = cls._row_identity(headers, row)
        if identity is None:
            return None
        cells = {headers[i]: row[i] for i in range(min(len(headers), len(row))) if row[i] != ""}

        try:
            balance = _to_int(cells.get("balance", 0))
        except ValueError as e:
            raise DirectoryError(f"unreadable balance for {identity}: {e}") from e
        try:
            rating = _to_int(cells["rating"]) if "rating" in cells else None
        except ValueError:
            rating = None

        extra = {k: v for k, v in cells.items() if k not in _KNOWN_COLUMNS}
        return DriverRecord(
            identity=identity,
            name=str(cells.get("name", "Driver")),
            email=str(cells.get("email", "")),
            balance=balance,
            driver_id=str(cells["id"]) if "id" in cells else None,
            status=str(cells["status"]) if "status" in cells else None,
            rating=rating,
            last_update=str(cells["lastupdate"]) if "lastupdate" in cells else None,
            extra=extra,
        )

    async def lookup(self, identity: str) -> Optional[DriverRecord]:
        rows = await self._read_rows()
        headers = self._headers(rows)
        for row in rows[1:]:
            if self._row_identity(headers, row) == identity:
                return self._row_to_record(headers, row)

        logger.info("driver_not_found", identity=identity)
        return None

    async def update_balance(self, identity: str, new_balance: int) -> None:
        rows = await self._read_rows()
        headers = self._headers(rows)
        if "balance" not in headers:
            raise DirectoryError("sheet has no 'balance' column")

        for offset, row in enumerate(rows[1:], start=2):
            if self._row_identity(headers, row) != identity:
                continue

            data = [{
                "range": f"{self.sheet_name}!{_column_letter(headers.index('balance'))}{offset}",
                "values": [[new_balance]],
            }]
            if "lastupdate" in headers:
                data.append({
                    "range": f"{self.sheet_name}!{_column_letter(headers.index('lastupdate'))}{offset}",
                    "values": [[format_timestamp()]],
                })

            def write():
                return self._service.spreadsheets().values().batchUpdate(
                    spreadsheetId=self.spreadsheet_id,
                    body={"valueInputOption": "USER_ENTERED", "data": data},
                ).execute()

            await self._run(write)
            logger.info("sheet_balance_updated", identity=identity, row=offset, new_balance=new_balance)
            return

        raise DirectoryError(f"driver {identity} not found in sheet")

    async def list_drivers(self) -> List[DriverRecord]:
        rows = await self._read_rows()
        headers = self._headers(rows)
        records = []
        for row in rows[1:]:
            try:
                record = self._row_to_record(headers, row)
            except DirectoryError as e:
                logger.warning("sheet_row_skipped", error=str(e))
                continue
            if record is not None:
                records.append(record)
        return records


__all__ = [
    "IDriverDirectory",
    "InMemoryDriverDirectory",
    "GoogleSheetsDriverDirectory",
]
