from __future__ import annotations

import csv
import io
import logging
import re
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel

from backend.billing_calendar import BILLING_PERIODS, INVOICE_DAYS

logger = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 10
HEADER_HINTS = ("contract", "customer", "period")
DEFAULT_PERIOD = "MB"
DEFAULT_INVOICE_DAY = 15

# Keywords are matched as substrings of lowercased header cells. The fallback
# index is used when no header matches.
COLUMN_KEYWORDS: dict[str, tuple[list[str], int]] = {
    "contract": (["contract"], 1),
    "customer": (["customer", "client", "machine"], 2),
    "period": (["period"], 3),
    "day": (["day", "inv"], 4),
    "fee": (["fee", "rental", "amount", "rate"], -1),
    "q1": (["jan", "q1", "feb", "mar"], 5),
    "q2": (["apr", "q2", "may", "jun", "june"], 6),
    "q3": (["jul", "q3", "aug", "sep"], 7),
    "q4": (["oct", "q4", "nov", "dec"], 8),
}

QUARTER_HINTS = (
    ("JAN-APR-JUL-OCT", ("JAN", "APR", "JUL", "OCT")),
    ("FEB-MAY-AUG-NOV", ("FEB", "MAY", "AUG", "NOV")),
    ("MAR-JUN-SEP-DEC", ("MAR", "JUN", "SEP", "DEC")),
)

CUSTOMER_SEPARATOR = re.compile(r"^(.+?)\s*[-–]\s*(.+)$")


class ParsedContract(BaseModel):
    row_number: int
    contract_number: str
    customer: str
    machine_site: str
    billing_period: str
    invoice_day: int
    schedule: str | None = None
    rental_fee: Decimal = Decimal("0")
    is_valid: bool = True
    errors: list[str] = []


class ContractParseResult(BaseModel):
    header_row: int
    rows: list[ParsedContract]
    total_count: int
    valid_count: int


def parse_contracts_csv(contents: str) -> ContractParseResult:
    rows = list(csv.reader(io.StringIO(contents)))
    if not rows:
        raise ValueError("CSV is empty.")

    header_index = find_header_row(rows)
    headers = [clean_text(cell).lower() for cell in rows[header_index]]
    columns = {
        name: resolve_column(headers, keywords, fallback)
        for name, (keywords, fallback) in COLUMN_KEYWORDS.items()
    }

    parsed: list[ParsedContract] = []
    for index in range(header_index + 1, len(rows)):
        row = rows[index]
        if is_blank_row(row):
            continue
        contract = parse_row(row, index, columns)
        if contract is not None:
            parsed.append(contract)

    valid_count = sum(1 for contract in parsed if contract.is_valid)
    logger.info(
        "Parsed %s contracts from CSV (%s valid, %s with issues).",
        len(parsed),
        valid_count,
        len(parsed) - valid_count,
    )
    return ContractParseResult(
        header_row=header_index,
        rows=parsed,
        total_count=len(parsed),
        valid_count=valid_count,
    )


def find_header_row(rows: list[list[str]]) -> int:
    for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        for cell in row:
            lowered = clean_text(cell).lower()
            if any(hint in lowered for hint in HEADER_HINTS):
                return index
    return 0


def resolve_column(headers: list[str], keywords: list[str], fallback: int) -> int:
    for index, header in enumerate(headers):
        if header and any(keyword in header for keyword in keywords):
            return index
    return fallback


def parse_row(row: list[str], index: int, columns: dict[str, int]) -> ParsedContract | None:
    errors: list[str] = []

    contract_number = cell_value(row, columns["contract"])
    customer_machine = cell_value(row, columns["customer"])
    if not contract_number and not customer_machine:
        return None

    customer, machine_site = split_customer_machine(customer_machine)

    period_raw = cell_value(row, columns["period"]).upper()
    billing_period = period_raw
    if billing_period not in BILLING_PERIODS:
        if period_raw:
            errors.append(f'Unknown period "{period_raw}", defaulting to {DEFAULT_PERIOD}')
        billing_period = DEFAULT_PERIOD

    day_raw = cell_value(row, columns["day"])
    invoice_day = parse_invoice_day(day_raw)
    if invoice_day is None:
        errors.append(f'Invalid invoice day "{day_raw}", defaulting to {DEFAULT_INVOICE_DAY}th')
        invoice_day = DEFAULT_INVOICE_DAY

    schedule = detect_quarterly_schedule(
        [cell_value(row, columns[name]).upper() for name in ("q1", "q2", "q3", "q4")]
    )
    if billing_period == "MB":
        schedule = None

    rental_fee = parse_fee(cell_value(row, columns["fee"]))

    if not contract_number:
        errors.append("Missing contract number")
    if not customer_machine:
        errors.append("Missing customer name")

    return ParsedContract(
        row_number=index,
        contract_number=contract_number or f"ROW-{index}",
        customer=customer or "Unknown Customer",
        machine_site=machine_site or customer_machine or "N/A",
        billing_period=billing_period,
        invoice_day=invoice_day,
        schedule=schedule,
        rental_fee=rental_fee,
        is_valid=not errors,
        errors=errors,
    )


def split_customer_machine(value: str) -> tuple[str, str]:
    match = CUSTOMER_SEPARATOR.match(value)
    if not match:
        return value, ""
    return match.group(1).strip(), match.group(2).strip()


def parse_invoice_day(value: str) -> int | None:
    digits = re.sub(r"[^0-9]", "", value or "")
    if not digits:
        return None
    day = int(digits)
    if day in INVOICE_DAYS:
        return day
    # Snap to the nearest supported invoice day.
    if 1 <= day <= 10:
        return 5
    if 11 <= day <= 20:
        return 15
    return 25


def detect_quarterly_schedule(quarter_values: list[str]) -> str | None:
    if not any(quarter_values):
        return None
    for schedule, hints in QUARTER_HINTS:
        if any(hint in value for hint, value in zip(hints, quarter_values)):
            return schedule
    return None


def parse_fee(value: str) -> Decimal:
    cleaned = re.sub(r"[^0-9.\-]", "", value or "")
    if not cleaned:
        return Decimal("0")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")


def cell_value(row: list[str], index: int) -> str:
    if index < 0 or index >= len(row):
        return ""
    return clean_text(row[index])


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_row(row: list[str]) -> bool:
    return all(not clean_text(value) for value in row)
