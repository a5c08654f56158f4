from __future__ import annotations

import logging
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, List, Mapping

logger = logging.getLogger(__name__)

LOOKAHEAD_MONTHS = 24
INVOICE_DAYS = (5, 15, 25)
ACTIVE_STATUS = "active"
CONTRACT_STATUSES = {"active", "expired", "pulled_out", "pending", "suspended", "archived"}

MONTH_NAMES = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")
MONTH_NUMBERS: Mapping[str, int] = {name: index + 1 for index, name in enumerate(MONTH_NAMES)}

ALL_MONTHS = frozenset(range(1, 13))
ODD_MONTHS = frozenset({1, 3, 5, 7, 9, 11})
EVEN_MONTHS = frozenset({2, 4, 6, 8, 10, 12})
EVEN_BIMONTHLY_SCHEDULE = "FEB-APR-JUN-AUG-OCT-DEC"

QUARTERLY_SCHEDULES: Mapping[str, frozenset[int]] = {
    "JAN-APR-JUL-OCT": frozenset({1, 4, 7, 10}),
    "FEB-MAY-AUG-NOV": frozenset({2, 5, 8, 11}),
    "MAR-JUN-SEP-DEC": frozenset({3, 6, 9, 12}),
}
HALF_YEARLY_SCHEDULES: Mapping[str, frozenset[int]] = {
    "JAN-JUL": frozenset({1, 7}),
    "FEB-AUG": frozenset({2, 8}),
    "MAR-SEP": frozenset({3, 9}),
    "APR-OCT": frozenset({4, 10}),
    "MAY-NOV": frozenset({5, 11}),
    "JUN-DEC": frozenset({6, 12}),
}
DEFAULT_QUARTERLY_MONTHS = QUARTERLY_SCHEDULES["FEB-MAY-AUG-NOV"]
DEFAULT_HALF_YEARLY_MONTHS = HALF_YEARLY_SCHEDULES["JAN-JUL"]
DEFAULT_YEARLY_MONTHS = frozenset({1})

BILLING_PERIOD_LABELS: Mapping[str, str] = {
    "MB": "Monthly Billing",
    "QB": "Quarterly Billing",
    "MBQX": "Monthly + Quarterly",
    "QBYX": "Quarterly + Yearly",
    "YB": "Yearly Billing",
    "HY": "Half-Yearly",
    "2MBX": "Bi-Monthly",
    "MBYX": "Monthly + Yearly",
}
BILLING_PERIODS = frozenset(BILLING_PERIOD_LABELS)


@dataclass(frozen=True)
class BillingContract:
    billing_period: str
    invoice_day: int
    start_date: date | str | None = None
    schedule: str | None = None
    end_date: date | str | None = None
    pullout_date: date | str | None = None
    status: str = ACTIVE_STATUS
    contract_number: str | None = None
    customer: str | None = None


@dataclass(frozen=True)
class DueContracts:
    day5: List[BillingContract] = field(default_factory=list)
    day15: List[BillingContract] = field(default_factory=list)
    day25: List[BillingContract] = field(default_factory=list)
    all: List[BillingContract] = field(default_factory=list)


def extract_months(schedule: str | None) -> List[int]:
    """Return the month numbers named in a hyphen-joined schedule string.

    Unknown tokens are dropped and the order of appearance is kept. This is
    the tolerance layer for legacy spreadsheet imports, where a contract's
    schedule may be stored in another period's format (for example a
    half-yearly contract carrying ``FEB-MAY-AUG-NOV``).
    """
    if not schedule:
        return []
    months: List[int] = []
    for token in schedule.split("-"):
        month = MONTH_NUMBERS.get(token.strip().upper())
        if month is not None:
            months.append(month)
    return months


def normalize_schedule(schedule: str | None) -> str | None:
    months = extract_months(schedule)
    if not months:
        return None
    return "-".join(MONTH_NAMES[month - 1] for month in months)


def get_billing_months(billing_period: str, schedule: str | None = None) -> frozenset[int]:
    period = _normalize_period(billing_period)
    key = _schedule_key(schedule)

    if period in {"MB", "MBQX", "MBYX"}:
        return ALL_MONTHS
    if period in {"QB", "QBYX"}:
        return QUARTERLY_SCHEDULES.get(key, DEFAULT_QUARTERLY_MONTHS)
    if period == "HY":
        if key in HALF_YEARLY_SCHEDULES:
            return HALF_YEARLY_SCHEDULES[key]
        extracted = extract_months(key)
        if extracted:
            first = extracted[0]
            return frozenset({first, first + 6 if first <= 6 else first - 6})
        return DEFAULT_HALF_YEARLY_MONTHS
    if period == "YB":
        if key in MONTH_NUMBERS:
            return frozenset({MONTH_NUMBERS[key]})
        extracted = extract_months(key)
        if extracted:
            return frozenset({extracted[0]})
        return DEFAULT_YEARLY_MONTHS
    if period == "2MBX":
        return EVEN_MONTHS if key == EVEN_BIMONTHLY_SCHEDULE else ODD_MONTHS
    return ALL_MONTHS


def default_schedule(billing_period: str) -> str | None:
    period = _normalize_period(billing_period)
    if period in {"MB", "MBQX", "MBYX"} or period not in BILLING_PERIODS:
        return None
    months = get_billing_months(period, None)
    return "-".join(MONTH_NAMES[month - 1] for month in sorted(months))


def is_due_in_month(contract: BillingContract, month: int, year: int) -> bool:
    if _normalize_status(contract.status) != ACTIVE_STATUS:
        return False
    if month not in get_billing_months(contract.billing_period, contract.schedule):
        return False

    invoice_day = int(contract.invoice_day)
    invoice_date = _invoice_date(year, month, invoice_day)
    if not _passes_start_rules(invoice_date, invoice_day, contract.start_date):
        return False

    end_date = parse_civil_date(contract.end_date)
    if end_date is not None and invoice_date > end_date:
        return False
    pullout_date = parse_civil_date(contract.pullout_date)
    if pullout_date is not None and invoice_date > pullout_date:
        return False
    return True


def calculate_next_invoice_date(
    billing_period: str,
    invoice_day: int,
    schedule: str | None = None,
    start_date: date | str | None = None,
    reference_date: date | None = None,
    include_past_days: bool = False,
) -> date | None:
    today = reference_date or date.today()
    invoice_day = int(invoice_day)
    billing_months = get_billing_months(billing_period, schedule)

    for month_offset in range(LOOKAHEAD_MONTHS + 1):
        total_month = today.month - 1 + month_offset
        target_month = total_month % 12 + 1
        target_year = today.year + total_month // 12
        if target_month not in billing_months:
            continue
        # This month's invoice window has already closed.
        if month_offset == 0 and today.day > invoice_day and not include_past_days:
            continue

        invoice_date = _invoice_date(target_year, target_month, invoice_day)
        if not _passes_start_rules(invoice_date, invoice_day, start_date):
            continue
        return invoice_date

    return None


def next_invoice_date_for_contract(
    contract: BillingContract, reference_date: date | None = None
) -> date | None:
    next_date = calculate_next_invoice_date(
        contract.billing_period,
        contract.invoice_day,
        contract.schedule,
        contract.start_date,
        reference_date,
    )
    if next_date is None:
        logger.warning(
            "No invoice date within %s months for contract %s (period=%s, start=%s); flag for review.",
            LOOKAHEAD_MONTHS,
            contract.contract_number or "<unnumbered>",
            contract.billing_period,
            contract.start_date,
        )
    return next_date


def contracts_due_in_month(
    contracts: Iterable[BillingContract], month: int, year: int
) -> List[BillingContract]:
    return [contract for contract in contracts if is_due_in_month(contract, month, year)]


def group_by_invoice_day(contracts: Iterable[BillingContract]) -> DueContracts:
    due = list(contracts)
    return DueContracts(
        day5=[contract for contract in due if int(contract.invoice_day) == 5],
        day15=[contract for contract in due if int(contract.invoice_day) == 15],
        day25=[contract for contract in due if int(contract.invoice_day) == 25],
        all=due,
    )


def contracts_due_this_month(
    contracts: Iterable[BillingContract], reference_date: date | None = None
) -> DueContracts:
    today = reference_date or date.today()
    return group_by_invoice_day(contracts_due_in_month(contracts, today.month, today.year))


def parse_civil_date(value: date | str | None) -> date | None:
    """Parse ``YYYY-MM-DD`` as a calendar date; invalid input counts as absent."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def _passes_start_rules(
    invoice_date: date, invoice_day: int, start_value: date | str | None
) -> bool:
    start = parse_civil_date(start_value)
    if start is None:
        return True
    invoice_day = int(invoice_day)
    if invoice_date < start:
        return False
    # Started after this month's invoice day: wait for the next occurrence.
    if (
        start.year == invoice_date.year
        and start.month == invoice_date.month
        and start.day > invoice_day
    ):
        return False
    return True


def _invoice_date(year: int, month: int, invoice_day: int) -> date:
    last_day = monthrange(year, month)[1]
    return date(year, month, min(invoice_day, last_day))


def _normalize_period(value: str | None) -> str:
    return (value or "").strip().upper()


def _normalize_status(value: str | None) -> str:
    return (value or "").strip().lower()


def _schedule_key(schedule: str | None) -> str:
    return (schedule or "").strip().upper()
