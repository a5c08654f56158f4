from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from backend.billing_calendar import (
    INVOICE_DAYS,
    MONTH_NAMES,
    BillingContract,
    get_billing_months,
    is_due_in_month,
)

PERIOD_ORDER = {"MB": 1, "2MBX": 2, "MBQX": 3, "MBYX": 4, "QB": 5, "QBYX": 6, "HY": 7, "YB": 8}
UNKNOWN_PERIOD_RANK = 99

QUARTERS = (
    ("JAN-FEB-MAR", (1, 2, 3)),
    ("APR-MAY-JUN", (4, 5, 6)),
    ("JUL-AUG-SEP", (7, 8, 9)),
    ("OCT-NOV-DEC", (10, 11, 12)),
)


@dataclass(frozen=True)
class ReportContract:
    contract: BillingContract
    contract_id: int | None = None
    machine_site: str | None = None


@dataclass(frozen=True)
class ReportRow:
    si_no: int
    contract_id: int | None
    contract_number: str | None
    customer: str | None
    machine_site: str | None
    billing_period: str
    invoice_day: int
    billing_schedule: str
    quarters: Dict[str, str]


@dataclass(frozen=True)
class InvoiceDaySection:
    invoice_day: int
    rows: List[ReportRow] = field(default_factory=list)


@dataclass(frozen=True)
class MonthlyBillingReport:
    month: int
    year: int
    title: str
    total_count: int
    rows: List[ReportRow]
    sections: List[InvoiceDaySection]
    counts_by_period: Dict[str, int]


def build_monthly_billing_report(
    entries: Iterable[ReportContract], month: int, year: int
) -> MonthlyBillingReport:
    if month < 1 or month > 12:
        raise ValueError("month must be between 1 and 12.")
    due_entries = sorted(
        (entry for entry in entries if is_due_in_month(entry.contract, month, year)),
        key=_master_sort_key,
    )

    rows: List[ReportRow] = []
    for invoice_day in INVOICE_DAYS:
        for entry in due_entries:
            if int(entry.contract.invoice_day) == invoice_day:
                rows.append(_to_row(entry, len(rows) + 1))

    sections: List[InvoiceDaySection] = []
    for invoice_day in INVOICE_DAYS:
        day_entries = sorted(
            (entry for entry in due_entries if int(entry.contract.invoice_day) == invoice_day),
            key=_day_sort_key,
        )
        if not day_entries:
            continue
        sections.append(
            InvoiceDaySection(
                invoice_day=invoice_day,
                rows=[_to_row(entry, index + 1) for index, entry in enumerate(day_entries)],
            )
        )

    counts_by_period: Dict[str, int] = {}
    for entry in due_entries:
        period = entry.contract.billing_period
        counts_by_period[period] = counts_by_period.get(period, 0) + 1

    return MonthlyBillingReport(
        month=month,
        year=year,
        title=f"Rental Billing {MONTH_NAMES[month - 1]} {year}",
        total_count=len(due_entries),
        rows=rows,
        sections=sections,
        counts_by_period=counts_by_period,
    )


def quarter_display_month(
    billing_period: str, schedule: str | None, quarter_months: Sequence[int]
) -> str:
    period = (billing_period or "").strip().upper()
    if period == "MB":
        return " ".join(MONTH_NAMES[month - 1] for month in quarter_months)
    if period == "MBQX":
        months = get_billing_months("QB", schedule)
    elif period == "MBYX":
        months = get_billing_months("YB", schedule)
    elif period in PERIOD_ORDER:
        months = get_billing_months(period, schedule)
    else:
        return ""
    return " ".join(MONTH_NAMES[month - 1] for month in quarter_months if month in months)


def billing_schedule_label(billing_period: str, schedule: str | None) -> str:
    if (billing_period or "").strip().upper() == "MB":
        return ""
    return schedule or ""


def customer_sort_key(customer: str | None) -> str:
    return re.sub(r"[^a-z0-9]", "", (customer or "").lower())


def _to_row(entry: ReportContract, si_no: int) -> ReportRow:
    contract = entry.contract
    return ReportRow(
        si_no=si_no,
        contract_id=entry.contract_id,
        contract_number=contract.contract_number,
        customer=contract.customer,
        machine_site=entry.machine_site,
        billing_period=contract.billing_period,
        invoice_day=int(contract.invoice_day),
        billing_schedule=billing_schedule_label(contract.billing_period, contract.schedule),
        quarters={
            label: quarter_display_month(contract.billing_period, contract.schedule, months)
            for label, months in QUARTERS
        },
    )


def _period_rank(billing_period: str) -> int:
    return PERIOD_ORDER.get((billing_period or "").strip().upper(), UNKNOWN_PERIOD_RANK)


def _master_sort_key(entry: ReportContract) -> tuple:
    contract = entry.contract
    return (
        int(contract.invoice_day),
        _period_rank(contract.billing_period),
        contract.schedule or "",
    )


def _day_sort_key(entry: ReportContract) -> tuple:
    contract = entry.contract
    return (_period_rank(contract.billing_period), customer_sort_key(contract.customer))

