import logging
import os
from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from backend.billing_calendar import (
    BILLING_PERIOD_LABELS,
    BILLING_PERIODS,
    CONTRACT_STATUSES,
    INVOICE_DAYS,
    BillingContract,
    calculate_next_invoice_date,
    contracts_due_in_month,
    default_schedule,
    get_billing_months,
    group_by_invoice_day,
    next_invoice_date_for_contract,
    normalize_schedule,
)
from backend.billing_report import ReportContract, build_monthly_billing_report
from backend.contract_import import ContractParseResult, parse_contracts_csv


def get_log_level() -> int:
    raw = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


logging.basicConfig(
    level=get_log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./rental_billing.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()

INACTIVE_STATUSES = {"pulled_out", "archived"}
IMPORT_UPDATE_COLUMNS = {
    "customer",
    "machine_site",
    "billing_period",
    "invoice_day",
    "schedule",
    "rental_fee",
    "start_date",
    "next_invoice_date",
}
OPTIONAL_IMPORT_COLUMNS = {"machine_site", "rental_fee"}

contracts = Table(
    "contracts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("si_no", Integer),
    Column("contract_number", String(100), unique=True, nullable=False),
    Column("customer", String(255), nullable=False),
    Column("machine_site", String(255)),
    Column("billing_period", String(10), nullable=False),
    Column("invoice_day", Integer, nullable=False),
    Column("schedule", String(50)),
    Column("rental_fee", Numeric(12, 2)),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("pullout_date", Date),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("notes", String(500)),
    Column("termination_date", Date),
    Column("termination_reason", String(500)),
    Column("next_invoice_date", Date),
    Column("last_invoice_date", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class BillingPeriod:
    values = BILLING_PERIODS

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid billing period.")
        return normalized


class InvoiceDay:
    values = set(INVOICE_DAYS)

    @classmethod
    def validate(cls, value: int) -> int:
        if value not in cls.values:
            raise ValueError("Invoice day must be 5, 15, or 25.")
        return value


class ContractStatus:
    values = CONTRACT_STATUSES

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid contract status.")
        return normalized


def normalize_contract_schedule(billing_period: str, schedule: str | None) -> str | None:
    if billing_period == "MB":
        return None
    return normalize_schedule(schedule) or default_schedule(billing_period)


class ContractPayload(BaseModel):
    contract_number: str
    customer: str
    machine_site: str | None = None
    billing_period: str
    invoice_day: int
    schedule: str | None = None
    rental_fee: Decimal | None = None
    start_date: date
    end_date: date | None = None
    pullout_date: date | None = None
    status: str = "active"
    notes: str | None = None
    si_no: int | None = None
    last_invoice_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "ContractPayload") -> "ContractPayload":
        payload.contract_number = payload.contract_number.strip()
        if not payload.contract_number:
            raise ValueError("Contract number required.")
        payload.customer = payload.customer.strip()
        if not payload.customer:
            raise ValueError("Customer required.")
        payload.machine_site = payload.machine_site.strip() if payload.machine_site else None
        payload.billing_period = BillingPeriod.validate(payload.billing_period)
        payload.invoice_day = InvoiceDay.validate(payload.invoice_day)
        payload.schedule = normalize_contract_schedule(payload.billing_period, payload.schedule)
        payload.status = ContractStatus.validate(payload.status or "active")
        payload.notes = payload.notes.strip() if payload.notes else None
        if payload.rental_fee is not None and payload.rental_fee < 0:
            raise ValueError("Rental fee cannot be negative.")
        if payload.end_date is not None and payload.end_date < payload.start_date:
            raise ValueError("End date must be on or after start date.")
        return payload


class ContractResponse(BaseModel):
    id: int
    si_no: int | None = None
    contract_number: str
    customer: str
    machine_site: str | None = None
    billing_period: str
    invoice_day: int
    schedule: str | None = None
    rental_fee: Decimal | None = None
    start_date: date
    end_date: date | None = None
    pullout_date: date | None = None
    status: str
    notes: str | None = None
    termination_date: date | None = None
    termination_reason: str | None = None
    next_invoice_date: date | None = None
    last_invoice_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TerminationPayload(BaseModel):
    termination_date: date
    reason: str

    @classmethod
    def validate_payload(cls, payload: "TerminationPayload") -> "TerminationPayload":
        payload.reason = payload.reason.strip()
        if not payload.reason:
            raise ValueError("Termination reason required.")
        return payload


class BillingPeriodResponse(BaseModel):
    code: str
    label: str
    default_schedule: str | None = None


class BillingMonthsResponse(BaseModel):
    billing_period: str
    schedule: str | None = None
    months: list[int]


class NextInvoiceDateResponse(BaseModel):
    next_invoice_date: date | None = None
    needs_review: bool


class ContractStatsResponse(BaseModel):
    total: int
    active: int
    by_period: dict[str, int]
    by_status: dict[str, int]
    by_invoice_day: dict[str, int]


class DueContractsResponse(BaseModel):
    month: str
    total_count: int
    day5: list[ContractResponse]
    day15: list[ContractResponse]
    day25: list[ContractResponse]


class RecalculateResponse(BaseModel):
    updated_count: int
    needs_review: list[str]


class ContractImportRow(BaseModel):
    contract_number: str
    customer: str
    machine_site: str | None = None
    billing_period: str
    invoice_day: int
    schedule: str | None = None
    rental_fee: Decimal | None = None
    start_date: date | None = None
    si_no: int | None = None


class ContractImportCommitPayload(BaseModel):
    start_date: date | None = None
    contracts: list[ContractImportRow]


class ContractImportCommitResponse(BaseModel):
    inserted_count: int
    updated_count: int


class ReportRowResponse(BaseModel):
    si_no: int
    contract_id: int | None = None
    contract_number: str | None = None
    customer: str | None = None
    machine_site: str | None = None
    billing_period: str
    invoice_day: int
    billing_schedule: str
    quarters: dict[str, str]


class InvoiceDaySectionResponse(BaseModel):
    invoice_day: int
    rows: list[ReportRowResponse]


class MonthlyBillingReportResponse(BaseModel):
    month: str
    title: str
    total_count: int
    rows: list[ReportRowResponse]
    sections: list[InvoiceDaySectionResponse]
    counts_by_period: dict[str, int]


def parse_month_value(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError as exc:
            raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def resolve_month(value: str | None) -> date:
    if not value:
        return date.today().replace(day=1)
    try:
        return parse_month_value(value).replace(day=1)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def to_billing_contract(row) -> BillingContract:
    return BillingContract(
        billing_period=row["billing_period"],
        invoice_day=row["invoice_day"],
        start_date=row["start_date"],
        schedule=row["schedule"],
        end_date=row["end_date"],
        pullout_date=row["pullout_date"],
        status=row["status"],
        contract_number=row["contract_number"],
        customer=row["customer"],
    )


def to_contract_response(row) -> ContractResponse:
    return ContractResponse(**{column.name: row[column.name] for column in contracts.columns})


def compute_next_invoice_date(values: dict) -> date | None:
    return next_invoice_date_for_contract(
        BillingContract(
            billing_period=values["billing_period"],
            invoice_day=values["invoice_day"],
            start_date=values["start_date"],
            schedule=values["schedule"],
            contract_number=values["contract_number"],
        )
    )


def contract_values(payload: ContractPayload) -> dict:
    values = payload.model_dump(exclude={"si_no"})
    values["next_invoice_date"] = compute_next_invoice_date(values)
    return values


def next_si_no(conn) -> int:
    current = conn.execute(select(func.max(contracts.c.si_no))).scalar_one_or_none()
    return (current or 0) + 1


def fetch_contract_row(conn, contract_id: int):
    row = conn.execute(
        select(contracts).where(contracts.c.id == contract_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Contract not found.")
    return row


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/billing-periods", response_model=list[BillingPeriodResponse])
def list_billing_periods() -> list[BillingPeriodResponse]:
    return [
        BillingPeriodResponse(code=code, label=label, default_schedule=default_schedule(code))
        for code, label in BILLING_PERIOD_LABELS.items()
    ]


@app.get("/billing/months", response_model=BillingMonthsResponse)
def billing_months(
    billing_period: str = Query(...),
    schedule: str | None = Query(None),
) -> BillingMonthsResponse:
    return BillingMonthsResponse(
        billing_period=billing_period.strip().upper(),
        schedule=schedule,
        months=sorted(get_billing_months(billing_period, schedule)),
    )


@app.get("/billing/next-invoice-date", response_model=NextInvoiceDateResponse)
def next_invoice_date(
    billing_period: str = Query(...),
    invoice_day: int = Query(...),
    schedule: str | None = Query(None),
    start_date: date | None = Query(None),
    reference_date: date | None = Query(None),
    include_past_days: bool = Query(False),
) -> NextInvoiceDateResponse:
    try:
        InvoiceDay.validate(invoice_day)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    result = calculate_next_invoice_date(
        billing_period,
        invoice_day,
        schedule,
        start_date,
        reference_date,
        include_past_days,
    )
    return NextInvoiceDateResponse(next_invoice_date=result, needs_review=result is None)


@app.get("/contracts", response_model=list[ContractResponse])
def list_contracts(
    status: str | None = None,
    billing_period: str | None = None,
) -> list[ContractResponse]:
    conditions = []
    if status:
        conditions.append(contracts.c.status == status.strip().lower())
    if billing_period:
        conditions.append(contracts.c.billing_period == billing_period.strip().upper())
    stmt = select(contracts).order_by(contracts.c.si_no.asc(), contracts.c.id.asc())
    if conditions:
        stmt = stmt.where(*conditions)
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [to_contract_response(row) for row in rows]


@app.get("/contracts/stats", response_model=ContractStatsResponse)
def contract_stats() -> ContractStatsResponse:
    with engine.begin() as conn:
        rows = conn.execute(
            select(contracts.c.status, contracts.c.billing_period, contracts.c.invoice_day)
        ).mappings().all()

    by_period: dict[str, int] = {}
    by_status: dict[str, int] = {}
    by_invoice_day: dict[str, int] = {}
    for row in rows:
        by_period[row["billing_period"]] = by_period.get(row["billing_period"], 0) + 1
        by_status[row["status"]] = by_status.get(row["status"], 0) + 1
        day_key = str(row["invoice_day"])
        by_invoice_day[day_key] = by_invoice_day.get(day_key, 0) + 1

    return ContractStatsResponse(
        total=sum(1 for row in rows if row["status"] not in INACTIVE_STATUSES),
        active=by_status.get("active", 0),
        by_period=by_period,
        by_status=by_status,
        by_invoice_day=by_invoice_day,
    )


@app.get("/contracts/due", response_model=DueContractsResponse)
def due_contracts(month: str | None = Query(None)) -> DueContractsResponse:
    target = resolve_month(month)
    with engine.begin() as conn:
        rows = conn.execute(
            select(contracts).order_by(contracts.c.si_no.asc(), contracts.c.id.asc())
        ).mappings().all()

    rows_by_number = {row["contract_number"]: row for row in rows}
    due = group_by_invoice_day(
        contracts_due_in_month(
            (to_billing_contract(row) for row in rows), target.month, target.year
        )
    )

    def responses(items: list[BillingContract]) -> list[ContractResponse]:
        return [to_contract_response(rows_by_number[item.contract_number]) for item in items]

    return DueContractsResponse(
        month=target.strftime("%Y-%m"),
        total_count=len(due.all),
        day5=responses(due.day5),
        day15=responses(due.day15),
        day25=responses(due.day25),
    )


@app.post("/contracts/recalculate", response_model=RecalculateResponse)
def recalculate_next_invoice_dates() -> RecalculateResponse:
    needs_review: list[str] = []
    with engine.begin() as conn:
        rows = conn.execute(select(contracts)).mappings().all()
        for row in rows:
            next_date = next_invoice_date_for_contract(to_billing_contract(row))
            if next_date is None:
                needs_review.append(row["contract_number"])
            conn.execute(
                update(contracts)
                .where(contracts.c.id == row["id"])
                .values(next_invoice_date=next_date, updated_at=func.now())
            )
    logger.info(
        "Recalculated next invoice dates for %s contracts (%s need review).",
        len(rows),
        len(needs_review),
    )
    return RecalculateResponse(updated_count=len(rows), needs_review=needs_review)


@app.post("/contracts/import/parse-csv", response_model=ContractParseResult)
async def parse_contract_import(file: UploadFile = File(...)) -> ContractParseResult:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")

    contents = await file.read()
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc

    try:
        return parse_contracts_csv(decoded)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/contracts/import/commit", response_model=ContractImportCommitResponse)
def commit_contract_import(payload: ContractImportCommitPayload) -> ContractImportCommitResponse:
    if not payload.contracts:
        raise HTTPException(status_code=400, detail="No contracts to import.")

    default_start = payload.start_date or date.today().replace(day=1)
    validated: list[ContractPayload] = []
    for index, row in enumerate(payload.contracts, start=1):
        try:
            validated.append(
                ContractPayload.validate_payload(
                    ContractPayload(
                        contract_number=row.contract_number,
                        customer=row.customer,
                        machine_site=row.machine_site,
                        billing_period=row.billing_period,
                        invoice_day=row.invoice_day,
                        schedule=row.schedule,
                        rental_fee=row.rental_fee,
                        start_date=row.start_date or default_start,
                        si_no=row.si_no,
                    )
                )
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Row {index}: {exc}") from exc

    inserted = 0
    updated = 0
    with engine.begin() as conn:
        si_no = next_si_no(conn)
        for item in validated:
            existing = conn.execute(
                select(contracts.c.id, contracts.c.si_no).where(
                    contracts.c.contract_number == item.contract_number
                )
            ).mappings().first()
            values = contract_values(item)
            values.pop("status")
            if existing:
                # Columns the sheet does not carry keep their stored values.
                import_values = {
                    key: value
                    for key, value in values.items()
                    if key in IMPORT_UPDATE_COLUMNS
                    and (value is not None or key not in OPTIONAL_IMPORT_COLUMNS)
                }
                import_values["si_no"] = existing["si_no"] or item.si_no
                conn.execute(
                    update(contracts)
                    .where(contracts.c.id == existing["id"])
                    .values(**import_values, updated_at=func.now())
                )
                updated += 1
            else:
                values["si_no"] = item.si_no or si_no
                si_no = max(si_no, values["si_no"]) + 1
                conn.execute(insert(contracts).values(**values, status="active"))
                inserted += 1

    logger.info("Imported contracts: %s inserted, %s updated.", inserted, updated)
    return ContractImportCommitResponse(inserted_count=inserted, updated_count=updated)


@app.post("/contracts", response_model=ContractResponse)
def create_contract(payload: ContractPayload) -> ContractResponse:
    try:
        payload = ContractPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = contract_values(payload)
    try:
        with engine.begin() as conn:
            values["si_no"] = payload.si_no or next_si_no(conn)
            stmt = insert(contracts).values(**values).returning(*contracts.columns)
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Contract number already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create contract.")
    logger.info("Created contract %s (next invoice %s).", row["contract_number"], row["next_invoice_date"])
    return to_contract_response(row)


@app.get("/contracts/{contract_id}", response_model=ContractResponse)
def get_contract(contract_id: int) -> ContractResponse:
    with engine.begin() as conn:
        row = fetch_contract_row(conn, contract_id)
    return to_contract_response(row)


@app.put("/contracts/{contract_id}", response_model=ContractResponse)
def update_contract(contract_id: int, payload: ContractPayload) -> ContractResponse:
    try:
        payload = ContractPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = contract_values(payload)
    if payload.si_no is not None:
        values["si_no"] = payload.si_no
    stmt = (
        update(contracts)
        .where(contracts.c.id == contract_id)
        .values(**values, updated_at=func.now())
        .returning(*contracts.columns)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Contract number already exists.") from exc

    if not row:
        raise HTTPException(status_code=404, detail="Contract not found.")
    logger.info("Updated contract %s.", row["contract_number"])
    return to_contract_response(row)


@app.post("/contracts/{contract_id}/terminate", response_model=ContractResponse)
def terminate_contract(contract_id: int, payload: TerminationPayload) -> ContractResponse:
    try:
        payload = TerminationPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(contracts)
        .where(contracts.c.id == contract_id)
        .values(
            status="pulled_out",
            termination_date=payload.termination_date,
            termination_reason=payload.reason,
            updated_at=func.now(),
        )
        .returning(*contracts.columns)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Contract not found.")
    logger.info("Terminated contract %s on %s.", row["contract_number"], payload.termination_date)
    return to_contract_response(row)


@app.delete("/contracts/{contract_id}")
def delete_contract(contract_id: int) -> dict:
    stmt = contracts.delete().where(contracts.c.id == contract_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Contract not found.")
    return {"status": "deleted"}


@app.get("/reports/monthly-billing", response_model=MonthlyBillingReportResponse)
def monthly_billing_report(month: str | None = Query(None)) -> MonthlyBillingReportResponse:
    target = resolve_month(month)
    with engine.begin() as conn:
        rows = conn.execute(select(contracts)).mappings().all()

    report = build_monthly_billing_report(
        (
            ReportContract(
                contract=to_billing_contract(row),
                contract_id=row["id"],
                machine_site=row["machine_site"],
            )
            for row in rows
        ),
        target.month,
        target.year,
    )

    def row_response(report_row) -> ReportRowResponse:
        return ReportRowResponse(
            si_no=report_row.si_no,
            contract_id=report_row.contract_id,
            contract_number=report_row.contract_number,
            customer=report_row.customer,
            machine_site=report_row.machine_site,
            billing_period=report_row.billing_period,
            invoice_day=report_row.invoice_day,
            billing_schedule=report_row.billing_schedule,
            quarters=report_row.quarters,
        )

    return MonthlyBillingReportResponse(
        month=target.strftime("%Y-%m"),
        title=report.title,
        total_count=report.total_count,
        rows=[row_response(report_row) for report_row in report.rows],
        sections=[
            InvoiceDaySectionResponse(
                invoice_day=section.invoice_day,
                rows=[row_response(report_row) for report_row in section.rows],
            )
            for section in report.sections
        ],
        counts_by_period=report.counts_by_period,
    )
