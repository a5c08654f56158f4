import unittest
from datetime import date

from backend.billing_calendar import (
    BillingContract,
    calculate_next_invoice_date,
    contracts_due_this_month,
    default_schedule,
    extract_months,
    get_billing_months,
    is_due_in_month,
    next_invoice_date_for_contract,
    normalize_schedule,
    parse_civil_date,
)


class BillingMonthsTests(unittest.TestCase):
    def test_period_cardinalities_with_default_schedules(self) -> None:
        expected = {
            "MB": 12,
            "MBQX": 12,
            "MBYX": 12,
            "QB": 4,
            "QBYX": 4,
            "HY": 2,
            "YB": 1,
            "2MBX": 6,
        }
        for period, size in expected.items():
            with self.subTest(period=period):
                self.assertEqual(len(get_billing_months(period, None)), size)

    def test_quarterly_schedule_lookup_and_default(self) -> None:
        self.assertEqual(get_billing_months("QB", "FEB-MAY-AUG-NOV"), {2, 5, 8, 11})
        self.assertEqual(get_billing_months("QBYX", "jan-apr-jul-oct"), {1, 4, 7, 10})
        self.assertEqual(get_billing_months("QB", "MAR-JUN-SEP-DEC"), {3, 6, 9, 12})
        self.assertEqual(get_billing_months("QB", "not a schedule"), {2, 5, 8, 11})
        self.assertEqual(get_billing_months("QB", None), {2, 5, 8, 11})

    def test_half_yearly_handles_canonical_and_imported_quarterly_strings(self) -> None:
        self.assertEqual(get_billing_months("HY", "MAR-SEP"), {3, 9})
        self.assertEqual(get_billing_months("HY", "FEB-MAY-AUG-NOV"), {2, 8})
        self.assertEqual(get_billing_months("HY", "NOV"), {5, 11})
        self.assertEqual(get_billing_months("HY", ""), {1, 7})

    def test_yearly_uses_bare_month_or_first_extracted_token(self) -> None:
        self.assertEqual(get_billing_months("YB", None), {1})
        self.assertEqual(get_billing_months("YB", "jul"), {7})
        self.assertEqual(get_billing_months("YB", "MAR-JUN-SEP-DEC"), {3})
        self.assertEqual(get_billing_months("YB", "???"), {1})

    def test_bimonthly_cycles(self) -> None:
        self.assertEqual(
            get_billing_months("2MBX", "FEB-APR-JUN-AUG-OCT-DEC"), {2, 4, 6, 8, 10, 12}
        )
        self.assertEqual(
            get_billing_months("2MBX", "JAN-MAR-MAY-JUL-SEP-NOV"), {1, 3, 5, 7, 9, 11}
        )
        self.assertEqual(get_billing_months("2MBX", None), {1, 3, 5, 7, 9, 11})

    def test_unknown_period_bills_every_month(self) -> None:
        self.assertEqual(get_billing_months("ZZ", "JAN"), set(range(1, 13)))

    def test_repeated_calls_return_identical_results(self) -> None:
        first = get_billing_months("HY", "FEB-MAY-AUG-NOV")
        second = get_billing_months("HY", "FEB-MAY-AUG-NOV")
        self.assertEqual(first, second)

    def test_extract_and_normalize_schedule(self) -> None:
        self.assertEqual(extract_months(" feb - xyz - Aug "), [2, 8])
        self.assertEqual(extract_months(None), [])
        self.assertEqual(normalize_schedule("jan-apr-jul-oct"), "JAN-APR-JUL-OCT")
        self.assertIsNone(normalize_schedule("xyz"))

    def test_default_schedules(self) -> None:
        self.assertEqual(default_schedule("QB"), "FEB-MAY-AUG-NOV")
        self.assertEqual(default_schedule("HY"), "JAN-JUL")
        self.assertEqual(default_schedule("YB"), "JAN")
        self.assertEqual(default_schedule("2MBX"), "JAN-MAR-MAY-JUL-SEP-NOV")
        self.assertIsNone(default_schedule("MB"))
        self.assertIsNone(default_schedule("ZZ"))


class DueInMonthTests(unittest.TestCase):
    def test_start_after_invoice_day_defers_to_next_month(self) -> None:
        contract = BillingContract(
            billing_period="MB",
            invoice_day=15,
            start_date="2025-03-20",
        )
        self.assertFalse(is_due_in_month(contract, 3, 2025))
        self.assertTrue(is_due_in_month(contract, 4, 2025))

    def test_start_on_invoice_day_is_due(self) -> None:
        contract = BillingContract(
            billing_period="MB",
            invoice_day=15,
            start_date=date(2025, 3, 15),
        )
        self.assertTrue(is_due_in_month(contract, 3, 2025))

    def test_string_invoice_day_from_stored_records(self) -> None:
        contract = BillingContract(
            billing_period="MB",
            invoice_day="15",
            start_date="2025-03-10",
        )
        self.assertTrue(is_due_in_month(contract, 3, 2025))

        late_start = BillingContract(
            billing_period="MB",
            invoice_day="15",
            start_date="2025-03-20",
        )
        self.assertFalse(is_due_in_month(late_start, 3, 2025))
        self.assertEqual(
            calculate_next_invoice_date("MB", "15", None, "2025-03-10", date(2025, 3, 12)),
            date(2025, 3, 15),
        )

    def test_non_active_status_is_never_due(self) -> None:
        for status in ("pending", "suspended", "expired", "pulled_out", "archived"):
            with self.subTest(status=status):
                contract = BillingContract(
                    billing_period="MB",
                    invoice_day=5,
                    start_date="2025-01-01",
                    status=status,
                )
                self.assertFalse(is_due_in_month(contract, 5, 2025))

    def test_end_and_pullout_dates_stop_billing(self) -> None:
        ended = BillingContract(
            billing_period="MB",
            invoice_day=5,
            start_date="2025-01-01",
            end_date="2025-06-01",
        )
        self.assertTrue(is_due_in_month(ended, 5, 2025))
        self.assertFalse(is_due_in_month(ended, 6, 2025))
        self.assertFalse(is_due_in_month(ended, 7, 2025))

        pulled = BillingContract(
            billing_period="MB",
            invoice_day=25,
            start_date="2025-01-01",
            pullout_date=date(2025, 4, 25),
        )
        self.assertTrue(is_due_in_month(pulled, 4, 2025))
        self.assertFalse(is_due_in_month(pulled, 5, 2025))

    def test_invalid_dates_are_ignored(self) -> None:
        contract = BillingContract(
            billing_period="MB",
            invoice_day=5,
            start_date="not-a-date",
            end_date="2025-13-40",
        )
        self.assertTrue(is_due_in_month(contract, 8, 2025))

    def test_non_billing_month_is_not_due(self) -> None:
        contract = BillingContract(
            billing_period="QB",
            invoice_day=5,
            schedule="FEB-MAY-AUG-NOV",
            start_date="2025-01-01",
        )
        self.assertTrue(is_due_in_month(contract, 5, 2025))
        self.assertFalse(is_due_in_month(contract, 6, 2025))

    def test_contracts_due_this_month_groups_by_invoice_day(self) -> None:
        day5 = BillingContract(billing_period="MB", invoice_day=5, start_date="2025-01-01")
        day15 = BillingContract(
            billing_period="QB", invoice_day=15, schedule="FEB-MAY-AUG-NOV", start_date="2025-01-01"
        )
        day25 = BillingContract(billing_period="MB", invoice_day=25, start_date="2025-01-01")
        pending = BillingContract(
            billing_period="MB", invoice_day=5, start_date="2025-01-01", status="pending"
        )
        yearly = BillingContract(billing_period="YB", invoice_day=5, start_date="2025-01-01")

        due = contracts_due_this_month(
            [day5, day15, day25, pending, yearly], reference_date=date(2025, 5, 10)
        )

        self.assertEqual(due.day5, [day5])
        self.assertEqual(due.day15, [day15])
        self.assertEqual(due.day25, [day25])
        self.assertEqual(due.all, [day5, day15, day25])


class NextInvoiceDateTests(unittest.TestCase):
    def test_skips_current_month_after_invoice_day(self) -> None:
        result = calculate_next_invoice_date(
            "MB", 15, None, "2025-01-01", reference_date=date(2025, 1, 20)
        )
        self.assertEqual(result, date(2025, 2, 15))

    def test_include_past_days_keeps_current_month(self) -> None:
        result = calculate_next_invoice_date(
            "MB",
            15,
            None,
            "2025-01-01",
            reference_date=date(2025, 1, 20),
            include_past_days=True,
        )
        self.assertEqual(result, date(2025, 1, 15))

    def test_reference_on_invoice_day_returns_same_day(self) -> None:
        result = calculate_next_invoice_date(
            "MB", 15, None, None, reference_date=date(2025, 1, 15)
        )
        self.assertEqual(result, date(2025, 1, 15))

    def test_even_bimonthly_schedule(self) -> None:
        result = calculate_next_invoice_date(
            "2MBX",
            5,
            "FEB-APR-JUN-AUG-OCT-DEC",
            "2025-01-01",
            reference_date=date(2025, 1, 10),
        )
        self.assertEqual(result, date(2025, 2, 5))

    def test_rolls_over_into_next_year(self) -> None:
        result = calculate_next_invoice_date(
            "QB", 5, "FEB-MAY-AUG-NOV", None, reference_date=date(2025, 12, 1)
        )
        self.assertEqual(result, date(2026, 2, 5))

    def test_start_date_defers_to_next_occurrence(self) -> None:
        result = calculate_next_invoice_date(
            "MB", 5, None, "2025-03-20", reference_date=date(2025, 3, 1)
        )
        self.assertEqual(result, date(2025, 4, 5))

    def test_returns_none_when_start_is_beyond_horizon(self) -> None:
        result = calculate_next_invoice_date(
            "YB", 5, "JAN", "2027-07-01", reference_date=date(2025, 1, 1)
        )
        self.assertIsNone(result)

    def test_contract_without_upcoming_invoice_is_logged(self) -> None:
        contract = BillingContract(
            billing_period="HY",
            invoice_day=25,
            schedule="JAN-JUL",
            start_date="2028-01-01",
            contract_number="C-404",
        )
        with self.assertLogs("backend.billing_calendar", level="WARNING") as captured:
            result = next_invoice_date_for_contract(contract, reference_date=date(2025, 3, 1))
        self.assertIsNone(result)
        self.assertIn("C-404", captured.output[0])


class CivilDateTests(unittest.TestCase):
    def test_parses_iso_strings_without_timezone_shift(self) -> None:
        self.assertEqual(parse_civil_date("2025-03-05"), date(2025, 3, 5))
        self.assertEqual(parse_civil_date("2025-03-05T00:00:00Z"), date(2025, 3, 5))
        self.assertIsNone(parse_civil_date("  "))
        self.assertIsNone(parse_civil_date("2025-02-30"))


if __name__ == "__main__":
    unittest.main()
