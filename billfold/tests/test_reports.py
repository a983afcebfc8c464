import unittest
from datetime import date

from sqlalchemy import insert

from billfold.currency_conversion import ExchangeRateResolver
from billfold.database import Database, accounts, categories, users
from billfold.ledger import create_transaction
from billfold.reports import (
    default_report_range,
    expenses_by_category,
    get_report_bucket_start,
    income_vs_expenses,
    normalize_report_period,
    report_bucket_starts,
    summary,
)


class ReportHelperTests(unittest.TestCase):
    def test_bucket_starts(self) -> None:
        self.assertEqual(get_report_bucket_start(date(2024, 3, 7), "weekly"), date(2024, 3, 4))
        self.assertEqual(get_report_bucket_start(date(2024, 3, 7), "monthly"), date(2024, 3, 1))
        self.assertEqual(get_report_bucket_start(date(2024, 3, 7), "daily"), date(2024, 3, 7))

    def test_default_ranges(self) -> None:
        today = date(2024, 4, 10)

        self.assertEqual(default_report_range("daily", today), (date(2024, 4, 5), today))
        self.assertEqual(default_report_range("weekly", today), (date(2024, 3, 4), date(2024, 4, 14)))
        self.assertEqual(default_report_range("monthly", today), (date(2023, 11, 1), date(2024, 4, 30)))

    def test_bucket_count_is_capped(self) -> None:
        self.assertEqual(len(report_bucket_starts(date(2024, 1, 1), date(2024, 12, 31), "daily")), 366)
        self.assertEqual(len(report_bucket_starts(date(2014, 1, 1), date(2024, 1, 1), "monthly")), 121)
        with self.assertRaises(ValueError):
            report_bucket_starts(date(2014, 1, 1), date(2024, 1, 1), "daily")

    def test_period_names(self) -> None:
        self.assertEqual(normalize_report_period(" Weekly "), "weekly")
        with self.assertRaises(ValueError):
            normalize_report_period("yearly")


class ReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database("sqlite://")
        self.db.create_all()
        self.resolver = ExchangeRateResolver(sleep=lambda seconds: None)
        with self.db.begin() as conn:
            conn.execute(insert(users).values(id=1))
            checking = self._insert(
                conn, accounts, name="Checking", type="checking", currency="USD", initial_balance=10000, balance=10000
            )
            savings = self._insert(
                conn, accounts, name="Savings", type="savings", currency="EUR", initial_balance=0, balance=0
            )
            self.dining = self._insert(conn, categories, name="Dining", type="expense")
            salary = self._insert(conn, categories, name="Salary", type="income")

            for account_id, txn_type, amount, day, extra in (
                (checking, "expense", 1000, 5, {"category_id": self.dining}),
                (savings, "expense", 1000, 6, {"category_id": self.dining}),
                (checking, "expense", 500, 7, {}),
                (checking, "transfer", 2000, 8, {"to_account_id": savings}),
                (checking, "income", 5000, 10, {"category_id": salary}),
                (checking, "expense", 9999, 11, {"status": "pending"}),
            ):
                values = {
                    "account_id": account_id,
                    "type": txn_type,
                    "amount": amount,
                    "date": date(2024, 3, day),
                    "payee": "Someone",
                    **extra,
                }
                create_transaction(conn, 1, values, self.resolver)

    def tearDown(self) -> None:
        self.db.dispose()

    def _insert(self, conn, table, **values):
        return conn.execute(insert(table).values(user_id=1, **values).returning(table.c.id)).scalar_one()

    def test_expenses_grouped_by_category(self) -> None:
        with self.db.connect() as conn:
            result = expenses_by_category(
                conn, 1, date(2024, 3, 1), date(2024, 3, 31), "USD", self.resolver
            )

        self.assertEqual(
            result,
            [
                {"category_id": self.dining, "name": "Dining", "amount": 2180},
                {"category_id": None, "name": "Uncategorized", "amount": 500},
            ],
        )

    def test_category_filter(self) -> None:
        with self.db.connect() as conn:
            result = expenses_by_category(
                conn, 1, date(2024, 3, 1), date(2024, 3, 31), "EUR", self.resolver,
                category_id=self.dining,
            )

        self.assertEqual(result, [{"category_id": self.dining, "name": "Dining", "amount": 1850}])

    def test_monthly_income_vs_expenses_fills_empty_months(self) -> None:
        with self.db.connect() as conn:
            result = income_vs_expenses(
                conn, 1, "monthly", date(2024, 2, 1), date(2024, 3, 31), "USD", self.resolver
            )

        self.assertEqual([item["period"] for item in result["data"]], ["Feb 2024", "Mar 2024"])
        self.assertEqual((result["data"][0]["income"], result["data"][0]["expenses"]), (0, 0))
        self.assertEqual(result["data"][1]["income"], 5000)
        self.assertEqual(result["data"][1]["expenses"], 2680)
        self.assertEqual(result["data"][1]["net"], 2320)
        self.assertEqual(result["summary"]["net_amount"], 2320)
        self.assertEqual(result["summary"]["periods_count"], 2)
        self.assertTrue(result["conversion"]["has_multiple_currencies"])
        self.assertEqual(result["conversion"]["source_currencies"], ["EUR", "USD"])

    def test_weekly_buckets_start_on_monday(self) -> None:
        with self.db.connect() as conn:
            result = income_vs_expenses(
                conn, 1, "weekly", date(2024, 3, 4), date(2024, 3, 17), "USD", self.resolver
            )

        self.assertEqual([item["start_date"] for item in result["data"]], [date(2024, 3, 4), date(2024, 3, 11)])
        self.assertEqual(result["data"][0]["net"], 2320)
        self.assertEqual(result["data"][1]["net"], 0)

    def test_summary(self) -> None:
        with self.db.connect() as conn:
            result = summary(conn, 1, "USD", self.resolver, date(2024, 3, 20))

        self.assertEqual(result["total_balance"], 11500 + 826)
        self.assertEqual(result["total_income"], 5000)
        self.assertEqual(result["total_expense"], 2680)
        self.assertEqual(len(result["recent_transactions"]), 5)
        self.assertEqual(result["recent_transactions"][0]["amount"], 9999)


if __name__ == "__main__":
    unittest.main()
