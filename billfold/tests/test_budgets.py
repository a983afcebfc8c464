import unittest
from datetime import date

from sqlalchemy import insert

from billfold.budgets import (
    category_budgeted,
    create_budget,
    delete_budget,
    delete_category_budgets,
    evaluate_budget,
    get_budget,
    list_budgets,
    update_budget,
)
from billfold.currency_conversion import ExchangeRateResolver
from billfold.database import Database, accounts, categories, users
from billfold.exceptions import ConflictError, NotFoundError, ValidationError
from billfold.ledger import create_transaction


class EvaluateBudgetTests(unittest.TestCase):
    def test_under_and_over_limit(self) -> None:
        under = evaluate_budget(2000, 1500)
        over = evaluate_budget(2000, 2600)

        self.assertEqual((under.remaining, under.status), (500, "ok"))
        self.assertEqual((over.remaining, over.status), (-600, "over"))
        self.assertEqual(evaluate_budget(2000, 2000).status, "ok")

    def test_amount_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            evaluate_budget(0, 100)


class BudgetTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database("sqlite://")
        self.db.create_all()
        self.resolver = ExchangeRateResolver(sleep=lambda seconds: None)
        with self.db.begin() as conn:
            conn.execute(insert(users), [{"id": 1}, {"id": 2}])
            self.checking = self._insert(
                conn, accounts, name="Checking", type="checking", currency="USD", initial_balance=10000, balance=10000
            )
            self.savings = self._insert(
                conn, accounts, name="Euro Savings", type="savings", currency="EUR", initial_balance=0, balance=0
            )
            self.dining = self._insert(conn, categories, name="Dining", type="expense")
            self.groceries = self._insert(conn, categories, name="Groceries", type="expense")
            self.salary = self._insert(conn, categories, name="Salary", type="income")
            self.foreign = self._insert(conn, categories, user_id=2, name="Dining", type="expense")

            for account_id, txn_type, amount, when, category_id, status in (
                (self.checking, "expense", 500, date(2024, 3, 3), self.dining, "completed"),
                (self.savings, "expense", 1000, date(2024, 3, 9), self.dining, "completed"),
                (self.checking, "expense", 700, date(2024, 3, 12), self.dining, "pending"),
                (self.checking, "expense", 900, date(2024, 4, 2), self.dining, "completed"),
                (self.checking, "expense", 300, date(2024, 3, 20), self.groceries, "completed"),
                (self.checking, "income", 5000, date(2024, 3, 25), self.salary, "completed"),
            ):
                values = {
                    "account_id": account_id,
                    "type": txn_type,
                    "amount": amount,
                    "date": when,
                    "category_id": category_id,
                    "payee": "Someone",
                    "status": status,
                }
                create_transaction(conn, 1, values, self.resolver)

    def tearDown(self) -> None:
        self.db.dispose()

    def _insert(self, conn, table, user_id=1, **values):
        return conn.execute(insert(table).values(user_id=user_id, **values).returning(table.c.id)).scalar_one()

    def create(self, category_id, amount=2000, month=date(2024, 3, 15)):
        with self.db.begin() as conn:
            return create_budget(conn, 1, category_id, amount, month, "USD", self.resolver)

    def test_spent_counts_completed_expenses_of_the_month(self) -> None:
        budget = self.create(self.dining)

        self.assertEqual(budget["month"], date(2024, 3, 1))
        self.assertEqual(budget["category_name"], "Dining")
        self.assertEqual(budget["currency"], "USD")
        self.assertEqual(budget["spent"], 500 + 1180)
        self.assertEqual(budget["remaining"], 320)
        self.assertEqual(budget["status"], "ok")

    def test_list_is_scoped_to_month(self) -> None:
        self.create(self.groceries, amount=250)
        self.create(self.dining)
        self.create(self.dining, month=date(2024, 4, 1))

        with self.db.connect() as conn:
            march = list_budgets(conn, 1, date(2024, 3, 31), self.resolver)
            april = list_budgets(conn, 1, date(2024, 4, 10), self.resolver)
            other_user = list_budgets(conn, 2, date(2024, 3, 31), self.resolver)

        self.assertEqual([row["category_name"] for row in march], ["Dining", "Groceries"])
        self.assertEqual(march[1]["status"], "over")
        self.assertEqual(march[1]["remaining"], -50)
        self.assertEqual([row["spent"] for row in april], [900])
        self.assertEqual(other_user, [])

    def test_one_budget_per_category_and_month(self) -> None:
        self.create(self.dining)

        with self.assertRaises(ConflictError):
            self.create(self.dining, month=date(2024, 3, 28))

    def test_category_must_be_owned_expense_category(self) -> None:
        with self.assertRaises(ValidationError):
            self.create(self.salary)
        with self.assertRaises(NotFoundError):
            self.create(self.foreign)

    def test_update_and_delete(self) -> None:
        budget = self.create(self.dining)

        with self.db.begin() as conn:
            updated = update_budget(conn, 1, budget["id"], 1000, self.resolver)
            with self.assertRaises(NotFoundError):
                update_budget(conn, 2, budget["id"], 1000, self.resolver)
        self.assertEqual(updated["amount"], 1000)
        self.assertEqual(updated["status"], "over")

        with self.db.begin() as conn:
            with self.assertRaises(NotFoundError):
                delete_budget(conn, 2, budget["id"])
            delete_budget(conn, 1, budget["id"])
            with self.assertRaises(NotFoundError):
                get_budget(conn, 1, budget["id"], self.resolver)

    def test_category_budget_cleanup(self) -> None:
        self.create(self.dining)
        self.create(self.dining, month=date(2024, 4, 1))

        with self.db.begin() as conn:
            self.assertTrue(category_budgeted(conn, 1, self.dining))
            self.assertFalse(category_budgeted(conn, 1, self.groceries))
            self.assertEqual(delete_category_budgets(conn, 1, self.dining), 2)
            self.assertFalse(category_budgeted(conn, 1, self.dining))


if __name__ == "__main__":
    unittest.main()
