import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import insert, select, update

from billfold.currency_conversion import ExchangeRateResolver
from billfold.database import Database, accounts, categories, users
from billfold.exceptions import NotFoundError, ValidationError
from billfold.ledger import (
    balance_deltas,
    create_transaction,
    delete_transaction,
    delete_transactions,
    list_transactions,
    merge_deltas,
    prefetch_rates,
    recalculate_balances,
    update_transaction,
)


def transaction_values(account_id, **overrides):
    values = {
        "account_id": account_id,
        "to_account_id": None,
        "category_id": None,
        "type": "expense",
        "amount": 1000,
        "currency": None,
        "date": date(2024, 3, 5),
        "payee": "Corner Shop",
        "notes": None,
        "status": "completed",
    }
    values.update(overrides)
    return values


class FixedRateProvider:
    def __init__(self, rate: str) -> None:
        self.rate = Decimal(rate)
        self.calls = []

    def fetch_rate(self, base: str, target: str) -> Decimal:
        self.calls.append((base, target))
        return self.rate


class BalanceDeltaTests(unittest.TestCase):
    def test_deltas_by_type(self) -> None:
        base = {"account_id": 1, "to_account_id": None, "account_amount": 500, "status": "completed"}

        self.assertEqual(balance_deltas({**base, "type": "income"}), {1: 500})
        self.assertEqual(balance_deltas({**base, "type": "expense"}), {1: -500})
        self.assertEqual(
            balance_deltas({**base, "type": "transfer", "to_account_id": 2, "to_account_amount": 450}),
            {1: -500, 2: 450},
        )

    def test_non_completed_rows_have_no_effect(self) -> None:
        row = {"account_id": 1, "to_account_id": None, "account_amount": 500, "type": "income", "status": "pending"}

        self.assertEqual(balance_deltas(row), {})

    def test_merge_drops_zero_entries(self) -> None:
        self.assertEqual(merge_deltas({1: 500, 2: -100}, reverse=[{1: 500}]), {2: -100})


class LedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database("sqlite://")
        self.db.create_all()
        self.resolver = ExchangeRateResolver(sleep=lambda seconds: None)
        with self.db.begin() as conn:
            conn.execute(insert(users), [{"id": 1}, {"id": 2}])
            self.checking = self._add_account(conn, 1, "Checking", "checking", "USD", 10000)
            self.savings = self._add_account(conn, 1, "Euro Savings", "savings", "EUR", 0)
            self.card = self._add_account(conn, 1, "Visa", "credit_card", "USD", 0)
            self.other = self._add_account(conn, 2, "Other", "checking", "USD", 0)
            self.groceries = conn.execute(
                insert(categories)
                .values(user_id=1, name="Groceries", type="expense")
                .returning(categories.c.id)
            ).scalar_one()
            self.salary = conn.execute(
                insert(categories)
                .values(user_id=1, name="Salary", type="income")
                .returning(categories.c.id)
            ).scalar_one()

    def tearDown(self) -> None:
        self.db.dispose()

    def _add_account(self, conn, user_id, name, account_type, currency, balance):
        return conn.execute(
            insert(accounts)
            .values(
                user_id=user_id,
                name=name,
                type=account_type,
                currency=currency,
                initial_balance=balance,
                balance=balance,
            )
            .returning(accounts.c.id)
        ).scalar_one()

    def balance(self, account_id) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                select(accounts.c.balance).where(accounts.c.id == account_id)
            ).scalar_one()

    def create(self, **overrides):
        with self.db.begin() as conn:
            return create_transaction(
                conn, 1, transaction_values(self.checking, **overrides), self.resolver
            )

    def test_expense_and_income_move_balance(self) -> None:
        self.create(amount=2500, category_id=self.groceries)
        self.create(type="income", amount=4000, category_id=self.salary)

        self.assertEqual(self.balance(self.checking), 11500)

    def test_currency_defaults_to_account_currency(self) -> None:
        row = self.create(amount=2500)

        self.assertEqual(row["currency"], "USD")
        self.assertEqual(row["account_amount"], 2500)

    def test_foreign_amount_is_converted_into_account_currency(self) -> None:
        row = self.create(amount=1000, currency="EUR")

        self.assertEqual(row["account_amount"], 1180)
        self.assertEqual(self.balance(self.checking), 8820)

    def test_transfer_moves_money_between_accounts(self) -> None:
        row = self.create(type="transfer", amount=1000, to_account_id=self.savings)

        self.assertEqual(row["to_account_amount"], 850)
        self.assertEqual(self.balance(self.checking), 9000)
        self.assertEqual(self.balance(self.savings), 850)

    def test_transfer_requires_distinct_owned_accounts(self) -> None:
        with self.assertRaises(ValidationError):
            self.create(type="transfer", to_account_id=self.checking)
        with self.assertRaises(NotFoundError):
            self.create(type="transfer", to_account_id=self.other)
        self.assertEqual(self.balance(self.checking), 10000)

    def test_category_must_match_type(self) -> None:
        with self.assertRaises(ValidationError):
            self.create(category_id=self.salary)
        with self.assertRaises(NotFoundError):
            self.create(category_id=9999)

    def test_foreign_account_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            with self.db.begin() as conn:
                create_transaction(conn, 1, transaction_values(self.other), self.resolver)

    def test_update_moves_effect_to_new_account(self) -> None:
        row = self.create(amount=1000)
        values = transaction_values(self.card, amount=3000)

        for _ in range(2):
            with self.db.begin() as conn:
                update_transaction(conn, 1, row["id"], values, self.resolver)

        self.assertEqual(self.balance(self.checking), 10000)
        self.assertEqual(self.balance(self.card), -3000)

    def test_update_keeps_existing_currency_on_same_account(self) -> None:
        row = self.create(amount=1000, currency="EUR")

        with self.db.begin() as conn:
            updated = update_transaction(
                conn, 1, row["id"], transaction_values(self.checking, amount=2000), self.resolver
            )

        self.assertEqual(updated["currency"], "EUR")
        self.assertEqual(updated["account_amount"], 2360)
        self.assertEqual(self.balance(self.checking), 7640)

    def test_repeated_income_edit_moves_balance_once(self) -> None:
        row = self.create(type="income", amount=1000, category_id=self.salary)
        self.assertEqual(self.balance(self.checking), 11000)
        values = transaction_values(self.checking, type="income", amount=2500, category_id=self.salary)

        with self.db.begin() as conn:
            update_transaction(conn, 1, row["id"], values, self.resolver)
        self.assertEqual(self.balance(self.checking), 12500)

        with self.db.begin() as conn:
            update_transaction(conn, 1, row["id"], values, self.resolver)
        self.assertEqual(self.balance(self.checking), 12500)
        with self.db.begin() as conn:
            self.assertEqual(recalculate_balances(conn, 1), 0)

    def test_edit_keeps_booking_rate_until_amount_changes(self) -> None:
        provider = FixedRateProvider("1.10")
        self.resolver = ExchangeRateResolver(provider=provider, sleep=lambda seconds: None)
        row = self.create(type="income", amount=10000, currency="EUR")
        self.assertEqual(self.balance(self.checking), 21000)
        provider.rate = Decimal("1.20")
        self.resolver.clear_cache()

        for currency in (None, "EUR"):
            values = transaction_values(
                self.checking, type="income", amount=10000, currency=currency, notes="refund"
            )
            with self.db.begin() as conn:
                updated = update_transaction(conn, 1, row["id"], values, self.resolver)
            self.assertEqual(updated["account_amount"], 11000)
            self.assertEqual(updated["notes"], "refund")
            self.assertEqual(self.balance(self.checking), 21000)
        self.assertEqual(provider.calls, [("EUR", "USD")])

        values = transaction_values(self.checking, type="income", amount=20000, currency="EUR")
        with self.db.begin() as conn:
            updated = update_transaction(conn, 1, row["id"], values, self.resolver)

        self.assertEqual(updated["account_amount"], 24000)
        self.assertEqual(self.balance(self.checking), 34000)

    def test_prefetch_resolves_rates_ahead_of_the_write(self) -> None:
        provider = FixedRateProvider("1.10")
        self.resolver = ExchangeRateResolver(provider=provider, sleep=lambda seconds: None)
        values = transaction_values(
            self.checking, type="transfer", amount=1000, currency="EUR", to_account_id=self.savings
        )

        with self.db.connect() as conn:
            prefetch_rates(conn, 1, values, self.resolver)
        self.assertEqual(provider.calls, [("EUR", "USD")])

        with self.db.begin() as conn:
            row = create_transaction(conn, 1, values, self.resolver)
        self.assertEqual(provider.calls, [("EUR", "USD")])
        self.assertEqual(row["account_amount"], 1100)
        self.assertEqual(row["to_account_amount"], 1000)

        self.resolver.clear_cache()
        edit = transaction_values(
            self.checking, type="transfer", amount=2000, to_account_id=self.savings
        )
        with self.db.connect() as conn:
            prefetch_rates(conn, 1, edit, self.resolver, row["id"])
        self.assertEqual(provider.calls, [("EUR", "USD"), ("EUR", "USD")])

    def test_pending_transaction_only_counts_once_completed(self) -> None:
        row = self.create(amount=1000, status="pending")
        self.assertEqual(self.balance(self.checking), 10000)

        with self.db.begin() as conn:
            update_transaction(
                conn, 1, row["id"], transaction_values(self.checking, amount=1000), self.resolver
            )

        self.assertEqual(self.balance(self.checking), 9000)

    def test_delete_reverses_effect(self) -> None:
        row = self.create(type="transfer", amount=1000, to_account_id=self.savings)

        with self.db.begin() as conn:
            delete_transaction(conn, 1, row["id"])

        self.assertEqual(self.balance(self.checking), 10000)
        self.assertEqual(self.balance(self.savings), 0)
        with self.assertRaises(NotFoundError):
            with self.db.begin() as conn:
                delete_transaction(conn, 1, row["id"])

    def test_bulk_delete_is_all_or_nothing(self) -> None:
        first = self.create(amount=1000)
        second = self.create(amount=2000)

        with self.assertRaises(NotFoundError):
            with self.db.begin() as conn:
                delete_transactions(conn, 1, [first["id"], 9999])
        self.assertEqual(self.balance(self.checking), 7000)

        with self.db.begin() as conn:
            deleted = delete_transactions(conn, 1, [first["id"], second["id"]])

        self.assertEqual(deleted, 2)
        self.assertEqual(self.balance(self.checking), 10000)

    def test_bulk_delete_refuses_other_users_transactions(self) -> None:
        row = self.create(amount=1000)

        with self.assertRaises(NotFoundError):
            with self.db.begin() as conn:
                delete_transactions(conn, 2, [row["id"]])

    def test_recalculate_repairs_drifted_balance(self) -> None:
        self.create(amount=1500)
        self.create(type="transfer", amount=1000, to_account_id=self.savings)
        with self.db.begin() as conn:
            conn.execute(update(accounts).where(accounts.c.id == self.checking).values(balance=1))

        with self.db.begin() as conn:
            corrected = recalculate_balances(conn, 1)

        self.assertEqual(corrected, 1)
        self.assertEqual(self.balance(self.checking), 7500)
        self.assertEqual(self.balance(self.savings), 850)

    def test_list_filters_and_search(self) -> None:
        self.create(amount=1000, payee="Corner Shop", date=date(2024, 3, 1))
        self.create(amount=2000, payee="Fuel Stop", notes="road trip", date=date(2024, 3, 10))
        self.create(type="income", amount=5000, payee="Employer", date=date(2024, 3, 20))

        with self.db.connect() as conn:
            expenses = list_transactions(conn, 1, txn_type="expense")
            searched = list_transactions(conn, 1, search="ROAD")
            ranged = list_transactions(conn, 1, start_date=date(2024, 3, 5), end_date=date(2024, 3, 31))
            paged = list_transactions(conn, 1, page=2, limit=2)

        self.assertEqual([row["payee"] for row in expenses], ["Fuel Stop", "Corner Shop"])
        self.assertEqual([row["payee"] for row in searched], ["Fuel Stop"])
        self.assertEqual([row["payee"] for row in ranged], ["Employer", "Fuel Stop"])
        self.assertEqual([row["payee"] for row in paged], ["Corner Shop"])


if __name__ == "__main__":
    unittest.main()
