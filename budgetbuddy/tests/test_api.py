import unittest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, insert, select
from sqlalchemy.pool import StaticPool

from budgetbuddy import main
from budgetbuddy.currency_conversion import StaticRateProvider
from budgetbuddy.ocr_client import OcrUnavailable
from budgetbuddy.period import MonthlyPeriod
from budgetbuddy.record_store import categories, metadata, transactions, users


class FakeOcrClient:
    def __init__(self, text: str | None) -> None:
        self.text = text
        self.images: list[str] = []

    def extract_text(self, base64_image: str) -> str:
        self.images.append(base64_image)
        if self.text is None:
            raise OcrUnavailable("offline")
        return self.text


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            conn.execute(
                insert(users),
                [
                    {"id": 1, "name": "Ada", "email": "ada@example.com", "preferred_currency": "EUR"},
                    {"id": 2, "name": "Bob", "email": "bob@example.com", "preferred_currency": None},
                ],
            )
            conn.execute(
                insert(categories),
                [
                    {"id": 1, "user_id": 1, "name": "Food", "color": "#FF6B6B", "monthly_budget": Decimal("300")},
                    {"id": 2, "user_id": 1, "name": "Transport", "color": "#4ECDC4", "monthly_budget": Decimal("150")},
                    {"id": 3, "user_id": 2, "name": "Food", "color": "#FF6B6B", "monthly_budget": Decimal("300")},
                ],
            )

        self.patches = [
            mock.patch.object(main, "engine", self.engine),
            mock.patch.object(
                main,
                "FX_PROVIDER",
                StaticRateProvider(rates={"USD": Decimal("1"), "EUR": Decimal("2")}),
            ),
        ]
        for patcher in self.patches:
            patcher.start()
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        for patcher in reversed(self.patches):
            patcher.stop()
        self.engine.dispose()

    def add_transaction(self, user_id: int, amount: str, currency: str, when: datetime, category_id=None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(transactions).values(
                    user_id=user_id,
                    category_id=category_id,
                    amount=Decimal(amount),
                    currency=currency,
                    description="seed",
                    transaction_date=when,
                )
            )

    def use_ocr(self, text: str | None) -> FakeOcrClient:
        client = FakeOcrClient(text)
        patcher = mock.patch.object(main, "OCR_CLIENT", client)
        patcher.start()
        self.addCleanup(patcher.stop)
        return client


class MonthlyStatsApiTests(ApiTestCase):
    def test_stats_for_month(self) -> None:
        self.add_transaction(1, "50", "EUR", datetime(2024, 5, 1, 9), category_id=1)
        self.add_transaction(1, "20", "EUR", datetime(2024, 5, 1, 18), category_id=1)
        self.add_transaction(1, "30", "EUR", datetime(2024, 5, 3, 7), category_id=2)
        self.add_transaction(1, "10", "USD", datetime(2024, 5, 4, 7))
        self.add_transaction(1, "999", "EUR", datetime(2024, 6, 1, 0))
        self.add_transaction(2, "5", "EUR", datetime(2024, 5, 2, 0), category_id=3)

        response = self.client.get(
            "/users/me/stats", params={"year": 2024, "month": 5}, headers={"x-user-id": "1"}
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["preferred_currency"], "EUR")
        self.assertEqual(body["total_transactions"], 4)
        self.assertEqual(Decimal(body["total_spent_this_month"]), Decimal("120"))
        self.assertEqual(Decimal(body["total_budget_this_month"]), Decimal("450"))
        self.assertEqual(Decimal(body["remaining_budget"]), Decimal("330"))
        self.assertEqual(Decimal(body["budget_usage_percentage"]), Decimal("26.67"))
        self.assertEqual(
            [(entry["category_name"], Decimal(entry["spent"]), Decimal(entry["percentage"])) for entry in body["by_category"]],
            [("Food", Decimal("70"), Decimal("23.33")), ("Transport", Decimal("30"), Decimal("20"))],
        )
        self.assertEqual(
            [(entry["currency"], Decimal(entry["amount"]), Decimal(entry["converted_to_preferred"])) for entry in body["by_currency"]],
            [("EUR", Decimal("100"), Decimal("100")), ("USD", Decimal("10"), Decimal("20"))],
        )
        self.assertEqual(
            [(entry["date"], entry["transaction_count"]) for entry in body["daily_spending"]],
            [("2024-05-01", 2), ("2024-05-03", 1), ("2024-05-04", 1)],
        )
        self.assertEqual(body["unconverted_currencies"], [])

    def test_unconvertible_currency_is_flagged(self) -> None:
        self.add_transaction(1, "40", "EUR", datetime(2024, 5, 1, 9), category_id=1)
        self.add_transaction(1, "15", "XAF", datetime(2024, 5, 2, 9))

        response = self.client.get(
            "/users/me/stats", params={"year": 2024, "month": 5}, headers={"x-user-id": "1"}
        )

        body = response.json()
        self.assertEqual(Decimal(body["total_spent_this_month"]), Decimal("40"))
        self.assertEqual(body["unconverted_currencies"], ["XAF"])
        xaf = body["by_currency"][1]
        self.assertEqual(xaf["currency"], "XAF")
        self.assertFalse(xaf["converted"])
        self.assertEqual(Decimal(xaf["converted_to_preferred"]), Decimal("15"))

    def test_user_without_preference_uses_system_default(self) -> None:
        response = self.client.get(
            "/users/me/stats", params={"year": 2024, "month": 5}, headers={"x-user-id": "2"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["preferred_currency"], main.SYSTEM_DEFAULT_CURRENCY)
        self.assertEqual(Decimal(response.json()["budget_usage_percentage"]), Decimal("0"))

    def test_invalid_period_is_rejected(self) -> None:
        for params in ({"year": 2024, "month": 13}, {"year": 1999, "month": 5}):
            with self.subTest(params=params):
                response = self.client.get("/users/me/stats", params=params, headers={"x-user-id": "1"})
                self.assertEqual(response.status_code, 400)

    def test_identity_errors(self) -> None:
        self.assertEqual(self.client.get("/users/me/stats").status_code, 401)
        self.assertEqual(
            self.client.get("/users/me/stats", headers={"x-user-id": "abc"}).status_code, 400
        )
        self.assertEqual(
            self.client.get("/users/me/stats", headers={"x-user-id": "99"}).status_code, 404
        )

    def test_conversion_timeout_is_gateway_timeout(self) -> None:
        self.add_transaction(1, "10", "USD", datetime(2024, 5, 4, 7))

        def stuck(*args, **kwargs):
            raise main.AggregationTimeout("USD still pending")

        with mock.patch.object(main, "assemble_monthly_stats", side_effect=stuck):
            response = self.client.get(
                "/users/me/stats", params={"year": 2024, "month": 5}, headers={"x-user-id": "1"}
            )

        self.assertEqual(response.status_code, 504)


class CategorySpendingApiTests(ApiTestCase):
    def test_lists_categories_with_spending(self) -> None:
        self.add_transaction(1, "12.50", "EUR", datetime(2024, 5, 8, 9), category_id=2)

        response = self.client.get(
            "/categories/spending", params={"year": 2024, "month": 5}, headers={"x-user-id": "1"}
        )

        body = response.json()
        self.assertEqual([entry["category_name"] for entry in body], ["Food", "Transport"])
        self.assertEqual(Decimal(body[0]["spent"]), Decimal("0"))
        self.assertEqual(Decimal(body[1]["spent"]), Decimal("12.50"))
        self.assertEqual(Decimal(body[1]["remaining"]), Decimal("137.50"))
        self.assertEqual(body[1]["source_currencies"], ["EUR"])

    def test_seeds_defaults_for_user_without_categories(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(categories.delete().where(categories.c.user_id == 2))

        response = self.client.get("/categories/spending", headers={"x-user-id": "2"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 9)


class ReceiptApiTests(ApiTestCase):
    def test_parse_receipt_text(self) -> None:
        response = self.client.post(
            "/transactions/receipt-text/parse", json={"text": "TOTAL 23,50\nSuperMart\n"}
        )

        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("23.50"))
        self.assertEqual(body["label"], "TOTAL 23,50")
        self.assertTrue(body["found"])

    def test_ocr_preview(self) -> None:
        ocr = self.use_ocr("Cafe Luna\nEspresso 2,80")

        response = self.client.post(
            "/transactions/ocr-preview", json={"image": "aGVsbG8="}, headers={"x-user-id": "1"}
        )

        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("2.80"))
        self.assertEqual(body["description"], "Cafe Luna")
        self.assertEqual(ocr.images, ["aGVsbG8="])

    def test_ocr_preview_requires_image(self) -> None:
        self.use_ocr("unused")

        blank = self.client.post(
            "/transactions/ocr-preview", json={"image": "  "}, headers={"x-user-id": "1"}
        )
        missing = self.client.post("/transactions/ocr-preview", json={}, headers={"x-user-id": "1"})

        self.assertEqual(blank.status_code, 400)
        self.assertEqual(missing.status_code, 422)

    def test_ocr_preview_when_service_down(self) -> None:
        self.use_ocr(None)

        response = self.client.post(
            "/transactions/ocr-preview", json={"image": "aGVsbG8="}, headers={"x-user-id": "1"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["amount"])


class CreateTransactionApiTests(ApiTestCase):
    def test_explicit_values(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "amount": "18.90",
                "currency": "USD",
                "description": "Train",
                "category_id": 2,
                "transaction_date": "2024-05-06T08:30:00Z",
            },
            headers={"x-user-id": "1"},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("18.90"))
        self.assertEqual(body["currency"], "USD")
        self.assertEqual(body["category_id"], 2)

    def test_lowercase_currency_is_normalized(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"amount": "4.20", "currency": " usd ", "description": "Coffee"},
            headers={"x-user-id": "1"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "USD")
        with self.engine.begin() as conn:
            self.assertEqual(conn.execute(select(transactions.c.currency)).scalar_one(), "USD")

    def test_receipt_text_fills_missing_amount_and_description(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"receipt_text": "TOTAL 23,50\nSuperMart\n"},
            headers={"x-user-id": "1"},
        )

        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("23.50"))
        self.assertEqual(body["description"], "TOTAL 23,50")
        self.assertEqual(body["currency"], "EUR")

    def test_receipt_image_goes_through_ocr_without_overriding_caller(self) -> None:
        self.use_ocr("Cafe Luna\nEspresso 2,80")

        response = self.client.post(
            "/transactions",
            json={"amount": "3.10", "receipt_image": "aGVsbG8="},
            headers={"x-user-id": "1"},
        )

        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("3.10"))
        self.assertEqual(body["description"], "Cafe Luna")
        self.assertTrue(body["receipt_image_url"].startswith("data:image/jpeg;base64,aGVsbG8="))

    def test_unreadable_receipt_without_amount_is_rejected(self) -> None:
        self.use_ocr(None)

        response = self.client.post(
            "/transactions",
            json={"description": "Mystery", "receipt_image": "aGVsbG8="},
            headers={"x-user-id": "1"},
        )

        self.assertEqual(response.status_code, 400)
        with self.engine.begin() as conn:
            self.assertEqual(conn.execute(select(transactions.c.id)).all(), [])

    def test_validation_errors(self) -> None:
        cases = [
            {"amount": "5", "currency": "US1", "description": "x"},
            {"amount": "0", "description": "x"},
            {"amount": "5"},
            {"amount": "5", "description": "x", "category_id": 3},
            {"amount": "5", "description": "x" * 501},
        ]
        for payload in cases:
            with self.subTest(payload=payload):
                response = self.client.post(
                    "/transactions", json=payload, headers={"x-user-id": "1"}
                )
                self.assertEqual(response.status_code, 400)


class BuildConverterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = datetime(2024, 5, 17, 9, 0, tzinfo=timezone.utc)

    def test_past_month_uses_its_last_day(self) -> None:
        converter = main.build_converter(MonthlyPeriod(2024, 2), now=self.now)

        self.assertEqual(converter.rate_date, date(2024, 2, 29))

    def test_current_and_future_months_use_latest_rates(self) -> None:
        for period in (MonthlyPeriod(2024, 5), MonthlyPeriod(2024, 6), MonthlyPeriod(2025, 1)):
            with self.subTest(period=period):
                self.assertIsNone(main.build_converter(period, now=self.now).rate_date)


if __name__ == "__main__":
    unittest.main()
