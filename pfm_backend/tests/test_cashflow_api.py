import unittest

from fastapi.testclient import TestClient

from pfm_backend.db import engine, metadata
from pfm_backend.main import app

MAY = {"start_date": "2024-05-01", "end_date": "2024-05-31", "lookahead_days": 0}


class CashflowApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        metadata.drop_all(engine)
        metadata.create_all(engine)
        self.client = TestClient(app)
        self.user_id, self.headers = self.sign_up("owner@example.com")

    def sign_up(self, email: str) -> tuple[str, dict[str, str]]:
        response = self.client.post(
            "/api/v2/auth/signup",
            json={"email": email, "password": "s3cret-pass", "first_name": "Pat"},
        )
        self.assertEqual(response.status_code, 201)
        login = self.client.post(
            "/api/v2/auth/login", json={"email": email, "password": "s3cret-pass"}
        )
        self.assertEqual(login.status_code, 200)
        body = login.json()
        return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}

    def url(self, path: str) -> str:
        return f"/api/v2/users/{self.user_id}{path}"

    def create_rent_and_salary(self) -> tuple[str, str]:
        bill = self.client.post(
            self.url("/cashflow/bills"),
            headers=self.headers,
            json={"name": "Rent", "amount": "1200.00", "due_date": 1, "start_date": "2024-01-01"},
        )
        self.assertEqual(bill.status_code, 201)
        income = self.client.post(
            self.url("/cashflow/incomes"),
            headers=self.headers,
            json={
                "name": "Salary",
                "amount": "3000.00",
                "receive_date": 15,
                "start_date": "2024-01-01",
            },
        )
        self.assertEqual(income.status_code, 201)
        return bill.json()["bill"]["id"], income.json()["income"]["id"]

    def events(self, **params) -> list[dict]:
        response = self.client.get(
            self.url("/cashflow/events"), headers=self.headers, params={**MAY, **params}
        )
        self.assertEqual(response.status_code, 200)
        return response.json()["events"]

    def summary(self, **params) -> dict:
        response = self.client.get(
            self.url("/cashflow"), headers=self.headers, params={**MAY, **params}
        )
        self.assertEqual(response.status_code, 200)
        return response.json()["cashflow"]


class AuthApiTests(CashflowApiTestCase):
    def test_current_user_uses_bearer_token(self) -> None:
        response = self.client.get("/api/v2/users/current", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["email"], "owner@example.com")
        self.assertEqual(response.json()["user"]["id"], self.user_id)

    def test_duplicate_signup_conflicts(self) -> None:
        response = self.client.post(
            "/api/v2/auth/signup",
            json={"email": "OWNER@example.com", "password": "another"},
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json(), {"error": "Email already exists"})

    def test_wrong_password_is_rejected(self) -> None:
        response = self.client.post(
            "/api/v2/auth/login", json={"email": "owner@example.com", "password": "nope"}
        )

        self.assertEqual(response.status_code, 401)

    def test_missing_token_is_unauthorized(self) -> None:
        response = self.client.get(self.url("/cashflow/bills"))

        self.assertEqual(response.status_code, 401)
        self.assertIn("error", response.json())

    def test_garbage_token_is_unauthorized(self) -> None:
        response = self.client.get(
            self.url("/cashflow/bills"), headers={"Authorization": "Bearer not-a-token"}
        )

        self.assertEqual(response.status_code, 401)

    def test_other_users_data_is_not_found(self) -> None:
        self.create_rent_and_salary()
        _, intruder_headers = self.sign_up("intruder@example.com")

        response = self.client.get(self.url("/cashflow/bills"), headers=intruder_headers)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "User not found"})


class RuleApiTests(CashflowApiTestCase):
    def test_create_bill_serializes_amount_and_links(self) -> None:
        bill_id, _ = self.create_rent_and_salary()

        response = self.client.get(self.url("/cashflow/bills"), headers=self.headers)

        bills = response.json()["bills"]
        self.assertEqual(len(bills), 1)
        self.assertEqual(bills[0]["id"], bill_id)
        self.assertEqual(bills[0]["amount"], "1200.00")
        self.assertEqual(bills[0]["due_date"], 1)
        self.assertEqual(bills[0]["recurrence"], "monthly")
        self.assertTrue(bills[0]["active"])
        self.assertEqual(bills[0]["links"], {"category": None, "account": None})

    def test_invalid_day_is_a_validation_error(self) -> None:
        response = self.client.post(
            self.url("/cashflow/bills"),
            headers=self.headers,
            json={"name": "Rent", "amount": "1200.00", "due_date": 32},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "Validation failed")
        self.assertEqual(response.json()["details"][0]["field"], "due_date")

    def test_invalid_amount_is_a_validation_error(self) -> None:
        response = self.client.post(
            self.url("/cashflow/incomes"),
            headers=self.headers,
            json={"name": "Salary", "amount": "3000.5", "receive_date": 15},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "amount")

    def test_unknown_recurrence_is_rejected(self) -> None:
        response = self.client.post(
            self.url("/cashflow/bills"),
            headers=self.headers,
            json={"name": "Gym", "amount": "40.00", "due_date": 3, "recurrence": "quarterly"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "recurrence")

    def test_missing_field_uses_validation_envelope(self) -> None:
        response = self.client.post(
            self.url("/cashflow/bills"),
            headers=self.headers,
            json={"amount": "40.00", "due_date": 3},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "name")

    def test_update_changes_projection(self) -> None:
        bill_id, _ = self.create_rent_and_salary()

        response = self.client.put(
            self.url(f"/cashflow/bills/{bill_id}"),
            headers=self.headers,
            json={"amount": "1250.00", "due_date": 5},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["bill"]["amount"], "1250.00")
        bill_events = [event for event in self.events() if event["source_type"] == "bill"]
        self.assertEqual(len(bill_events), 1)
        self.assertEqual(bill_events[0]["event_date"], "2024-05-05")
        self.assertEqual(bill_events[0]["amount"], "-1250.00")

    def test_stop_and_reactivate(self) -> None:
        bill_id, _ = self.create_rent_and_salary()

        stopped = self.client.put(self.url(f"/cashflow/bills/{bill_id}/stop"), headers=self.headers)
        again = self.client.put(self.url(f"/cashflow/bills/{bill_id}/stop"), headers=self.headers)

        self.assertEqual(stopped.status_code, 200)
        self.assertFalse(stopped.json()["bill"]["active"])
        self.assertIsNotNone(stopped.json()["bill"]["stopped_at"])
        self.assertEqual(again.json()["bill"]["stopped_at"], stopped.json()["bill"]["stopped_at"])
        self.assertEqual([event["source_type"] for event in self.events()], ["income"])
        self.assertEqual(self.summary()["bills_count"], 0)

        reactivated = self.client.put(
            self.url(f"/cashflow/bills/{bill_id}/reactivate"), headers=self.headers
        )

        self.assertTrue(reactivated.json()["bill"]["active"])
        self.assertIsNone(reactivated.json()["bill"]["stopped_at"])
        self.assertEqual(len(self.events()), 2)

    def test_deleted_rule_disappears(self) -> None:
        bill_id, _ = self.create_rent_and_salary()

        response = self.client.delete(self.url(f"/cashflow/bills/{bill_id}"), headers=self.headers)

        self.assertEqual(response.status_code, 204)
        listed = self.client.get(self.url("/cashflow/bills"), headers=self.headers)
        self.assertEqual(listed.json()["bills"], [])
        self.assertEqual([event["source_type"] for event in self.events()], ["income"])
        missing = self.client.delete(self.url(f"/cashflow/bills/{bill_id}"), headers=self.headers)
        self.assertEqual(missing.status_code, 404)

    def test_deleting_rule_drops_its_edited_occurrences(self) -> None:
        bill_id, _ = self.create_rent_and_salary()
        self.client.put(
            self.url("/cashflow/events/override"),
            headers=self.headers,
            json={
                "source_type": "bill",
                "source_id": int(bill_id),
                "occurrence_date": "2024-05-01",
                "amount": "1500.00",
            },
        )

        self.client.delete(self.url(f"/cashflow/bills/{bill_id}"), headers=self.headers)

        self.assertEqual([event["name"] for event in self.events()], ["Salary"])
        self.assertEqual(self.summary()["total_bills"], "0.00")

    def test_stopped_rule_hides_edited_occurrence_until_reactivated(self) -> None:
        bill_id, _ = self.create_rent_and_salary()
        self.client.put(
            self.url("/cashflow/events/override"),
            headers=self.headers,
            json={
                "source_type": "bill",
                "source_id": int(bill_id),
                "occurrence_date": "2024-05-01",
                "amount": "1500.00",
            },
        )

        self.client.put(self.url(f"/cashflow/bills/{bill_id}/stop"), headers=self.headers)

        self.assertEqual(self.summary()["total_bills"], "0.00")

        self.client.put(self.url(f"/cashflow/bills/{bill_id}/reactivate"), headers=self.headers)

        self.assertEqual(self.summary()["total_bills"], "1500.00")


class TimelineApiTests(CashflowApiTestCase):
    def test_month_with_one_bill_and_one_income(self) -> None:
        bill_id, income_id = self.create_rent_and_salary()

        events = self.events()
        summary = self.summary()

        self.assertEqual(
            [(event["event_date"], event["amount"], event["event_type"]) for event in events],
            [("2024-05-01", "-1200.00", "expense"), ("2024-05-15", "3000.00", "income")],
        )
        self.assertEqual(events[0]["links"]["source"], bill_id)
        self.assertEqual(events[1]["source_id"], income_id)
        self.assertFalse(events[0]["processed"])
        self.assertEqual(summary["total_income"], "3000.00")
        self.assertEqual(summary["total_bills"], "1200.00")
        self.assertEqual(summary["net_cashflow"], "1800.00")
        self.assertEqual(summary["average_income"], "3000.00")
        self.assertEqual(summary["bills_count"], 1)
        self.assertEqual(summary["incomes_count"], 1)
        self.assertEqual(summary["events_count"], 2)

    def test_lookahead_extends_timeline_but_not_totals(self) -> None:
        self.create_rent_and_salary()

        events = self.events(lookahead_days=30)
        summary = self.summary(lookahead_days=30)

        self.assertEqual(
            [event["event_date"] for event in events],
            ["2024-05-01", "2024-05-15", "2024-06-01", "2024-06-15"],
        )
        self.assertEqual(summary["events_count"], 4)
        self.assertEqual(summary["net_cashflow"], "1800.00")

    def test_override_replaces_occurrence_and_delete_reverts(self) -> None:
        bill_id, _ = self.create_rent_and_salary()

        response = self.client.put(
            self.url("/cashflow/events/override"),
            headers=self.headers,
            json={
                "source_type": "bill",
                "source_id": int(bill_id),
                "occurrence_date": "2024-05-01",
                "amount": "1500.00",
            },
        )

        self.assertEqual(response.status_code, 200)
        override = response.json()["event"]
        self.assertEqual(override["amount"], "-1500.00")
        self.assertEqual(override["name"], "Rent")
        bill_events = [event for event in self.events() if event["source_type"] == "bill"]
        self.assertEqual(len(bill_events), 1)
        self.assertEqual(bill_events[0]["id"], override["id"])
        self.assertEqual(self.summary()["net_cashflow"], "1500.00")

        deleted = self.client.delete(
            self.url(f"/cashflow/events/{override['id']}"), headers=self.headers
        )

        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(self.summary()["net_cashflow"], "1800.00")

    def test_repeated_override_keeps_one_row_per_occurrence(self) -> None:
        bill_id, _ = self.create_rent_and_salary()
        body = {"source_type": "bill", "source_id": int(bill_id), "occurrence_date": "2024-05-01"}

        first = self.client.put(
            self.url("/cashflow/events/override"), headers=self.headers, json={**body, "amount": "1300.00"}
        )
        second = self.client.put(
            self.url("/cashflow/events/override"),
            headers=self.headers,
            json={**body, "event_date": "2024-05-03"},
        )

        self.assertEqual(first.json()["event"]["id"], second.json()["event"]["id"])
        bill_events = [event for event in self.events() if event["source_type"] == "bill"]
        self.assertEqual(
            [(event["event_date"], event["amount"]) for event in bill_events],
            [("2024-05-03", "-1300.00")],
        )

    def test_suppress_hides_occurrence_until_overridden(self) -> None:
        bill_id, _ = self.create_rent_and_salary()
        slot = {"source_type": "bill", "source_id": int(bill_id), "occurrence_date": "2024-05-01"}

        response = self.client.post(
            self.url("/cashflow/events/suppress"), headers=self.headers, json=slot
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual([event["source_type"] for event in self.events()], ["income"])
        self.assertEqual(self.summary()["total_bills"], "0.00")

        restored = self.client.put(
            self.url("/cashflow/events/override"), headers=self.headers, json={**slot, "name": "Rent (late)"}
        )

        self.assertEqual(restored.status_code, 200)
        names = [event["name"] for event in self.events()]
        self.assertEqual(names, ["Rent (late)", "Salary"])

    def test_override_on_non_occurrence_date_is_rejected(self) -> None:
        bill_id, _ = self.create_rent_and_salary()

        response = self.client.put(
            self.url("/cashflow/events/override"),
            headers=self.headers,
            json={"source_type": "bill", "source_id": int(bill_id), "occurrence_date": "2024-05-02"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "occurrence_date")

    def test_override_for_unknown_rule_is_not_found(self) -> None:
        response = self.client.put(
            self.url("/cashflow/events/override"),
            headers=self.headers,
            json={"source_type": "income", "source_id": 999, "occurrence_date": "2024-05-15"},
        )

        self.assertEqual(response.status_code, 404)

    def test_one_off_event_counts_in_summary(self) -> None:
        self.create_rent_and_salary()

        response = self.client.post(
            self.url("/cashflow/events"),
            headers=self.headers,
            json={
                "name": "Car repair",
                "amount": "350.00",
                "event_date": "2024-05-20",
                "event_type": "expense",
            },
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["event"]["amount"], "-350.00")
        self.assertEqual(response.json()["event"]["source_type"], "manual")
        self.assertEqual(len(self.events()), 3)
        self.assertEqual(self.summary()["total_bills"], "1550.00")

        edited = self.client.put(
            self.url(f"/cashflow/events/{response.json()['event']['id']}"),
            headers=self.headers,
            json={"amount": "400.00", "event_date": "2024-06-02"},
        )

        self.assertEqual(edited.status_code, 200)
        self.assertEqual(edited.json()["event"]["amount"], "-400.00")
        self.assertEqual(edited.json()["event"]["event_date"], "2024-06-02")
        self.assertEqual(self.summary()["total_bills"], "1200.00")

    def test_posted_transaction_appears_as_processed_event(self) -> None:
        self.create_rent_and_salary()
        account = self.client.post(
            self.url("/accounts"), headers=self.headers, json={"name": "Everyday"}
        )
        self.assertEqual(account.status_code, 201)
        account_id = account.json()["account"]["id"]

        txn = self.client.post(
            self.url("/transactions"),
            headers=self.headers,
            json={
                "account_id": int(account_id),
                "description": "Grocer",
                "amount": "-82.40",
                "posted_at": "2024-05-03",
            },
        )

        self.assertEqual(txn.status_code, 201)
        self.assertEqual(txn.json()["transaction"]["links"]["account"], account_id)
        actual = [event for event in self.events() if event["source_type"] == "transaction"]
        self.assertEqual(len(actual), 1)
        self.assertTrue(actual[0]["processed"])
        self.assertEqual(actual[0]["event_type"], "expense")
        self.assertEqual(self.summary()["total_bills"], "1282.40")

        removed = self.client.delete(
            self.url(f"/transactions/{txn.json()['transaction']['id']}"), headers=self.headers
        )

        self.assertEqual(removed.status_code, 204)
        self.assertEqual(len(self.events()), 2)

    def test_transaction_override_only_renames(self) -> None:
        account = self.client.post(
            self.url("/accounts"), headers=self.headers, json={"name": "Everyday"}
        )
        txn = self.client.post(
            self.url("/transactions"),
            headers=self.headers,
            json={
                "account_id": int(account.json()["account"]["id"]),
                "description": "POS 4411",
                "amount": "-12.00",
                "posted_at": "2024-05-07",
            },
        )
        slot = {
            "source_type": "transaction",
            "source_id": int(txn.json()["transaction"]["id"]),
            "occurrence_date": "2024-05-07",
        }

        renamed = self.client.put(
            self.url("/cashflow/events/override"), headers=self.headers, json={**slot, "name": "Lunch"}
        )
        blocked = self.client.put(
            self.url("/cashflow/events/override"), headers=self.headers, json={**slot, "amount": "5.00"}
        )

        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(blocked.status_code, 400)
        self.assertEqual(blocked.json()["details"][0]["field"], "amount")
        events = self.events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["name"], "Lunch")
        self.assertEqual(events[0]["amount"], "-12.00")
        self.assertTrue(events[0]["processed"])

    def test_transaction_for_unknown_account_is_not_found(self) -> None:
        response = self.client.post(
            self.url("/transactions"),
            headers=self.headers,
            json={"account_id": 42, "description": "Coffee", "amount": "-3.50", "posted_at": "2024-05-03"},
        )

        self.assertEqual(response.status_code, 404)

    def test_inverted_window_is_rejected(self) -> None:
        response = self.client.get(
            self.url("/cashflow/events"),
            headers=self.headers,
            params={"start_date": "2024-06-01", "end_date": "2024-05-01"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "start_date")

    def test_half_open_window_is_rejected(self) -> None:
        response = self.client.get(
            self.url("/cashflow"), headers=self.headers, params={"start_date": "2024-05-01"}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "end_date")


class SettingsApiTests(CashflowApiTestCase):
    def test_defaults_are_reported(self) -> None:
        settings = self.summary()["settings"]

        self.assertEqual(
            settings, {"auto_categorize": True, "show_projections": True, "projection_days": 90}
        )

    def test_projection_days_out_of_range(self) -> None:
        response = self.client.put(
            self.url("/cashflow"), headers=self.headers, json={"projection_days": 10}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "projection_days")

    def test_hiding_projections_keeps_one_offs(self) -> None:
        self.create_rent_and_salary()
        self.client.post(
            self.url("/cashflow/events"),
            headers=self.headers,
            json={"name": "Bonus", "amount": "500.00", "event_date": "2024-05-10", "event_type": "income"},
        )

        response = self.client.put(
            self.url("/cashflow"),
            headers=self.headers,
            json={"show_projections": False, "projection_days": 120},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json()["cashflow"]["settings"],
            {"auto_categorize": True, "show_projections": False, "projection_days": 120},
        )
        self.assertEqual([event["name"] for event in self.events()], ["Bonus"])

    def test_hiding_projections_keeps_transaction_renames(self) -> None:
        account = self.client.post(
            self.url("/accounts"), headers=self.headers, json={"name": "Everyday"}
        )
        txn = self.client.post(
            self.url("/transactions"),
            headers=self.headers,
            json={
                "account_id": int(account.json()["account"]["id"]),
                "description": "POS 4411",
                "amount": "-12.00",
                "posted_at": "2024-05-07",
            },
        )
        self.client.put(
            self.url("/cashflow/events/override"),
            headers=self.headers,
            json={
                "source_type": "transaction",
                "source_id": int(txn.json()["transaction"]["id"]),
                "occurrence_date": "2024-05-07",
                "name": "Lunch",
            },
        )

        response = self.client.put(
            self.url("/cashflow"), headers=self.headers, json={"show_projections": False}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual([event["name"] for event in self.events()], ["Lunch"])


if __name__ == "__main__":
    unittest.main()
