import tempfile
import unittest
from pathlib import Path
import sys
from unittest.mock import patch

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402

ADMIN_USER = {
    "id": "auth-admin-1",
    "email": "admin@example.com",
    "app_metadata": {"role": "admin"},
    "user_metadata": {},
}


class AdminCrmTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.original_supabase_url = main.SUPABASE_URL
        cls.original_backend = main.BACKEND
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.test_db_path = Path(cls.tempdir.name) / "test.db"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        main.SUPABASE_URL = cls.original_supabase_url
        main.BACKEND = cls.original_backend
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        main.DB_PATH = self.test_db_path
        main.SUPABASE_URL = ""
        main.init_backend()
        self.backend = main.get_backend()
        self.statuses = {status["name"]: status for status in main.quote_statuses(self.backend)}
        gate = patch.object(main, "require_admin_user", return_value=ADMIN_USER)
        gate.start()
        self.addCleanup(gate.stop)

    def _client(self, first_name: str = "Dana", last_name: str = "Cruz", email: str = "dana@example.com") -> dict:
        payload = main.ClientIn(first_name=first_name, last_name=last_name, email=email)
        return main.create_client(payload, request=object())["data"]

    def _quote(self, status: str, coverage: float, premium: float, **extra) -> dict:
        return self.backend.insert(
            "quotes",
            {
                "title": f"{status} quote",
                "status_id": self.statuses[status]["id"],
                "coverage_amount": coverage,
                "premium_amount": premium,
                **extra,
            },
        )

    def test_quote_statuses_listed_in_pipeline_order(self) -> None:
        statuses = main.list_quote_statuses(request=object())["data"]
        self.assertEqual(
            [status["name"] for status in statuses],
            ["new_request", "contacted", "quoted", "closed_won", "closed_lost"],
        )
        self.assertTrue(all(status["is_active"] is True for status in statuses))

    def test_inactive_statuses_are_hidden(self) -> None:
        self.backend.update("quote_statuses", self.statuses["contacted"]["id"], {"is_active": False})
        names = [status["name"] for status in main.list_quote_statuses(request=object())["data"]]
        self.assertNotIn("contacted", names)
        self.assertEqual(len(names), 4)

    def test_create_quote_defaults_to_new_request_and_embeds_client(self) -> None:
        client = self._client()
        created = main.create_quote(
            main.QuoteIn(title="Family health plan", client_id=client["id"], insurance_type="Health"),
            request=object(),
        )["data"]

        self.assertEqual(created["status"]["name"], "new_request")
        self.assertEqual(created["client"]["first_name"], "Dana")
        self.assertEqual(created["insurance_type"], "health")
        self.assertIsNone(created["assigned_user"])

        fetched = main.get_quote(created["id"], request=object())["data"]
        self.assertEqual(fetched["title"], "Family health plan")

    def test_create_quote_rejects_unknown_client(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            main.create_quote(main.QuoteIn(title="Orphan", client_id="missing"), request=object())
        self.assertEqual(exc.exception.status_code, 400)
        self.assertIn("Unknown client", str(exc.exception.detail))

    def test_update_quote_moves_status_and_touches_updated_at(self) -> None:
        quote = self._quote("new_request", 50000, 400)
        updated = main.update_quote(
            quote["id"],
            main.QuoteUpdate(status_id=self.statuses["quoted"]["id"], premium_amount=450),
            request=object(),
        )["data"]

        self.assertEqual(updated["status"]["name"], "quoted")
        self.assertEqual(updated["premium_amount"], 450)
        self.assertEqual(updated["coverage_amount"], 50000)
        self.assertGreater(updated["updated_at"], quote["updated_at"])

    def test_update_quote_rejects_unknown_status_and_missing_quote(self) -> None:
        quote = self._quote("new_request", 1000, 10)
        with self.assertRaises(HTTPException) as exc:
            main.update_quote(quote["id"], main.QuoteUpdate(status_id="nope"), request=object())
        self.assertEqual(exc.exception.status_code, 400)

        with self.assertRaises(HTTPException) as exc:
            main.update_quote("missing", main.QuoteUpdate(notes="x"), request=object())
        self.assertEqual(exc.exception.status_code, 404)

    def test_list_quotes_filters(self) -> None:
        self._quote("quoted", 1000, 10, insurance_type="auto")
        self._quote("quoted", 2000, 20, insurance_type="life")
        self._quote("contacted", 3000, 30, insurance_type="auto")

        quoted = main.list_quotes(request=object(), status_id=self.statuses["quoted"]["id"])["data"]
        self.assertEqual(len(quoted), 2)

        auto_quoted = main.list_quotes(
            request=object(),
            status_id=self.statuses["quoted"]["id"],
            insurance_type="auto",
        )["data"]
        self.assertEqual([quote["coverage_amount"] for quote in auto_quoted], [1000])

    def test_dashboard_stats(self) -> None:
        self._quote("closed_won", 100000, 1200)
        self._quote("closed_won", 50000, 800)
        self._quote("closed_lost", 75000, 900)
        self._quote("quoted", 20000, 300)

        stats = main.get_dashboard_stats(request=object())["data"]
        self.assertEqual(stats["totalQuotes"], 4)
        self.assertEqual(stats["activeQuotes"], 1)
        self.assertEqual(stats["wonQuotes"], 2)
        self.assertEqual(stats["lostQuotes"], 1)
        self.assertEqual(stats["totalRevenue"], 2000)
        self.assertEqual(stats["totalCoverage"], 150000)
        self.assertEqual(stats["winRate"], 67)

        pipeline = {entry["name"]: entry for entry in stats["pipelineStats"]}
        self.assertEqual(list(pipeline), ["new_request", "contacted", "quoted", "closed_won", "closed_lost"])
        self.assertEqual(pipeline["closed_won"]["count"], 2)
        self.assertEqual(pipeline["closed_won"]["total_coverage"], 150000)
        self.assertEqual(pipeline["new_request"]["count"], 0)

    def test_win_rate_is_zero_without_closed_quotes(self) -> None:
        statuses = list(self.statuses.values())
        quotes = [{"status_id": self.statuses["quoted"]["id"], "coverage_amount": None}]
        stats = main.compute_dashboard_stats(quotes, statuses)
        self.assertEqual(stats["winRate"], 0)
        self.assertEqual(stats["activeQuotes"], 1)
        self.assertEqual(stats["totalRevenue"], 0)

    def test_win_rate_rounds_half_up(self) -> None:
        statuses = list(self.statuses.values())
        won = {"status_id": self.statuses["closed_won"]["id"]}
        lost = {"status_id": self.statuses["closed_lost"]["id"]}
        self.assertEqual(main.compute_dashboard_stats([won, lost], statuses)["winRate"], 50)
        self.assertEqual(main.compute_dashboard_stats([won] * 5 + [lost] * 3, statuses)["winRate"], 63)

    def test_client_search_is_case_insensitive(self) -> None:
        self._client()
        self._client(first_name="Lee", last_name="Park", email="lee.park@example.com")

        self.assertEqual(len(main.list_clients(request=object())["data"]), 2)
        self.assertEqual(
            [client["last_name"] for client in main.list_clients(request=object(), search="DAN")["data"]],
            ["Cruz"],
        )
        self.assertEqual(
            [client["first_name"] for client in main.list_clients(request=object(), search="park@")["data"]],
            ["Lee"],
        )
        self.assertEqual(main.list_clients(request=object(), search="zzz")["data"], [])

    def test_create_client_requires_names(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            main.create_client(main.ClientIn(first_name=" ", last_name="Cruz"), request=object())
        self.assertEqual(exc.exception.status_code, 400)

    def test_user_crud_with_role_and_status_validation(self) -> None:
        created = main.create_user(
            main.UserIn(
                full_name="Vera Vendor",
                email="Vera@Example.com",
                role="Vendor",
                department="Operations",
                job_title="Adjuster",
            ),
            request=object(),
        )["data"]
        self.assertEqual(created["email"], "vera@example.com")
        self.assertEqual(created["role"], "vendor")
        self.assertIs(created["is_active"], True)

        with self.assertRaises(HTTPException) as exc:
            main.create_user(main.UserIn(full_name="Bad Role", email="bad@example.com", role="owner"), request=object())
        self.assertEqual(exc.exception.status_code, 400)

        with self.assertRaises(HTTPException) as exc:
            main.create_user(main.UserIn(full_name="Dup", email="vera@example.com"), request=object())
        self.assertEqual(exc.exception.detail, "Email already exists")

        suspended = main.update_user(created["id"], main.UserUpdate(status="suspended"), request=object())["data"]
        self.assertEqual(suspended["status"], "suspended")
        self.assertIs(suspended["is_active"], False)

        with self.assertRaises(HTTPException) as exc:
            main.update_user(created["id"], main.UserUpdate(status="retired"), request=object())
        self.assertEqual(exc.exception.status_code, 400)

        fetched = main.get_user(created["id"], request=object())["data"]
        self.assertEqual(fetched["job_title"], "Adjuster")

        main.delete_user(created["id"], request=object())
        with self.assertRaises(HTTPException) as exc:
            main.get_user(created["id"], request=object())
        self.assertEqual(exc.exception.status_code, 404)

    def test_list_users_filters_and_sorts_by_name(self) -> None:
        for full_name, email, role in (
            ("Zed Agent", "zed@example.com", "employee"),
            ("Amy Agent", "amy@example.com", "employee"),
            ("Cal Client", "cal@example.com", "client"),
        ):
            main.create_user(main.UserIn(full_name=full_name, email=email, role=role), request=object())

        employees = main.list_users(request=object(), role="employee")["data"]
        self.assertEqual([user["full_name"] for user in employees], ["Amy Agent", "Zed Agent"])

        found = main.list_users(request=object(), search="cal@")["data"]
        self.assertEqual([user["role"] for user in found], ["client"])

        active = main.list_users(request=object(), status="active")["data"]
        self.assertEqual(len(active), 4)

        with self.assertRaises(HTTPException):
            main.list_users(request=object(), role="wizard")

    def test_create_user_with_password_can_sign_in(self) -> None:
        main.create_user(
            main.UserIn(full_name="Eve Employee", email="eve@example.com", password="EvePass123!"),
            request=object(),
        )
        session = self.backend.sign_in_with_password("eve@example.com", "EvePass123!")
        self.assertEqual(session["user"]["app_metadata"]["role"], "employee")
        self.assertFalse(main.is_admin_user(session["user"]))

        with self.assertRaises(HTTPException) as exc:
            main.create_user(
                main.UserIn(full_name="Short", email="short@example.com", password="abc"),
                request=object(),
            )
        self.assertEqual(exc.exception.status_code, 400)

    def test_created_login_shares_id_with_user_row(self) -> None:
        created = main.create_user(
            main.UserIn(full_name="Omar Ops", email="omar@example.com", password="OmarPass123!"),
            request=object(),
        )["data"]
        session = self.backend.sign_in_with_password("omar@example.com", "OmarPass123!")
        self.assertEqual(session["user"]["id"], created["id"])

    def test_seeded_admin_shares_id_with_user_row(self) -> None:
        session = self.backend.sign_in_with_password(main.DEFAULT_ADMIN_EMAIL, main.DEFAULT_ADMIN_PASSWORD)
        row = self.backend.select("users", filters={"email": main.DEFAULT_ADMIN_EMAIL}, order_by=None)[0]
        self.assertEqual(row["id"], session["user"]["id"])
        self.assertEqual(row["role"], "admin")

    def test_vendor_profile_fields(self) -> None:
        vendor = main.create_user(
            main.UserIn(
                full_name="Mia Partner",
                email="mia@example.com",
                role="vendor",
                vendor_company_name="Harbor MGA",
                vendor_type="MGA",
                preferred_language="es",
                timezone="America/Chicago",
            ),
            request=object(),
        )["data"]
        self.assertEqual(vendor["vendor_company_name"], "Harbor MGA")
        self.assertEqual(vendor["vendor_type"], "mga")
        self.assertEqual(vendor["preferred_language"], "es")
        self.assertEqual(vendor["timezone"], "America/Chicago")

        updated = main.update_user(vendor["id"], main.UserUpdate(vendor_type="carrier"), request=object())["data"]
        self.assertEqual(updated["vendor_type"], "carrier")

        with self.assertRaises(HTTPException) as exc:
            main.update_user(vendor["id"], main.UserUpdate(vendor_type="broker"), request=object())
        self.assertEqual(exc.exception.status_code, 400)

        demoted = main.update_user(vendor["id"], main.UserUpdate(role="client"), request=object())["data"]
        self.assertIsNone(demoted["vendor_company_name"])
        self.assertIsNone(demoted["vendor_type"])

    def test_profile_defaults_and_language_validation(self) -> None:
        employee = main.create_user(
            main.UserIn(
                full_name="Ed Employee",
                email="ed@example.com",
                vendor_company_name="Ignored Co",
                vendor_type="partner",
            ),
            request=object(),
        )["data"]
        self.assertEqual(employee["timezone"], "America/New_York")
        self.assertEqual(employee["preferred_language"], "en")
        self.assertIsNone(employee["vendor_company_name"])
        self.assertIsNone(employee["vendor_type"])

        with self.assertRaises(HTTPException) as exc:
            main.create_user(
                main.UserIn(full_name="Dee", email="dee@example.com", preferred_language="de"),
                request=object(),
            )
        self.assertEqual(exc.exception.status_code, 400)

        with self.assertRaises(HTTPException):
            main.update_user(employee["id"], main.UserUpdate(preferred_language="jp"), request=object())

    def test_search_treats_wildcards_literally(self) -> None:
        self._client()
        self._client(first_name="Lee", last_name="Park", email="lee_park@example.com")

        self.assertEqual(main.list_clients(request=object(), search="%")["data"], [])
        self.assertEqual(
            [client["first_name"] for client in main.list_clients(request=object(), search="lee_")["data"]],
            ["Lee"],
        )
        self.assertEqual(main.list_clients(request=object(), search="d_na")["data"], [])

    def test_activities_embed_user_quote_and_client(self) -> None:
        member = main.create_user(main.UserIn(full_name="Sam Sales", email="sam@example.com"), request=object())["data"]
        client = self._client()
        quote = self._quote("contacted", 1000, 10)
        self.backend.insert(
            "activities",
            {
                "user_id": member["id"],
                "quote_id": quote["id"],
                "client_id": client["id"],
                "activity_type": "call",
            },
        )
        self.backend.insert("activities", {"user_id": "gone", "activity_type": "note"})

        activities = {item["activity_type"]: item for item in main.list_activities(request=object())["data"]}
        call = activities["call"]
        self.assertEqual(call["user"]["full_name"], "Sam Sales")
        self.assertEqual(call["quote"]["title"], "contacted quote")
        self.assertEqual(call["client"], {"id": client["id"], "first_name": "Dana", "last_name": "Cruz"})

        note = activities["note"]
        self.assertIsNone(note["user"])
        self.assertIsNone(note["quote"])
        self.assertIsNone(note["client"])

    def test_departments_listed_by_name(self) -> None:
        names = [department["name"] for department in main.list_departments(request=object())["data"]]
        self.assertEqual(names, ["Claims", "Operations", "Sales", "Service"])

    def test_activities_are_stamped_and_filtered(self) -> None:
        quote = self._quote("contacted", 1000, 10)
        created = main.create_activity(
            main.ActivityIn(activity_type="call", description=" Left voicemail ", quote_id=quote["id"]),
            request=object(),
        )["data"]
        self.assertEqual(created["user_id"], "auth-admin-1")
        self.assertEqual(created["description"], "Left voicemail")

        main.create_activity(main.ActivityIn(activity_type="email"), request=object())

        for_quote = main.list_activities(request=object(), quote_id=quote["id"])["data"]
        self.assertEqual([activity["activity_type"] for activity in for_quote], ["call"])
        self.assertEqual(len(main.list_activities(request=object())["data"]), 2)

    def test_activity_list_is_capped(self) -> None:
        for index in range(main.ACTIVITY_LIMIT + 5):
            self.backend.insert("activities", {"activity_type": "note", "description": str(index)})
        self.assertEqual(len(main.list_activities(request=object())["data"]), main.ACTIVITY_LIMIT)


if __name__ == "__main__":
    unittest.main()
