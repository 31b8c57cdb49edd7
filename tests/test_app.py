import threading
import time
import unittest
from unittest.mock import patch

from guestpass.app import create_app, create_testing_app
from guestpass.config import TestingConfig
from guestpass.exceptions import QRCodeGenerationException, SignOutException
from guestpass.repositories import RepositoryFactory

EMAIL = "organizer@example.com"
PASSWORD = "secret123"


class AppTestCase(unittest.TestCase):
    def setUp(self):
        self.repos = RepositoryFactory.create_memory_repositories({EMAIL: PASSWORD})
        self.guestpass = create_testing_app(repositories=self.repos)
        self.client = self.guestpass.app.test_client()

    def sign_in(self):
        return self.client.post("/login", data={"email": EMAIL, "password": PASSWORD})

    def complete_profile(self, name="Alice"):
        self.sign_in()
        return self.client.post("/profile/display-name", data={"name": name})

    def create_event(self, **overrides):
        payload = {
            "title": "Gala Dinner",
            "startsAt": "2026-11-01T18:00:00Z",
            "ownerId": "u1",
            "status": "active",
        }
        payload.update(overrides)
        return self.client.post("/api/events", json=payload)


class TestAuthGate(AppTestCase):
    def test_anonymous_home_shows_login_without_prompt(self):
        response = self.client.get("/")

        self.assertEqual(response.status_code, 200)
        body = response.get_data(as_text=True)
        self.assertIn("Sign in", body)
        self.assertNotIn("name-prompt-title", body)

    def test_bad_credentials(self):
        response = self.client.post("/login", data={"email": EMAIL, "password": "wrong"})

        self.assertEqual(response.status_code, 401)
        self.assertIn("Invalid credentials", response.get_data(as_text=True))

    def test_new_user_sees_prompt_over_inert_content(self):
        response = self.sign_in()
        self.assertEqual(response.status_code, 302)

        body = self.client.get("/").get_data(as_text=True)

        self.assertIn("name-prompt-title", body)
        self.assertIn("inert", body)
        self.assertIn("Your events", body)
        self.assertIn(EMAIL, body)

    def test_prompt_submit_completes_profile(self):
        response = self.complete_profile("Alice")
        self.assertEqual(response.status_code, 302)

        body = self.client.get("/").get_data(as_text=True)
        self.assertNotIn("name-prompt-title", body)
        self.assertIn("Alice", body)

        state = self.client.get("/api/auth/state").get_json()
        self.assertTrue(state["hasDisplayName"])
        self.assertEqual(state["displayName"], "Alice")
        self.assertFalse(state["loading"])

    def test_invalid_name_keeps_prompt_and_input(self):
        self.sign_in()

        response = self.client.post("/profile/display-name", data={"name": "A"})

        body = response.get_data(as_text=True)
        self.assertIn("name-prompt-title", body)
        self.assertIn("Name must be at least 2 characters", body)
        self.assertIn('value="A"', body)
        self.assertFalse(self.client.get("/api/auth/state").get_json()["hasDisplayName"])

    def test_persistence_failure_keeps_prompt(self):
        self.sign_in()
        with patch.object(self.repos.profiles, "save_display_name", side_effect=RuntimeError("down")):
            response = self.client.post("/profile/display-name", data={"name": "Alice"})

        self.assertIn("name-prompt-title", response.get_data(as_text=True))
        self.assertFalse(self.client.get("/api/auth/state").get_json()["hasDisplayName"])

    def test_slow_session_check_renders_loading_view(self):
        app = create_app({"AUTH_CHECK_TIMEOUT": 0.05}, repositories=self.repos, config_class=TestingConfig)
        client = app.app.test_client()
        release = threading.Event()

        def slow_check(token):
            release.wait(3)
            return None

        with patch.object(self.repos.sessions, "get_current_user", side_effect=slow_check):
            started = time.monotonic()
            response = client.get("/")
            elapsed = time.monotonic() - started
        release.set()

        body = response.get_data(as_text=True)
        self.assertIn('aria-label="Loading"', body)
        self.assertIn('http-equiv="refresh"', body)
        self.assertLess(elapsed, 1.5)

    def test_signup_and_magic_link(self):
        response = self.client.post("/signup", data={"email": "new@example.com", "password": "pw123456"})
        self.assertEqual(response.status_code, 302)

        response = self.client.post("/magic-link", data={"email": EMAIL})
        self.assertIn("Check your email", response.get_data(as_text=True))


class TestAuthApi(AppTestCase):
    def test_me_without_session(self):
        response = self.client.get("/api/auth/me")
        self.assertEqual(response.get_json(), {"user": None})

    def test_me_with_session(self):
        self.sign_in()
        user = self.client.get("/api/auth/me").get_json()["user"]
        self.assertEqual(user["email"], EMAIL)
        self.assertNotIn("access_token", user)

    def test_sign_out(self):
        self.complete_profile()

        response = self.client.post("/api/auth/sign-out")

        self.assertEqual(response.get_json(), {"success": True})
        state = self.client.get("/api/auth/state").get_json()
        self.assertIsNone(state["session"])
        self.assertIsNone(state["displayName"])

    def test_failed_sign_out_still_clears_session(self):
        self.complete_profile()
        with patch.object(self.repos.sessions, "sign_out", side_effect=SignOutException("network down")):
            response = self.client.post("/api/auth/sign-out")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "network down"})
        self.assertIsNone(self.client.get("/api/auth/state").get_json()["session"])

    def test_logout_page_redirects_to_login(self):
        self.complete_profile()
        response = self.client.post("/logout")
        self.assertEqual(response.status_code, 302)
        self.assertIn("/login", response.headers["Location"])
        self.assertIn("Sign in", self.client.get("/").get_data(as_text=True))

    def test_display_name_api(self):
        response = self.client.put("/api/profile/display-name", json={"name": "Alice"})
        self.assertEqual(response.status_code, 401)

        self.sign_in()
        response = self.client.put("/api/profile/display-name", json={"name": " "})
        self.assertEqual(response.status_code, 400)

        response = self.client.put("/api/profile/display-name", json={"name": "Alice"})
        self.assertEqual(response.get_json(), {"displayName": "Alice"})

        response = self.client.put("/api/profile/display-name", json={"name": "Again"})
        self.assertEqual(response.status_code, 409)


class TestEventRoutes(AppTestCase):
    def test_create_requires_fields(self):
        response = self.create_event(title="")
        self.assertEqual(response.status_code, 400)
        self.assertIn("title", response.get_json()["error"])

    def test_crud(self):
        created = self.create_event()
        self.assertEqual(created.status_code, 201)
        event_id = created.get_json()["data"]["id"]

        fetched = self.client.get(f"/api/events/{event_id}").get_json()["data"]
        self.assertEqual(fetched["title"], "Gala Dinner")
        self.assertEqual(fetched["totalGuests"], 0)

        patched = self.client.patch(f"/api/events/{event_id}", json={"status": "closed"})
        self.assertEqual(patched.get_json()["data"]["status"], "closed")

        listed = self.client.get("/api/events?ownerId=u1").get_json()["data"]
        self.assertEqual([event["id"] for event in listed], [event_id])

        self.assertEqual(self.client.delete(f"/api/events/{event_id}").status_code, 204)
        self.assertEqual(self.client.get(f"/api/events/{event_id}").status_code, 404)

    def test_missing_event(self):
        self.assertEqual(self.client.get("/api/events/missing").status_code, 404)
        self.assertEqual(self.client.patch("/api/events/missing", json={"title": "X"}).status_code, 404)

    def test_backend_failure_is_500(self):
        with patch.object(self.repos.events, "list_events", side_effect=RuntimeError("boom")):
            response = self.client.get("/api/events")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Internal server error"})

    def test_bad_start_time_is_rejected_and_not_saved(self):
        response = self.create_event(startsAt="tomorrow")
        self.assertEqual(response.status_code, 400)
        self.assertIn("startsAt", response.get_json()["error"])

        listed = self.client.get("/api/events")
        self.assertEqual(listed.status_code, 200)
        self.assertEqual(listed.get_json()["data"], [])

        event_id = self.create_event().get_json()["data"]["id"]
        patched = self.client.patch(f"/api/events/{event_id}", json={"startsAt": "soon"})
        self.assertEqual(patched.status_code, 400)
        self.assertEqual(self.client.get("/api/events").status_code, 200)


class TestGuestRoutes(AppTestCase):
    def setUp(self):
        super().setUp()
        self.event_id = self.create_event().get_json()["data"]["id"]
        response = self.client.post(f"/api/events/{self.event_id}/guests", json={"name": "Ann"})
        self.guest = response.get_json()["data"]

    def test_bulk_create_and_list(self):
        response = self.client.post(f"/api/events/{self.event_id}/guests",
                                    json=[{"name": "Ben"}, {"name": "Cat"}])
        self.assertEqual(response.status_code, 201)

        names = [g["name"] for g in self.client.get(f"/api/events/{self.event_id}/guests").get_json()["data"]]
        self.assertEqual(sorted(names), ["Ann", "Ben", "Cat"])

    def test_update_and_delete_guest(self):
        response = self.client.patch(f"/api/guests/{self.guest['id']}", json={"name": "Anne"})
        self.assertEqual(response.get_json()["data"]["name"], "Anne")
        self.assertEqual(self.client.delete(f"/api/guests/{self.guest['id']}").status_code, 204)
        self.assertEqual(self.client.get(f"/api/guests/{self.guest['id']}/qr-code").status_code, 404)

    def test_qr_code(self):
        response = self.client.get(f"/api/guests/{self.guest['id']}/qr-code")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "image/png")
        self.assertTrue(response.data.startswith(b"\x89PNG"))
        self.assertIn("immutable", response.headers["Cache-Control"])
        self.assertIn(f"qr-{self.guest['id']}.png", response.headers["Content-Disposition"])

    def test_qr_code_errors(self):
        self.assertEqual(self.client.get("/api/guests/%20/qr-code").status_code, 400)
        self.assertEqual(self.client.get("/api/guests/unknown/qr-code").status_code, 404)

        with patch.object(self.guestpass.qr_service, "render_png",
                          side_effect=QRCodeGenerationException(self.guest["id"], "boom")):
            response = self.client.get(f"/api/guests/{self.guest['id']}/qr-code")
        self.assertEqual(response.status_code, 500)

    def test_check_in_requires_session(self):
        response = self.client.post(f"/api/events/{self.event_id}/check-in",
                                    json={"uniqueCode": self.guest["uniqueCode"]})
        self.assertEqual(response.status_code, 401)

    def test_check_in(self):
        self.complete_profile("Alice")
        url = f"/api/events/{self.event_id}/check-in"

        first = self.client.post(url, json={"uniqueCode": self.guest["uniqueCode"]}).get_json()
        second = self.client.post(url, json={"uniqueCode": self.guest["uniqueCode"]}).get_json()
        unknown = self.client.post(url, json={"uniqueCode": "NOPE"}).get_json()

        self.assertEqual(first["status"], "ok")
        self.assertEqual(first["guest"]["checkedInBy"], "Alice")
        self.assertEqual(second["status"], "already")
        self.assertEqual(unknown, {"status": "not_found"})

        event = self.client.get(f"/api/events/{self.event_id}").get_json()["data"]
        self.assertEqual(event["checkedInGuests"], 1)

    def test_malformed_guest_payloads_are_rejected(self):
        response = self.client.post(f"/api/events/{self.event_id}/guests", json=["Ben", "Cat"])
        self.assertEqual(response.status_code, 400)

        self.complete_profile("Alice")
        response = self.client.post(f"/api/events/{self.event_id}/check-in", json={"uniqueCode": 123})
        self.assertEqual(response.status_code, 400)
        self.assertIn("uniqueCode", response.get_json()["error"])

    def test_health(self):
        self.assertEqual(self.client.get("/health").get_json()["status"], "healthy")


if __name__ == '__main__':
    unittest.main()
