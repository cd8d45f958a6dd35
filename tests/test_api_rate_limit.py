import unittest

from fastapi.testclient import TestClient

from app.config import settings
from app.core.database import db
from app.core.security import SESSION_COOKIE, limiter, sign_session
from app.main import create_app


class TestApiRateLimit(unittest.TestCase):
    def setUp(self):
        # Create a new app instance for each test to ensure a clean state
        self.app = create_app()

        self._saved = (settings.rate_limit.enabled, settings.rate_limit.game_requests, limiter.enabled)

        # Ensure rate limiting is enabled for the test
        settings.rate_limit.enabled = True
        settings.rate_limit.game_requests = "5/second"
        limiter.enabled = True
        limiter.reset()

        result = db.create_user("ratelimit_user", "hunter22")
        if result["success"]:
            self.user_id = result["user_id"]
        else:
            self.user_id = db.login_user("ratelimit_user", "hunter22")["id"]

    def tearDown(self):
        settings.rate_limit.enabled, settings.rate_limit.game_requests, limiter.enabled = self._saved
        limiter.reset()

    def test_rate_limit_applied_to_game_endpoints(self):
        endpoint = "/api/games/mines/start"
        # Below min_bet: rejected by the game, so no credits move
        body = {"bet": 1, "grid_size": 25, "hazard_count": 3}

        with TestClient(self.app) as client:
            client.cookies.set(SESSION_COOKIE, sign_session(self.user_id, "ratelimit_user"))
            # The first 5 requests should succeed
            for i in range(5):
                response = client.post(endpoint, json=body)
                self.assertNotEqual(
                    response.status_code, 429,
                    f"Request {i+1}/6 should have succeeded, but got 429."
                )
                self.assertEqual(response.json()["error"], "invalid_configuration")

            # The 6th request should be rate-limited
            response = client.post(endpoint, json=body)
            self.assertEqual(
                response.status_code, 429,
                f"The 6th request should have been rate-limited (429), but got {response.status_code}."
            )

    def test_disabled_limiter_lets_requests_through(self):
        limiter.enabled = False
        settings.rate_limit.enabled = False

        with TestClient(self.app) as client:
            for _ in range(20):
                self.assertEqual(client.get("/api/games/mines/config").status_code, 200)


if __name__ == "__main__":
    unittest.main()
