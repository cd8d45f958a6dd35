import random

from locust import HttpUser, task, between


class MinesPlayer(HttpUser):
    """Plays short mines rounds: start, reveal a few tiles, cash out."""

    wait_time = between(1, 2)
    host = "http://127.0.0.1:8000"

    def on_start(self):
        """
        Log in as the load-test player (see scripts/create_test_user.py).
        The session cookie is kept on self.client for later requests.
        """
        response = self.client.post(
            "/auth/login", data={"username": "testuser", "password": "password"}
        )
        if response.status_code != 200 or "session" not in response.cookies:
            print(f"Login failed with status {response.status_code}: {response.text}")
            self.environment.runner.quit()

    @task(5)
    def play_round(self):
        start = self.client.post(
            "/api/games/mines/start",
            json={"bet": 100, "grid_size": 25, "hazard_count": 3},
        )
        if start.status_code != 200:
            return
        round_id = start.json()["round_id"]

        tiles = random.sample(range(25), random.randint(1, 4))
        for tile_index in tiles:
            reveal = self.client.post(
                "/api/games/mines/reveal",
                json={"round_id": round_id, "tile_index": tile_index},
            )
            if reveal.status_code != 200 or reveal.json()["state"] != "playing":
                return

        self.client.post("/api/games/mines/cashout", json={"round_id": round_id})

    @task(1)
    def check_balance(self):
        self.client.get("/api/economy/balance")
