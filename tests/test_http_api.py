import unittest

from fastapi.testclient import TestClient

from application.anti_cheat import RateLimit
from bootstrap import build_scoreboard
from config import ScoreboardSettings
from interfaces.http.app import create_app
from interfaces.http.auth import create_access_token
from fakes import ManualClock


class HttpApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.settings = ScoreboardSettings(
            auth_secret="http-auth-secret",
            action_token_secret="http-action-secret",
            broadcast_interval_ms=20,
            rate_limits=(RateLimit(3, 60000),),
        )
        self.scoreboard = build_scoreboard(self.settings, clock=self.clock)
        self.client = TestClient(create_app(self.scoreboard))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def _auth(self, user_id):
        token = create_access_token(user_id, self.settings.auth_secret)
        return {"Authorization": f"Bearer {token}"}

    def _request_token(self, user_id, action_type="COMPLETE_LEVEL"):
        response = self.client.post(
            "/api/actions/request", json={"actionType": action_type}, headers=self._auth(user_id)
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["data"]

    def _complete(self, user_id, action_token, completion_time=5000):
        return self.client.post(
            "/api/actions/complete",
            json={"actionToken": action_token, "proof": {"completionTime": completion_time}},
            headers=self._auth(user_id),
        )

    def test_request_then_complete_updates_score(self):
        data = self._request_token("alice")
        self.assertEqual(data["actionType"], "COMPLETE_LEVEL")
        self.assertIn("expiresAt", data)

        response = self._complete("alice", data["actionToken"])

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["scoreIncrement"], 100)
        self.assertEqual(body["data"]["oldScore"], 0)
        self.assertEqual(body["data"]["newScore"], 100)
        self.assertEqual(body["data"]["rank"], 1)

    def test_request_without_body_defaults_action_type(self):
        response = self.client.post("/api/actions/request", headers=self._auth("alice"))
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["actionType"], "COMPLETE_LEVEL")

    def test_replay_is_rejected(self):
        token = self._request_token("alice")["actionToken"]
        self.assertEqual(self._complete("alice", token).status_code, 200)

        replay = self._complete("alice", token)

        self.assertEqual(replay.status_code, 400)
        self.assertEqual(replay.json()["error"]["code"], "TOKEN_ALREADY_USED")
        self.assertFalse(replay.json()["success"])

    def test_garbage_token_is_invalid(self):
        response = self._complete("alice", "not-a-token")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "TOKEN_INVALID")

    def test_token_of_another_user_is_forbidden(self):
        token = self._request_token("alice")["actionToken"]
        response = self._complete("mallory", token)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "TOKEN_USER_MISMATCH")

    def test_suspicious_timing(self):
        token = self._request_token("alice")["actionToken"]
        response = self._complete("alice", token, completion_time=10)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "SUSPICIOUS_TIMING")

    def test_rate_limit_sets_retry_after(self):
        for _ in range(3):
            token = self._request_token("alice")["actionToken"]
            self.assertEqual(self._complete("alice", token).status_code, 200)

        token = self._request_token("alice")["actionToken"]
        response = self._complete("alice", token)

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers["Retry-After"], "60")
        self.assertEqual(response.json()["retryAfter"], 60)
        self.assertEqual(response.json()["error"]["code"], "RATE_LIMIT_EXCEEDED")

    def test_missing_proof_is_a_validation_error(self):
        token = self._request_token("alice")["actionToken"]
        response = self.client.post(
            "/api/actions/complete", json={"actionToken": token}, headers=self._auth("alice")
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "INVALID_REQUEST")

    def test_authentication_is_required(self):
        self.assertEqual(self.client.post("/api/actions/request").status_code, 401)
        self.assertEqual(self.client.get("/api/users/me/score").status_code, 401)

        forged = create_access_token("alice", "wrong-secret")
        response = self.client.get(
            "/api/users/me/score", headers={"Authorization": f"Bearer {forged}"}
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "UNAUTHORIZED")

    def test_leaderboard_orders_and_limits(self):
        for user, completions in (("alice", 1), ("bob", 3), ("carol", 2)):
            for _ in range(completions):
                self.clock.advance(seconds=1)
                token = self._request_token(user)["actionToken"]
                self.assertEqual(self._complete(user, token).status_code, 200)

        response = self.client.get("/api/leaderboard")
        board = response.json()["data"]["leaderboard"]
        self.assertEqual([row["userId"] for row in board], ["bob", "carol", "alice"])
        self.assertEqual([row["rank"] for row in board], [1, 2, 3])
        self.assertEqual(board[0]["score"], 300)

        limited = self.client.get("/api/leaderboard", params={"limit": 2}).json()["data"]["leaderboard"]
        self.assertEqual(len(limited), 2)

    def test_my_score(self):
        response = self.client.get("/api/users/me/score", headers=self._auth("alice"))
        self.assertEqual(response.json()["data"], {"userId": "alice", "score": 0, "rank": None, "totalActions": 0})

        token = self._request_token("alice")["actionToken"]
        self._complete("alice", token)

        data = self.client.get("/api/users/me/score", headers=self._auth("alice")).json()["data"]
        self.assertEqual((data["score"], data["rank"], data["totalActions"]), (100, 1, 1))

    def test_live_leaderboard_websocket(self):
        with self.client.websocket_connect("/api/leaderboard/live") as websocket:
            initial = websocket.receive_json()
            self.assertEqual(initial["type"], "leaderboard:initial")
            self.assertEqual(initial["leaderboard"], [])

            websocket.send_json({"type": "ping"})
            self.assertEqual(websocket.receive_json()["type"], "pong")

            websocket.send_text("not json")
            self.assertEqual(websocket.receive_json()["type"], "error")

            token = self._request_token("alice")["actionToken"]
            self.assertEqual(self._complete("alice", token).status_code, 200)

            update = websocket.receive_json()
            self.assertEqual(update["type"], "leaderboard:update")
            self.assertEqual(update["leaderboard"][0]["userId"], "alice")
            self.assertEqual(update["leaderboard"][0]["score"], 100)

            change = websocket.receive_json()
            self.assertEqual(change["type"], "score:update")
            self.assertEqual(
                (change["userId"], change["oldScore"], change["newScore"], change["increment"], change["newRank"]),
                ("alice", 0, 100, 100, 1),
            )

    def test_health_and_index(self):
        self.assertEqual(self.client.get("/healthz").json()["status"], "ok")
        self.assertTrue(self.client.get("/").json()["success"])


if __name__ == "__main__":
    unittest.main()
