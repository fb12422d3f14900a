import os
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import jwt

from application.tokens import ActionTokenService
from domain.errors import (
    TokenAlreadyUsed,
    TokenExpired,
    TokenInvalid,
    TokenNotFound,
    TokenUserMismatch,
)
from infrastructure.db.token_repository_sqlite import SqliteActionTokenRepository
from infrastructure.memory.token_repository import InMemoryActionTokenRepository
from fakes import ManualClock

SECRET = "test-action-token-secret"


def consume_concurrently(service, reference, user_id, callers=16):
    """Fire `callers` consumes at once; return (successes, errors)."""

    barrier = threading.Barrier(callers)

    def attempt():
        barrier.wait()
        try:
            service.consume(reference, user_id)
            return None
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=callers) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(callers)))
    successes = [o for o in outcomes if o is None]
    errors = [o for o in outcomes if o is not None]
    return successes, errors


class ActionTokenServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.repo = InMemoryActionTokenRepository()
        self.service = ActionTokenService(
            self.repo, SECRET, default_ttl=timedelta(minutes=5), clock=self.clock
        )

    def test_issue_binds_user_action_and_expiry(self):
        issued = self.service.issue("u1", "COMPLETE_LEVEL")

        self.assertEqual(issued.token.user_id, "u1")
        self.assertEqual(issued.token.action_type, "COMPLETE_LEVEL")
        self.assertEqual(issued.token.issued_at, self.clock())
        self.assertEqual(issued.token.expires_at, self.clock() + timedelta(minutes=5))
        self.assertFalse(issued.token.used)
        self.assertIsNotNone(self.repo.get(issued.token.id))

        claims = jwt.decode(issued.reference, SECRET, algorithms=["HS256"], options={"verify_exp": False})
        self.assertEqual(claims["jti"], issued.token.id)
        self.assertEqual(claims["sub"], "u1")
        self.assertEqual(claims["act"], "COMPLETE_LEVEL")

    def test_consume_once_then_already_used(self):
        issued = self.service.issue("u1", "A")

        token = self.service.consume(issued.reference, "u1")
        self.assertTrue(token.used)
        self.assertTrue(self.repo.get(issued.token.id).used)

        with self.assertRaises(TokenAlreadyUsed):
            self.service.consume(issued.reference, "u1")

    def test_expired_token_is_reported_as_expired_even_when_used(self):
        unused = self.service.issue("u1", "A")
        used = self.service.issue("u1", "A")
        self.service.consume(used.reference, "u1")

        self.clock.advance(minutes=5, seconds=1)

        with self.assertRaises(TokenExpired):
            self.service.consume(unused.reference, "u1")
        with self.assertRaises(TokenExpired):
            self.service.consume(used.reference, "u1")

    def test_token_is_still_valid_at_exact_expiry(self):
        issued = self.service.issue("u1", "A", ttl=timedelta(seconds=30))
        self.clock.advance(seconds=30)
        self.service.consume(issued.reference, "u1")

    def test_user_mismatch_does_not_consume(self):
        issued = self.service.issue("u1", "A")

        with self.assertRaises(TokenUserMismatch):
            self.service.consume(issued.reference, "u2")
        self.assertFalse(self.repo.get(issued.token.id).used)

        self.service.consume(issued.reference, "u1")

    def test_tampered_reference_is_invalid(self):
        issued = self.service.issue("u1", "A")
        forged = jwt.encode(
            {"jti": issued.token.id, "sub": "u1", "act": "BOSS"}, "attacker-secret", algorithm="HS256"
        )
        header, payload, signature = issued.reference.split(".")
        flipped = header + "." + payload + "." + ("A" if signature[0] != "A" else "B") + signature[1:]

        for reference in (forged, flipped, "not-a-token", ""):
            with self.assertRaises(TokenInvalid):
                self.service.consume(reference, "u1")
        self.assertFalse(self.repo.get(issued.token.id).used)

    def test_signed_reference_for_unknown_record_is_not_found(self):
        other_store = ActionTokenService(InMemoryActionTokenRepository(), SECRET, clock=self.clock)
        issued = other_store.issue("u1", "A")

        with self.assertRaises(TokenNotFound):
            self.service.consume(issued.reference, "u1")

    def test_concurrent_consumes_have_exactly_one_winner(self):
        issued = self.service.issue("u1", "A")

        successes, errors = consume_concurrently(self.service, issued.reference, "u1")

        self.assertEqual(len(successes), 1)
        self.assertEqual(len(errors), 15)
        self.assertTrue(all(isinstance(e, TokenAlreadyUsed) for e in errors))

    def test_purge_expired_removes_only_expired_records(self):
        short = self.service.issue("u1", "A", ttl=timedelta(seconds=10))
        long = self.service.issue("u1", "A", ttl=timedelta(minutes=10))
        self.clock.advance(minutes=1)

        self.assertEqual(self.service.purge_expired(), 1)
        self.assertIsNone(self.repo.get(short.token.id))
        self.assertIsNotNone(self.repo.get(long.token.id))

    def test_expired_token_stays_expired_after_purge(self):
        issued = self.service.issue("u1", "A")
        self.clock.advance(minutes=6)

        self.assertEqual(self.service.purge_expired(), 1)
        self.assertIsNone(self.repo.get(issued.token.id))

        for _ in range(2):
            with self.assertRaises(TokenExpired):
                self.service.consume(issued.reference, "u1")

    def test_invalid_configuration_is_rejected(self):
        with self.assertRaises(ValueError):
            ActionTokenService(self.repo, "")
        with self.assertRaises(ValueError):
            self.service.issue("u1", "A", ttl=timedelta(0))


class SqliteActionTokenRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        handle, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.addCleanup(os.remove, self.db_path)
        self.clock = ManualClock()
        self.repo = SqliteActionTokenRepository(self.db_path)
        self.service = ActionTokenService(self.repo, SECRET, clock=self.clock)

    def test_round_trips_token_record(self):
        issued = self.service.issue("u1", "COMPLETE_LEVEL")
        stored = self.repo.get(issued.token.id)
        self.assertEqual(stored, issued.token)

    def test_mark_used_only_succeeds_once(self):
        issued = self.service.issue("u1", "A")
        self.assertTrue(self.repo.mark_used(issued.token.id))
        self.assertFalse(self.repo.mark_used(issued.token.id))
        self.assertFalse(self.repo.mark_used("missing"))

    def test_concurrent_consumes_have_exactly_one_winner(self):
        issued = self.service.issue("u1", "A")

        successes, errors = consume_concurrently(self.service, issued.reference, "u1", callers=8)

        self.assertEqual(len(successes), 1)
        self.assertTrue(all(isinstance(e, TokenAlreadyUsed) for e in errors))

    def test_purge_expired(self):
        issued = self.service.issue("u1", "A", ttl=timedelta(seconds=1))
        self.assertEqual(self.repo.purge_expired(self.clock() + timedelta(seconds=2)), 1)
        self.assertIsNone(self.repo.get(issued.token.id))

        self.clock.advance(seconds=2)
        with self.assertRaises(TokenExpired):
            self.service.consume(issued.reference, "u1")


if __name__ == "__main__":
    unittest.main()
