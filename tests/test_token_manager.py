import os
import unittest

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import httpx

from support import API_SERVER, REFRESH_TOKEN, FakeQuestrade, add_person, make_session_factory
from models.person import Person
from models.token import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, Token
from services.questrade import token_manager
from services.questrade.errors import TokenDecryptionError, TokenInvalidError, TokenMissingError, QuestradeUnavailableError
from services.questrade.token_crypto import decrypt_token, encrypt_token


class TokenManagerTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.fake = FakeQuestrade()
        self.http = self.fake.client()

    def tearDown(self):
        self.http.close()
        self.db.close()

    def _tokens(self, name="alice"):
        return self.db.query(Token).filter(Token.person_name == name).all()


class TestAccessToken(TokenManagerTestCase):
    def test_unexpired_access_token_is_reused(self):
        add_person(self.db)
        creds = token_manager.get_valid_access_token(self.db, "alice", client=self.http)

        self.assertEqual(creds.access_token, "access-old")
        self.assertEqual(creds.api_server, API_SERVER)
        self.assertEqual(self.fake.token_exchanges, 0)

    def test_expired_access_token_triggers_rotation(self):
        add_person(self.db, access_expired=True)
        creds = token_manager.get_valid_access_token(self.db, "alice", client=self.http)

        self.assertEqual(creds.access_token, "access-new")
        self.assertEqual(self.fake.token_exchanges, 1)
        sent = self.fake.api_calls("/oauth2/token")[0]
        self.assertEqual(sent.url.params["grant_type"], "refresh_token")
        self.assertEqual(sent.url.params["refresh_token"], REFRESH_TOKEN)

        tokens = self._tokens()
        self.assertEqual(len(tokens), 2)
        refresh = next(t for t in tokens if t.type == TOKEN_TYPE_REFRESH)
        self.assertEqual(decrypt_token(refresh.encrypted_token), "refresh-token-rotated-bbbbbbbbbbbbbb")
        person = self.db.query(Person).filter_by(person_name="alice").one()
        self.assertTrue(person.has_valid_token)
        self.assertIsNotNone(person.last_token_refresh)

    def test_missing_refresh_token(self):
        add_person(self.db, with_tokens=False)
        with self.assertRaises(TokenMissingError):
            token_manager.refresh_access_token(self.db, "alice", client=self.http)

    def test_rejected_refresh_token_is_recorded(self):
        add_person(self.db, access_expired=True)
        self.fake.routes["/oauth2/token"] = httpx.Response(400, text="Bad Request")

        with self.assertRaises(TokenInvalidError):
            token_manager.refresh_access_token(self.db, "alice", client=self.http)

        refresh = next(t for t in self._tokens() if t.type == TOKEN_TYPE_REFRESH)
        self.assertEqual(refresh.error_count, 1)
        self.assertIn("Invalid or expired refresh token", refresh.last_error)
        person = self.db.query(Person).filter_by(person_name="alice").one()
        self.assertFalse(person.has_valid_token)

    def test_server_error_maps_to_unavailable(self):
        add_person(self.db, access_expired=True)
        self.fake.routes["/oauth2/token"] = httpx.Response(503)
        with self.assertRaises(QuestradeUnavailableError):
            token_manager.refresh_access_token(self.db, "alice", client=self.http)

    def test_response_without_tokens_is_invalid(self):
        add_person(self.db, access_expired=True)
        self.fake.routes["/oauth2/token"] = {"api_server": API_SERVER}
        with self.assertRaises(TokenInvalidError):
            token_manager.refresh_access_token(self.db, "alice", client=self.http)
        self.assertEqual(len(self._tokens()), 2)

    def test_unreadable_token_response_is_recorded(self):
        add_person(self.db, access_expired=True)
        self.fake.routes["/oauth2/token"] = httpx.Response(200, text="<html>maintenance</html>")

        with self.assertRaises(QuestradeUnavailableError):
            token_manager.refresh_access_token(self.db, "alice", client=self.http)

        refresh = next(t for t in self._tokens() if t.type == TOKEN_TYPE_REFRESH)
        self.assertEqual(refresh.error_count, 1)
        person = self.db.query(Person).filter_by(person_name="alice").one()
        self.assertFalse(person.has_valid_token)


class TestTokenSetup(TokenManagerTestCase):
    def test_setup_creates_person_with_rotated_token(self):
        result = token_manager.setup_person_token(
            self.db, "bob", "  manual-refresh-token-cccccccccc  ", email="bob@example.com", client=self.http
        )

        self.assertTrue(result["success"])
        sent = self.fake.api_calls("/oauth2/token")[0]
        self.assertEqual(sent.url.params["refresh_token"], "manual-refresh-token-cccccccccc")

        person = self.db.query(Person).filter_by(person_name="bob").one()
        self.assertEqual(person.display_name, "bob")
        self.assertEqual(person.email, "bob@example.com")
        self.assertTrue(person.has_valid_token)
        refresh = next(t for t in self._tokens("bob") if t.type == TOKEN_TYPE_REFRESH)
        self.assertEqual(decrypt_token(refresh.encrypted_token), "refresh-token-rotated-bbbbbbbbbbbbbb")
        self.assertNotIn("rotated", refresh.encrypted_token)

    def test_short_token_rejected_without_network(self):
        with self.assertRaises(TokenInvalidError):
            token_manager.setup_person_token(self.db, "bob", "short", client=self.http)
        self.assertEqual(self.fake.calls, [])

    def test_setup_reactivates_removed_person(self):
        add_person(self.db)
        token_manager.remove_person(self.db, "alice")
        self.assertTrue(all(not t.is_active for t in self._tokens()))

        token_manager.setup_person_token(self.db, "alice", REFRESH_TOKEN, client=self.http)
        person = self.db.query(Person).filter_by(person_name="alice").one()
        self.assertTrue(person.is_active)
        self.assertEqual(person.display_name, "Alice")
        self.assertEqual(len(self._tokens()), 2)

    def test_validate_refresh_token_does_not_persist(self):
        result = token_manager.validate_refresh_token(REFRESH_TOKEN, client=self.http)
        self.assertTrue(result["valid"])
        self.assertEqual(result["refresh_token"], "refresh-token-rotated-bbbbbbbbbbbbbb")
        self.assertEqual(self.db.query(Token).count(), 0)

        self.assertFalse(token_manager.validate_refresh_token("abc", client=self.http)["valid"])

    def test_validate_reports_rejection(self):
        self.fake.routes["/oauth2/token"] = httpx.Response(400, text="Bad Request")
        result = token_manager.validate_refresh_token(REFRESH_TOKEN, client=self.http)
        self.assertFalse(result["valid"])
        self.assertEqual(result["error"], "Bad Request")

    def test_validate_reports_unreadable_response(self):
        self.fake.routes["/oauth2/token"] = httpx.Response(200, text="<html>maintenance</html>")
        result = token_manager.validate_refresh_token(REFRESH_TOKEN, client=self.http)
        self.assertFalse(result["valid"])
        self.assertIn("unreadable", result["error"])


class TestTokenStatus(TokenManagerTestCase):
    def test_status_and_connection_check(self):
        add_person(self.db)
        self.fake.routes["/v1/time"] = {"time": "2024-06-30T10:00:00.000000-04:00"}

        status = token_manager.get_token_status(self.db, "alice")
        self.assertTrue(status["is_healthy"])
        self.assertTrue(status["access_token"]["exists"])

        result = token_manager.test_connection(self.db, "alice", client=self.http)
        self.assertTrue(result["success"])
        self.assertEqual(result["server_time"], "2024-06-30T10:00:00.000000-04:00")
        auth = self.fake.api_calls("/v1/time")[0].headers["Authorization"]
        self.assertEqual(auth, "Bearer access-old")

    def test_failed_connection_is_reported(self):
        add_person(self.db)
        self.fake.routes["/v1/time"] = httpx.Response(401)
        result = token_manager.test_connection(self.db, "alice", client=self.http)
        self.assertFalse(result["success"])

    def test_unknown_person_is_unhealthy(self):
        status = token_manager.get_token_status(self.db, "nobody")
        self.assertFalse(status["is_healthy"])
        self.assertFalse(status["refresh_token"]["exists"])

    def test_refresh_all_collects_failures(self):
        add_person(self.db, "alice")
        add_person(self.db, "carol", with_tokens=False)
        result = token_manager.refresh_all_tokens(self.db, client=self.http)
        self.assertEqual(result["refreshed"], ["alice"])
        self.assertEqual([f["person_name"] for f in result["failed"]], ["carol"])


class TestTokenCrypto(unittest.TestCase):
    def test_tampered_ciphertext(self):
        cipher = encrypt_token("secret")
        self.assertNotEqual(cipher, "secret")
        with self.assertRaises(TokenDecryptionError):
            decrypt_token(cipher[:-4] + "AAAA")


if __name__ == "__main__":
    unittest.main()
