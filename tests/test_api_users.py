"""
tests/test_api_users.py -- Integration tests for the /api/v1/users routes.

Covers:
  - registration: 202, inactive account, welcome mail with an activation token
  - registration validation and duplicate e-mail (422 with field messages)
  - activation: token redeemed once, wrong-scope and unknown tokens rejected
  - password reset via token: new password works, old one and token do not
  - /users/me: 401 with WWW-Authenticate when anonymous, 403 until activated
  - mail delivery failure never reaches the client
  - edit conflict maps to 409
  - hashing and entropy failures reach the client as a generic 500
"""

from __future__ import annotations

import smtplib
from datetime import timedelta

from auth.errors import EditConflictError
from auth.models import Scope, User
from auth.tokens import issue_token


def _drain(client) -> None:
    assert client.app.state.dispatcher.drain(timeout=5) is True


def _register(client, email="ada@example.com", password="pa55word!", name="Ada Lovelace"):
    return client.post("/api/v1/users", json={"name": name, "email": email, "password": password})


def _mailed(mailer, template_name: str) -> list[tuple]:
    return [c.args for c in mailer.send.call_args_list if c.args[1] == template_name]


def _login(client, email="ada@example.com", password="pa55word!"):
    return client.post("/api/v1/tokens/authentication", json={"email": email, "password": password})


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_returns_202_and_inactive_user(self, api_client):
        client, _, _ = api_client
        resp = _register(client)
        assert resp.status_code == 202
        user = resp.json()["user"]
        assert user["email"] == "ada@example.com"
        assert user["name"] == "Ada Lovelace"
        assert user["activated"] is False
        assert user["created_at"]
        assert "hashed_password" not in user
        assert "version" not in user

    def test_register_sends_welcome_mail_with_activation_token(self, api_client):
        client, stores, mailer = api_client
        resp = _register(client)
        _drain(client)

        sent = _mailed(mailer, "user_welcome.html")
        assert len(sent) == 1
        recipient, _, data = sent[0]
        assert recipient == "ada@example.com"
        assert data["user_id"] == resp.json()["user"]["id"]
        assert len(data["activation_token"]) == 26
        assert data["ttl"] == timedelta(days=3)
        # The token is never echoed in the response body
        assert data["activation_token"] not in resp.text

    def test_duplicate_email_is_rejected_case_insensitively(self, api_client):
        client, _, _ = api_client
        assert _register(client, email="ada@example.com").status_code == 202
        resp = _register(client, email="ADA@example.com")
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["fields"]["email"] == "a user with this email address already exists"

    def test_duplicate_non_ascii_email_is_rejected(self, api_client):
        client, _, _ = api_client
        assert _register(client, email="Ärzte@example.com").status_code == 202
        resp = _register(client, email="ärzte@example.com")
        assert resp.status_code == 422
        assert resp.json()["error"]["fields"]["email"] == "a user with this email address already exists"

    def test_short_password_is_rejected(self, api_client):
        client, _, mailer = api_client
        resp = _register(client, password="short")
        assert resp.status_code == 422
        assert "password" in resp.json()["error"]["fields"]
        _drain(client)
        mailer.send.assert_not_called()

    def test_password_over_72_bytes_is_rejected(self, api_client):
        client, _, _ = api_client
        resp = _register(client, password="p" * 73)
        assert resp.status_code == 422
        assert "password" in resp.json()["error"]["fields"]

    def test_malformed_email_is_rejected(self, api_client):
        client, _, _ = api_client
        resp = _register(client, email="not-an-email")
        assert resp.status_code == 422
        assert "email" in resp.json()["error"]["fields"]

    def test_mail_failure_does_not_affect_response(self, api_client, caplog):
        client, _, mailer = api_client
        mailer.send.side_effect = smtplib.SMTPServerDisconnected("gone")
        resp = _register(client)
        assert resp.status_code == 202
        _drain(client)
        assert "Failed to send user_welcome.html" in caplog.text


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


class TestActivate:
    def test_activation_token_from_mail_activates_account(self, api_client):
        client, stores, mailer = api_client
        _register(client)
        _drain(client)
        token = _mailed(mailer, "user_welcome.html")[0][2]["activation_token"]

        resp = client.put("/api/v1/users/activated", json={"token": token})
        assert resp.status_code == 200
        assert resp.json()["user"]["activated"] is True
        assert stores.users.get_by_email("ada@example.com").activated is True

    def test_activation_token_is_single_use(self, api_client):
        client, _, mailer = api_client
        _register(client)
        _drain(client)
        token = _mailed(mailer, "user_welcome.html")[0][2]["activation_token"]

        assert client.put("/api/v1/users/activated", json={"token": token}).status_code == 200
        resp = client.put("/api/v1/users/activated", json={"token": token})
        assert resp.status_code == 422
        assert resp.json()["error"]["fields"]["token"] == "invalid or expired activation token"

    def test_activation_deletes_every_activation_token(self, api_client, make_user):
        client, stores, _ = api_client
        user = make_user(activated=False)
        first = issue_token(stores.tokens, user.id, Scope.ACTIVATION)
        second = issue_token(stores.tokens, user.id, Scope.ACTIVATION)

        assert client.put("/api/v1/users/activated", json={"token": second.plaintext}).status_code == 200
        assert client.put("/api/v1/users/activated", json={"token": first.plaintext}).status_code == 422

    def test_authentication_token_cannot_activate(self, api_client, make_user):
        client, stores, _ = api_client
        user = make_user(activated=False)
        session = issue_token(stores.tokens, user.id, Scope.AUTHENTICATION)
        resp = client.put("/api/v1/users/activated", json={"token": session.plaintext})
        assert resp.status_code == 422
        assert stores.users.get_by_id(user.id).activated is False

    def test_unknown_token(self, api_client):
        client, _, _ = api_client
        resp = client.put("/api/v1/users/activated", json={"token": "A" * 26})
        assert resp.status_code == 422
        assert resp.json()["error"]["fields"]["token"] == "invalid or expired activation token"

    def test_wrong_length_token_fails_validation(self, api_client):
        client, _, _ = api_client
        resp = client.put("/api/v1/users/activated", json={"token": "tooshort"})
        assert resp.status_code == 422
        assert "token" in resp.json()["error"]["fields"]

    def test_edit_conflict_returns_409_and_keeps_token(self, api_client, make_user, monkeypatch):
        client, stores, _ = api_client
        user = make_user(activated=False)
        token = issue_token(stores.tokens, user.id, Scope.ACTIVATION)

        def lost_race(u):
            raise EditConflictError("user modified concurrently")

        monkeypatch.setattr(stores.users, "update", lost_race)
        resp = client.put("/api/v1/users/activated", json={"token": token.plaintext})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "edit_conflict"

        monkeypatch.undo()
        assert client.put("/api/v1/users/activated", json={"token": token.plaintext}).status_code == 200


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestResetPassword:
    def test_reset_flow(self, api_client, make_user):
        client, _, mailer = api_client
        make_user(email="ada@example.com", password="pa55word!")

        assert client.post("/api/v1/tokens/password-reset", json={"email": "ada@example.com"}).status_code == 202
        _drain(client)
        token = _mailed(mailer, "token_password_reset.html")[0][2]["password_reset_token"]

        resp = client.put("/api/v1/users/password", json={"password": "n3w-pa55word", "token": token})
        assert resp.status_code == 200
        assert resp.json()["message"] == "your password was successfully reset"

        assert _login(client, password="pa55word!").status_code == 401
        assert _login(client, password="n3w-pa55word").status_code == 201

    def test_reset_token_is_single_use(self, api_client, make_user):
        client, stores, _ = api_client
        user = make_user()
        token = issue_token(stores.tokens, user.id, Scope.PASSWORD_RESET)

        body = {"password": "n3w-pa55word", "token": token.plaintext}
        assert client.put("/api/v1/users/password", json=body).status_code == 200
        resp = client.put("/api/v1/users/password", json=body)
        assert resp.status_code == 422
        assert resp.json()["error"]["fields"]["token"] == "invalid or expired password reset token"

    def test_activation_token_cannot_reset_password(self, api_client, make_user):
        client, stores, _ = api_client
        user = make_user()
        token = issue_token(stores.tokens, user.id, Scope.ACTIVATION)
        resp = client.put("/api/v1/users/password", json={"password": "n3w-pa55word", "token": token.plaintext})
        assert resp.status_code == 422

    def test_new_password_is_validated(self, api_client, make_user):
        client, stores, _ = api_client
        user = make_user()
        token = issue_token(stores.tokens, user.id, Scope.PASSWORD_RESET)
        resp = client.put("/api/v1/users/password", json={"password": "short", "token": token.plaintext})
        assert resp.status_code == 422
        assert "password" in resp.json()["error"]["fields"]


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


class TestMe:
    def test_me_with_valid_token(self, api_client, make_user):
        client, _, _ = api_client
        make_user(email="ada@example.com")
        token = _login(client).json()["authentication_token"]["token"]

        resp = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "ada@example.com"

    def test_me_without_header(self, api_client):
        client, _, _ = api_client
        resp = client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_unknown_token(self, api_client):
        client, _, _ = api_client
        resp = client.get("/api/v1/users/me", headers={"Authorization": "Bearer " + "A" * 26})
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_me_with_malformed_header(self, api_client):
        client, _, _ = api_client
        for header in ("Bearer", "Bearer short", "Basic " + "A" * 26):
            resp = client.get("/api/v1/users/me", headers={"Authorization": header})
            assert resp.status_code == 401, header

    def test_me_requires_activated_account(self, api_client, make_user):
        client, _, _ = api_client
        make_user(email="ada@example.com", activated=False)
        token = _login(client).json()["authentication_token"]["token"]

        resp = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "inactive_account"

    def test_me_rejects_activation_token(self, api_client, make_user):
        client, stores, _ = api_client
        user = make_user()
        token = issue_token(stores.tokens, user.id, Scope.ACTIVATION)
        resp = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token.plaintext}"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Server-side crypto failures
# ---------------------------------------------------------------------------

GENERIC_500 = {
    "error": {
        "code": "internal_error",
        "message": "The server encountered a problem and could not process your request.",
    }
}


class TestCryptoFailures:
    def test_entropy_failure_returns_generic_500(self, api_client, monkeypatch, caplog):
        client, _, mailer = api_client

        def no_randomness(n: int) -> bytes:
            raise OSError("getrandom: /dev/urandom unavailable")

        monkeypatch.setattr("auth.tokens.secrets.token_bytes", no_randomness)
        resp = _register(client)

        assert resp.status_code == 500
        assert resp.json() == GENERIC_500
        assert "urandom" not in resp.text
        assert "EntropyFailure" not in resp.text
        assert "EntropyFailure on POST /api/v1/users" in caplog.text
        _drain(client)
        mailer.send.assert_not_called()

    def test_hashing_failure_returns_generic_500(self, api_client, monkeypatch, caplog):
        client, _, _ = api_client

        def broken_hashpw(password: bytes, salt: bytes) -> bytes:
            raise ValueError("invalid salt")

        monkeypatch.setattr("auth.passwords.bcrypt.hashpw", broken_hashpw)
        resp = _register(client)

        assert resp.status_code == 500
        assert resp.json() == GENERIC_500
        assert "salt" not in resp.text
        assert "HashingFailure on POST /api/v1/users" in caplog.text

    def test_malformed_stored_hash_on_login_returns_generic_500(self, api_client):
        client, stores, _ = api_client
        stores.users.insert(User(name="Ada", email="ada@example.com", hashed_password="not-a-bcrypt-hash"))

        resp = _login(client)
        assert resp.status_code == 500
        assert resp.json() == GENERIC_500
