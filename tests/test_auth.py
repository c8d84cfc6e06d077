"""Tests for login flows and login result parsing."""

from __future__ import annotations

import hashlib
import time
from unittest.mock import MagicMock

import pytest

from rocketchat_core import Token
from rocketchat_core.auth import (
    build_password_login_params,
    build_resume_login_params,
    hash_password,
    parse_login_result,
)
from rocketchat_core.errors import (
    NotConnectedError,
    ProtocolError,
    RocketChatApiError,
)

from .conftest import error_frame, result_frame

LOGIN_RESPONSE_OK = {
    "id": "yG6FQYRsuTWRK8KP6",
    "token": "Yk_MNMp7K6A8J_3ytsC3rxwIZe9PZ4pfkPe-6G7JPYg",
    "tokenExpires": {"$date": 1511909570220},
    "type": "password",
}

LOGIN_RESUME_RESPONSE_OK = {
    "id": "yG6FQYRsuTWRK8KP6",
    "token": "tHKn4H62mdBi_gh5hjjqmu-x4zdZRAYiiluqpdRzQKD",
    "tokenExpires": {"$date": 1519291834962},
    "type": "resume",
}

LOGIN_RESPONSE_FAIL = {
    "isClientSafe": True,
    "error": 403,
    "reason": "User not found",
    "message": "User not found [403]",
    "errorType": "Meteor.Error",
}

LOGIN_RESUME_RESPONSE_FAIL = {
    "isClientSafe": True,
    "error": 403,
    "reason": "You've been logged out by the server. Please log in again.",
    "message": "You've been logged out by the server. Please log in again. [403]",
    "errorType": "Meteor.Error",
}


def respond_with(socket, frame_builder):
    """Answer every login call using frame_builder(call_id)."""

    async def respond(frame):
        if frame.get("msg") == "method" and frame.get("method") == "login":
            await socket.receive(frame_builder(frame["id"]))

    socket.responder = respond


@pytest.fixture
def login_callback() -> MagicMock:
    callback = MagicMock()
    callback.on_login_success = MagicMock()
    callback.on_error = MagicMock()
    return callback


class TestLoginCallbacks:
    """Callback-style login flows."""

    @pytest.mark.asyncio
    async def test_should_login_successfully(
        self, open_session, socket_factory, login_callback
    ):
        socket = socket_factory.socket
        respond_with(socket, lambda call_id: result_frame(call_id, LOGIN_RESPONSE_OK))

        await open_session.login("testuserrocks", "testuserrocks", login_callback)

        login_callback.on_login_success.assert_called_once()
        login_callback.on_error.assert_not_called()
        (token,), _ = login_callback.on_login_success.call_args
        assert token.auth_token == "Yk_MNMp7K6A8J_3ytsC3rxwIZe9PZ4pfkPe-6G7JPYg"
        assert token.user_id == "yG6FQYRsuTWRK8KP6"
        assert token.expires_at == 1511909570220

        assert socket.frames_of("method") == [
            {
                "msg": "method",
                "method": "login",
                "params": [
                    {
                        "user": {"username": "testuserrocks"},
                        "password": {
                            "digest": hashlib.sha256(b"testuserrocks").hexdigest(),
                            "algorithm": "sha-256",
                        },
                    }
                ],
                "id": "1",
            }
        ]

    @pytest.mark.asyncio
    async def test_should_fail_login_with_wrong_password(
        self, open_session, socket_factory, login_callback
    ):
        respond_with(
            socket_factory.socket,
            lambda call_id: error_frame(call_id, LOGIN_RESPONSE_FAIL),
        )

        await open_session.login("testuserrocks", "wrongpassword", login_callback)

        login_callback.on_error.assert_called_once()
        login_callback.on_login_success.assert_not_called()
        (error,), _ = login_callback.on_error.call_args
        assert isinstance(error, RocketChatApiError)
        assert error.error == 403
        assert error.reason == "User not found"
        assert error.message == "User not found [403]"
        assert error.error_type == "Meteor.Error"

    @pytest.mark.asyncio
    async def test_should_resume_login(
        self, open_session, socket_factory, login_callback
    ):
        socket = socket_factory.socket
        respond_with(
            socket, lambda call_id: result_frame(call_id, LOGIN_RESUME_RESPONSE_OK)
        )

        await open_session.login_using_token(
            "tHKn4H62mdBi_gh5hjjqmu-x4zdZRAYiiluqpdRzQKD", login_callback
        )

        login_callback.on_login_success.assert_called_once()
        login_callback.on_error.assert_not_called()
        (token,), _ = login_callback.on_login_success.call_args
        assert token.auth_token == "tHKn4H62mdBi_gh5hjjqmu-x4zdZRAYiiluqpdRzQKD"
        assert token.user_id == "yG6FQYRsuTWRK8KP6"
        assert token.expires_at is None

        assert socket.frames_of("method")[0]["params"] == [
            {"resume": "tHKn4H62mdBi_gh5hjjqmu-x4zdZRAYiiluqpdRzQKD"}
        ]

    @pytest.mark.asyncio
    async def test_should_fail_resume_login_with_wrong_token(
        self, open_session, socket_factory, login_callback
    ):
        respond_with(
            socket_factory.socket,
            lambda call_id: error_frame(call_id, LOGIN_RESUME_RESPONSE_FAIL),
        )

        await open_session.login_using_token("INVALID_TOKEN", login_callback)

        login_callback.on_error.assert_called_once()
        login_callback.on_login_success.assert_not_called()
        (error,), _ = login_callback.on_error.call_args
        assert error.error == 403
        assert error.reason == (
            "You've been logged out by the server. Please log in again."
        )
        assert error.message == (
            "You've been logged out by the server. Please log in again. [403]"
        )
        assert error.error_type == "Meteor.Error"

    @pytest.mark.asyncio
    async def test_unparseable_login_result_goes_to_on_error(
        self, open_session, socket_factory, login_callback
    ):
        respond_with(
            socket_factory.socket,
            lambda call_id: result_frame(call_id, {"unexpected": True}),
        )

        await open_session.login("user", "pass", login_callback)

        (error,), _ = login_callback.on_error.call_args
        assert isinstance(error, ProtocolError)
        login_callback.on_login_success.assert_not_called()

    @pytest.mark.asyncio
    async def test_login_not_connected(self, session, login_callback):
        with pytest.raises(NotConnectedError):
            await session.login("user", "pass", login_callback)
        login_callback.on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_login(
        self, open_session, login_callback
    ):
        await open_session.login("user", "pass", login_callback)
        await open_session.disconnect()

        login_callback.on_error.assert_called_once()
        login_callback.on_login_success.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_logins_use_distinct_ids(
        self, open_session, socket_factory
    ):
        first, second = MagicMock(), MagicMock()
        id_one = await open_session.login("a", "a", first)
        id_two = await open_session.login_using_token("tok", second)
        assert id_one != id_two

        await socket_factory.socket.receive(result_frame(id_two, LOGIN_RESUME_RESPONSE_OK))
        await socket_factory.socket.receive(error_frame(id_one, LOGIN_RESPONSE_FAIL))

        second.on_login_success.assert_called_once()
        first.on_error.assert_called_once()
        first.on_login_success.assert_not_called()


class TestLoginAwaitable:
    """Awaitable login flows."""

    @pytest.mark.asyncio
    async def test_login_with_password(self, open_session, socket_factory):
        respond_with(
            socket_factory.socket,
            lambda call_id: result_frame(call_id, LOGIN_RESPONSE_OK),
        )

        token = await open_session.login_with_password("testuserrocks", "testuserrocks")

        assert token == Token(
            auth_token="Yk_MNMp7K6A8J_3ytsC3rxwIZe9PZ4pfkPe-6G7JPYg",
            user_id="yG6FQYRsuTWRK8KP6",
            expires_at=1511909570220,
        )

    @pytest.mark.asyncio
    async def test_login_with_token_error(self, open_session, socket_factory):
        respond_with(
            socket_factory.socket,
            lambda call_id: error_frame(call_id, LOGIN_RESUME_RESPONSE_FAIL),
        )

        with pytest.raises(RocketChatApiError) as exc_info:
            await open_session.login_with_token("INVALID_TOKEN")
        assert exc_info.value.error == 403


class TestLoginPayloads:
    """Tests for login param builders and result parsing."""

    def test_hash_password(self):
        assert hash_password("secret") == hashlib.sha256(b"secret").hexdigest()

    def test_email_login(self):
        params = build_password_login_params("me@example.com", "pw")
        assert params["user"] == {"email": "me@example.com"}

    def test_username_required(self):
        with pytest.raises(ValueError):
            build_password_login_params("", "pw")

    def test_resume_params(self):
        assert build_resume_login_params("abc") == {"resume": "abc"}
        with pytest.raises(ValueError):
            build_resume_login_params("")

    def test_parse_nested_token_shape(self):
        token = parse_login_result(
            {
                "id": "u1",
                "token": {"authToken": "t1", "userId": "u1", "expiresAt": 1234},
            }
        )
        assert token == Token("t1", "u1", 1234)

    def test_parse_expires_in_days(self):
        before = int(time.time() * 1000)
        token = parse_login_result({"id": "u1", "token": {"authToken": "t1", "expiresInDays": 90}})
        assert token.expires_at is not None
        assert token.expires_at >= before + 90 * 24 * 60 * 60 * 1000

    def test_parse_plain_expiry(self):
        token = parse_login_result({"id": "u1", "token": "t1", "tokenExpires": 99})
        assert token.expires_at == 99

    def test_parse_without_expiry(self):
        token = parse_login_result({"id": "u1", "token": "t1"})
        assert token.expires_at is None

    def test_resumed_drops_expiry(self):
        token = parse_login_result(LOGIN_RESUME_RESPONSE_OK, resumed=True)
        assert token.expires_at is None

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            "token",
            {"id": "u1"},
            {"token": "t1"},
            {"id": "u1", "token": {"userId": "u1"}},
            {"id": "u1", "token": "t1", "tokenExpires": {"$date": "soon"}},
        ],
    )
    def test_parse_invalid(self, payload):
        with pytest.raises(ProtocolError):
            parse_login_result(payload)

    def test_token_is_frozen(self):
        token = Token("t", "u")
        with pytest.raises(AttributeError):
            token.auth_token = "other"  # type: ignore[misc]
