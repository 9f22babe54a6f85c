"""Tests for token extraction, the decision function and the callback handler."""

from __future__ import annotations

import asyncio
import json

import pytest

from sonarcli.auth.callback import (
    SUCCESS_HTML,
    Allow,
    Deny,
    NoOp,
    TokenDelivery,
    TokenSource,
    decide,
    extract_token_from_post_body,
    extract_token_from_query,
    make_callback_handler,
)
from sonarcli.loopback.server import SecurityPolicy, start_listener

HOST = {"Host": "127.0.0.1:64120"}


# ------------------------------------------------------------------ #
# Extraction
# ------------------------------------------------------------------ #


class TestPostBodyExtraction:
    @pytest.mark.parametrize("token", ["squ_abc123", "a", "with spaces", "ünïcode"])
    def test_non_empty_string(self, token: str) -> None:
        assert extract_token_from_post_body(json.dumps({"token": token})) == token

    def test_bytes_body(self) -> None:
        assert extract_token_from_post_body(b'{"token": "squ_abc123"}') == "squ_abc123"

    def test_extra_fields_ignored(self) -> None:
        body = json.dumps({"token": "squ_1", "login": "alice"})
        assert extract_token_from_post_body(body) == "squ_1"

    @pytest.mark.parametrize(
        "body",
        [
            "{}",
            '{"token": ""}',
            '{"token": 123}',
            '{"token": null}',
            '{"token": ["squ_1"]}',
            '{"token": {"value": "squ_1"}}',
            '{"tok": "squ_1"}',
            '["squ_1"]',
            '"squ_1"',
            "not json",
            '{"token": "squ_1"',
            "",
            b"\xff\xfe",
        ],
    )
    def test_everything_else_is_no_token(self, body) -> None:
        assert extract_token_from_post_body(body) is None


class TestQueryExtraction:
    def test_token_param(self) -> None:
        assert extract_token_from_query("127.0.0.1:64120", "/?token=squ_xyz") == "squ_xyz"

    def test_url_encoded(self) -> None:
        assert extract_token_from_query("localhost:64120", "/?token=a%2Bb%20c") == "a+b c"

    def test_other_params_ignored(self) -> None:
        assert extract_token_from_query("localhost", "/cb?user=alice&token=t1") == "t1"

    @pytest.mark.parametrize("target", ["/?user=alice", "/?token=", "/", "/?token"])
    def test_no_token(self, target: str) -> None:
        assert extract_token_from_query("localhost:64120", target) is None

    def test_missing_host_or_target(self) -> None:
        assert extract_token_from_query(None, "/?token=t") is None
        assert extract_token_from_query("localhost", None) is None


# ------------------------------------------------------------------ #
# Decision
# ------------------------------------------------------------------ #


class TestDecide:
    def test_post_with_token(self) -> None:
        outcome = decide("POST", "/", HOST, b'{"token": "squ_abc123"}')
        assert outcome == Allow(TokenDelivery("squ_abc123", TokenSource.POST_BODY))

    def test_get_with_token(self) -> None:
        outcome = decide("GET", "/?token=squ_xyz", HOST)
        assert outcome == Allow(TokenDelivery("squ_xyz", TokenSource.GET_QUERY))

    def test_method_is_case_insensitive(self) -> None:
        assert isinstance(decide("post", "/", HOST, '{"token": "t"}'), Allow)

    def test_get_without_token_confirms(self) -> None:
        assert decide("GET", "/?user=alice", HOST) == NoOp(confirm=True)

    def test_post_with_bad_json_confirms(self) -> None:
        assert decide("POST", "/", HOST, b"nope") == NoOp(confirm=True)

    @pytest.mark.parametrize("method", ["PUT", "DELETE", "HEAD", "PATCH"])
    def test_other_methods_are_plain_noop(self, method: str) -> None:
        assert decide(method, "/?token=t", HOST, b'{"token": "t"}') == NoOp(confirm=False)

    def test_foreign_origin_denied(self) -> None:
        headers = {**HOST, "Origin": "http://evil.com"}
        assert decide("POST", "/", headers, b'{"token": "t"}') == Deny()

    def test_bad_host_denied(self) -> None:
        assert decide("GET", "/?token=t", {"Host": "evil.com"}) == Deny()

    def test_allowlisted_origin(self) -> None:
        headers = {**HOST, "Origin": "https://sonarcloud.io"}
        outcome = decide("POST", "/", headers, b'{"token": "t"}', frozenset({"https://sonarcloud.io"}))
        assert isinstance(outcome, Allow)


def test_empty_delivery_rejected() -> None:
    with pytest.raises(ValueError):
        TokenDelivery("", TokenSource.MANUAL_PASTE)


# ------------------------------------------------------------------ #
# Handler over a live listener
# ------------------------------------------------------------------ #


class TestCallbackHandler:
    def test_post_token_delivers_once(self, raw_http) -> None:
        async def scenario() -> None:
            received: list[TokenDelivery] = []
            listener = await start_listener(make_callback_handler(received.append))
            try:
                status, headers, body = await raw_http(
                    listener.port,
                    "POST",
                    headers={"Content-Type": "application/json"},
                    body=b'{"token":"squ_abc123"}',
                )
            finally:
                await listener.close()
            assert status == 200
            assert headers["content-type"].startswith("text/html")
            assert b"Authentication Successful" in body
            assert received == [TokenDelivery("squ_abc123", TokenSource.POST_BODY)]

        asyncio.run(scenario())

    def test_get_token_delivers(self, raw_http) -> None:
        async def scenario() -> None:
            received: list[TokenDelivery] = []
            listener = await start_listener(make_callback_handler(received.append))
            try:
                status, _, body = await raw_http(listener.port, "GET", "/?token=squ_xyz")
            finally:
                await listener.close()
            assert status == 200
            assert b"Authentication Successful" in body
            assert [d.token for d in received] == ["squ_xyz"]

        asyncio.run(scenario())

    def test_get_without_token_is_silent(self, raw_http) -> None:
        async def scenario() -> None:
            received: list[TokenDelivery] = []
            listener = await start_listener(make_callback_handler(received.append))
            try:
                status, _, body = await raw_http(listener.port, "GET", "/?user=alice")
            finally:
                await listener.close()
            assert status == 200
            assert body == SUCCESS_HTML.encode("utf-8")
            assert received == []

        asyncio.run(scenario())

    def test_rejected_origin_never_delivers(self, raw_http) -> None:
        async def scenario() -> None:
            received: list[TokenDelivery] = []
            listener = await start_listener(make_callback_handler(received.append))
            try:
                status, _, _ = await raw_http(
                    listener.port,
                    "POST",
                    headers={"Origin": "http://evil.com"},
                    body=b'{"token":"squ_abc123"}',
                )
            finally:
                await listener.close()
            assert status == 403
            assert received == []

        asyncio.run(scenario())

    def test_server_origin_may_post(self, raw_http) -> None:
        async def scenario() -> None:
            received: list[TokenDelivery] = []
            allowed = frozenset({"https://sonarcloud.io"})
            listener = await start_listener(
                make_callback_handler(received.append, allowed), SecurityPolicy(allowed)
            )
            try:
                status, headers, _ = await raw_http(
                    listener.port,
                    "POST",
                    headers={"Origin": "https://sonarcloud.io"},
                    body=b'{"token":"squ_cloud"}',
                )
            finally:
                await listener.close()
            assert status == 200
            assert headers["access-control-allow-origin"] == "https://sonarcloud.io"
            assert [d.token for d in received] == ["squ_cloud"]

        asyncio.run(scenario())

    def test_oversized_body_never_delivers(self, raw_http) -> None:
        async def scenario() -> None:
            received: list[TokenDelivery] = []
            listener = await start_listener(make_callback_handler(received.append))
            padding = "x" * 5000
            body = json.dumps({"token": "squ_big", "padding": padding}).encode()
            try:
                status, _, _ = await raw_http(listener.port, "POST", body=body)
            finally:
                await listener.close()
            assert status == 413
            assert received == []

        asyncio.run(scenario())

    def test_other_method_returns_ok(self, raw_http) -> None:
        async def scenario() -> None:
            received: list[TokenDelivery] = []
            listener = await start_listener(make_callback_handler(received.append))
            try:
                status, _, body = await raw_http(listener.port, "PUT", "/?token=t", body=b"{}")
            finally:
                await listener.close()
            assert status == 200
            assert body == b"OK"
            assert received == []

        asyncio.run(scenario())
