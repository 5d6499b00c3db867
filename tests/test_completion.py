"""Tests for the chat-completions client (HTTP mocked)."""

import io
import json
import socket
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

import pytest

from brainy.completion import CompletionClient, parse_completion
from brainy.errors import CompletionError


def _response(payload):
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode()
    return resp


def _ok(content="Hello!"):
    return {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
    }


def _http_error(code, body=b""):
    return HTTPError("https://api.test/v1/chat/completions", code, "error", {}, io.BytesIO(body))


class TestParseCompletion:
    def test_first_choice(self):
        assert parse_completion(json.dumps(_ok("hi there"))) == "hi there"

    def test_null_content(self):
        body = _ok()
        body["choices"][0]["message"]["content"] = None
        assert parse_completion(json.dumps(body)) == ""

    def test_empty_choices(self):
        with pytest.raises(CompletionError, match="empty choices"):
            parse_completion(json.dumps({"choices": []}))

    def test_service_error(self):
        body = {"error": {"code": "rate_limit_exceeded", "message": "slow down"}}
        with pytest.raises(CompletionError, match="rate_limit_exceeded"):
            parse_completion(json.dumps(body))

    def test_malformed(self):
        with pytest.raises(CompletionError, match="malformed") as exc_info:
            parse_completion(b"<html>bad gateway</html>")
        assert "bad gateway" in exc_info.value.detail


class TestCompletionClient:
    def _client(self):
        return CompletionClient(
            api_key="sk-test", model="test-model", base_url="https://api.test/v1/", timeout=12,
        )

    def test_request_shape(self):
        client = self._client()
        with patch("brainy.completion.urlopen", return_value=_response(_ok())) as mock_open:
            assert client.complete("What is 2+2?") == "Hello!"

        req = mock_open.call_args[0][0]
        assert req.full_url == "https://api.test/v1/chat/completions"
        assert req.get_header("Authorization") == "Bearer sk-test"
        assert req.get_header("Content-type") == "application/json"
        payload = json.loads(req.data)
        assert payload["model"] == "test-model"
        assert payload["temperature"] == 0.7
        assert payload["messages"] == [{"role": "user", "content": "What is 2+2?"}]
        assert mock_open.call_args[1]["timeout"] == 12

    def test_timeout_override(self):
        client = self._client()
        with patch("brainy.completion.urlopen", return_value=_response(_ok())) as mock_open:
            client.complete("hi", timeout=3)
        assert mock_open.call_args[1]["timeout"] == 3

    def test_http_error_with_service_error(self):
        body = json.dumps({"error": {"code": "invalid_api_key", "message": "bad key"}}).encode()
        client = self._client()
        with patch("brainy.completion.urlopen", side_effect=_http_error(401, body)):
            with pytest.raises(CompletionError, match="invalid_api_key"):
                client.complete("hi")

    def test_http_error_without_body(self):
        client = self._client()
        with patch("brainy.completion.urlopen", side_effect=_http_error(502, b"Bad Gateway")):
            with pytest.raises(CompletionError, match="HTTP 502") as exc_info:
                client.complete("hi")
        assert exc_info.value.detail == "Bad Gateway"

    def test_http_error_never_succeeds(self):
        client = self._client()
        body = json.dumps(_ok()).encode()
        with patch("brainy.completion.urlopen", side_effect=_http_error(500, body)):
            with pytest.raises(CompletionError, match="HTTP 500"):
                client.complete("hi")

    def test_network_error(self):
        client = self._client()
        with patch("brainy.completion.urlopen", side_effect=URLError("no route")):
            with pytest.raises(CompletionError, match="request failed"):
                client.complete("hi")

    def test_socket_timeout(self):
        client = self._client()
        with patch("brainy.completion.urlopen", side_effect=socket.timeout("timed out")):
            with pytest.raises(CompletionError):
                client.complete("hi")

    def test_from_config(self):
        cfg = MagicMock(
            api_key="k", model="m", base_url="https://x/v1", temperature=0.2, completion_timeout=9,
        )
        client = CompletionClient.from_config(cfg)
        assert client.base_url == "https://x/v1"
        assert client.temperature == 0.2
        assert client.timeout == 9
