import json

import pytest

from browserctl.errors import InvalidStateError, ProtocolError, describe_error
from browserctl.protocol import (
    CommandRequest,
    CommandResponse,
    decode_request,
    try_decode_response,
)


class TestDecodeRequest:
    def test_valid_request(self):
        request = decode_request('{"command": "open", "args": ["https://example.com"]}')
        assert request.command == "open"
        assert request.args == ["https://example.com"]

    def test_bytes_with_newline(self):
        request = decode_request(b'{"command": "title", "args": []}\n')
        assert request.command == "title"
        assert request.args == []

    def test_args_default_to_empty(self):
        assert decode_request('{"command": "links"}').args == []

    def test_extra_fields_ignored(self):
        request = decode_request('{"command": "ping", "args": [], "id": 7}')
        assert request.command == "ping"

    @pytest.mark.parametrize("line", ["", "   ", "\n", b"\r\n"])
    def test_blank_line_is_ignored(self, line):
        assert decode_request(line) is None

    def test_malformed_json(self):
        with pytest.raises(ProtocolError, match="Invalid JSON"):
            decode_request('{"command": "open", "args": [')

    def test_non_object(self):
        with pytest.raises(ProtocolError, match="JSON object"):
            decode_request('["open", "https://example.com"]')

    def test_missing_command(self):
        with pytest.raises(ProtocolError, match="command"):
            decode_request('{"args": []}')

    def test_empty_command(self):
        with pytest.raises(ProtocolError):
            decode_request('{"command": "", "args": []}')

    def test_non_string_args(self):
        with pytest.raises(ProtocolError, match="args"):
            decode_request('{"command": "click", "args": [1]}')

    def test_invalid_utf8(self):
        with pytest.raises(ProtocolError, match="UTF-8"):
            decode_request(b'{"command": "\xff"}')


class TestCommandRequest:
    def test_to_line_is_one_json_line(self):
        line = CommandRequest(command="type", args=["#q", "hello world"]).to_line()
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert json.loads(line) == {"command": "type", "args": ["#q", "hello world"]}


class TestCommandResponse:
    def test_success_line(self):
        line = CommandResponse.success({"title": "Example Domain", "url": "https://example.com/"}).to_line()
        assert json.loads(line) == {
            "ok": True,
            "result": {"title": "Example Domain", "url": "https://example.com/"},
        }

    def test_failure_from_exception(self):
        response = CommandResponse.failure(InvalidStateError("No page open"))
        assert response.to_dict() == {"ok": False, "error": "InvalidStateError: No page open"}

    def test_failure_from_string(self):
        assert CommandResponse.failure("boom").error == "boom"

    def test_unserializable_result_is_stringified(self):
        line = CommandResponse.success({"when": object}).to_line()
        assert json.loads(line)["ok"] is True

    def test_from_dict_rejects_missing_ok(self):
        with pytest.raises(ProtocolError):
            CommandResponse.from_dict({"result": 1})

    def test_from_dict_rejects_non_object(self):
        with pytest.raises(ProtocolError):
            CommandResponse.from_dict([True])


class TestTryDecodeResponse:
    def test_complete_line(self):
        response = try_decode_response(b'{"ok": true, "result": "Example Domain"}')
        assert response.ok is True
        assert response.result == "Example Domain"

    def test_error_line(self):
        response = try_decode_response('{"ok": false, "error": "TimeoutError: slow"}')
        assert response.ok is False
        assert response.error == "TimeoutError: slow"

    def test_incomplete_line_returns_none(self):
        assert try_decode_response(b'{"ok": true, "res') is None

    def test_blank_returns_none(self):
        assert try_decode_response(b"") is None

    def test_wrong_shape_raises(self):
        with pytest.raises(ProtocolError):
            try_decode_response(b'{"status": "fine"}')


class TestDescribeError:
    def test_taxonomy_error_uses_code(self):
        assert describe_error(ProtocolError("bad line")) == "ProtocolError: bad line"

    def test_foreign_error_uses_class_name(self):
        assert describe_error(ValueError("nope")) == "ValueError: nope"

    def test_empty_message(self):
        assert describe_error(RuntimeError()) == "RuntimeError: RuntimeError"
