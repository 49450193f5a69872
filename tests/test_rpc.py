import pytest
import requests

from kubi_pipeline.errors import RpcResponseError, TransientRpcError
from kubi_pipeline.services.rpc import JsonRpcClient


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self._text = text

    def json(self):
        if self._text is not None:
            raise ValueError("Expecting value")
        return self._body


class FakeSession:
    """Replays scripted responses (or exceptions) per URL"""

    def __init__(self, script):
        self.script = {url: list(items) for url, items in script.items()}
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json["method"]))
        item = self.script[url].pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def ok(result):
    return FakeResponse(body={"jsonrpc": "2.0", "id": 1, "result": result})


def make_client(script, max_retries=2):
    session = FakeSession(script)
    client = JsonRpcClient(list(script), timeout=5, max_retries=max_retries, session=session)
    client._sleep = lambda seconds: None
    return client, session


def test_block_number():
    client, _ = make_client({"https://a": [ok("0x10")]})

    assert client.block_number() == 16


def test_transient_errors_retry_then_fail_over():
    client, session = make_client({
        "https://a": [requests.Timeout("read timed out"), FakeResponse(status_code=503)],
        "https://b": [ok("0x20")],
    })

    assert client.block_number() == 32
    assert [url for url, _ in session.calls] == ["https://a", "https://a", "https://b"]
    assert client.current_url == "https://b"


def test_rate_limit_error_object_is_transient():
    client, session = make_client({
        "https://a": [
            FakeResponse(body={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "limit exceeded"}}),
            ok("0x1"),
        ],
    })

    assert client.block_number() == 1
    assert len(session.calls) == 2


def test_malformed_response_is_not_retried():
    client, session = make_client({
        "https://a": [FakeResponse(text="<html>bad gateway</html>")],
        "https://b": [ok("0x1")],
    })

    with pytest.raises(RpcResponseError):
        client.block_number()
    assert len(session.calls) == 1


def test_json_rpc_error_is_not_retried():
    client, session = make_client({
        "https://a": [FakeResponse(body={"jsonrpc": "2.0", "id": 1,
                                         "error": {"code": -32602, "message": "invalid params"}})],
    })

    with pytest.raises(RpcResponseError):
        client.get_logs("0xabc", ["0x01"], 1, 2)


def test_all_endpoints_exhausted():
    client, session = make_client({
        "https://a": [requests.ConnectionError("reset")] * 2,
        "https://b": [FakeResponse(status_code=429)] * 2,
    })

    with pytest.raises(TransientRpcError):
        client.block_number()
    assert len(session.calls) == 4


def test_get_logs_request_shape():
    client, session = make_client({"https://a": [ok([])]})
    captured = {}

    def post(url, json=None, timeout=None):
        captured.update(json)
        return ok([])

    session.post = post
    client.get_logs("0xabc", ["0x01", "0x02"], 256, 300)

    assert captured["method"] == "eth_getLogs"
    assert captured["params"] == [{
        "address": "0xabc",
        "topics": [["0x01", "0x02"]],
        "fromBlock": "0x100",
        "toBlock": "0x12c",
    }]


def test_block_timestamp():
    client, _ = make_client({"https://a": [ok({"number": "0x5", "timestamp": "0x67c2e9c0"})]})

    ts = client.block_timestamp(5)

    assert ts.tzinfo is not None
    assert int(ts.timestamp()) == 0x67c2e9c0
