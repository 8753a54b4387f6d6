import json
import threading
import urllib.error
import urllib.request

import pytest

from riverkv.engine import Engine
from riverkv.server import create_server, main, parse_address


@pytest.fixture
def base_url(tmp_path):
    engine = Engine(tmp_path)
    server = create_server(engine, "127.0.0.1:0")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield f"http://{host}:{port}"
    server.shutdown()
    server.server_close()
    engine.close()


def _request(url, method="GET", data=None):
    request = urllib.request.Request(url, data=data, method=method)
    with urllib.request.urlopen(request, timeout=10) as response:
        return response.status, response.read()


def _error(url, method="GET", data=None):
    with pytest.raises(urllib.error.HTTPError) as info:
        _request(url, method, data)
    body = info.value.read()
    info.value.close()
    return info.value.code, body


def test_health(base_url):
    assert _request(base_url + "/health") == (200, b"OK")


def test_put_then_get(base_url):
    assert _request(base_url + "/put?key=alpha", "POST", b"first value") == (200, b"OK")
    assert _request(base_url + "/get?key=alpha") == (200, b"first value")


def test_get_missing_key_is_not_found(base_url):
    assert _error(base_url + "/get?key=absent") == (404, b"Key not found\n")


def test_key_is_required(base_url):
    assert _error(base_url + "/get") == (400, b"Key is required\n")
    assert _error(base_url + "/put", "POST", b"x") == (400, b"Key is required\n")
    assert _error(base_url + "/delete", "DELETE") == (400, b"Key is required\n")


def test_wrong_methods(base_url):
    assert _error(base_url + "/put?key=a") == (405, b"Method not allowed\n")
    assert _error(base_url + "/get?key=a", "POST", b"x") == (405, b"Method not allowed\n")
    assert _error(base_url + "/delete?key=a") == (405, b"Method not allowed\n")
    assert _error(base_url + "/stats", "POST", b"") == (405, b"Method not allowed\n")


def test_delete(base_url):
    _request(base_url + "/put?key=gone", "POST", b"soon")
    assert _request(base_url + "/delete?key=gone", "DELETE") == (200, b"OK")
    code, _ = _error(base_url + "/get?key=gone")
    assert code == 404


def test_unknown_path(base_url):
    code, _ = _error(base_url + "/nowhere")
    assert code == 404


def test_stats(base_url):
    _request(base_url + "/put?key=k", "POST", b"value")
    status, body = _request(base_url + "/stats")
    stats = json.loads(body)
    assert status == 200
    assert stats["mem_table_keys"] == 1
    assert stats["mem_table_size"] == len(b"k") + len(b"value")
    assert len(stats["level_blocks"]) == 7


def test_parse_address():
    assert parse_address(":8080") == ("", 8080)
    assert parse_address("127.0.0.1:0") == ("127.0.0.1", 0)
    assert parse_address("[::1]:8080") == ("::1", 8080)


@pytest.mark.parametrize("address", ["localhost", "host:port", "a:b:1", "host:70000"])
def test_parse_address_rejects_invalid(address):
    with pytest.raises(ValueError):
        parse_address(address)


def test_main_with_bad_address_fails(tmp_path):
    assert main(["-data-dir", str(tmp_path / "d"), "-http-addr", "bogus"]) == 1
    assert (tmp_path / "d" / "wal").is_dir()