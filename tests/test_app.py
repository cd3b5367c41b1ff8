import gzip
import threading

import pytest
from werkzeug.test import Client
from werkzeug.wrappers import Request, Response

from adnormalizer.api import API
from adnormalizer.app import (
    build_api,
    cors_middleware,
    create_app,
    gzip_middleware,
    health_check,
    main,
    recovery_middleware,
)
from adnormalizer.config import AdNormalizerConfig


class StubAPI:
    def __init__(self, body=b"vast-body"):
        self.body = body
        self.calls = []

    def _respond(self, name, request):
        self.calls.append((name, request.path))
        return Response(self.body, status=200, content_type="application/xml")

    def handle_vmap(self, request):
        return self._respond("vmap", request)

    def handle_vast(self, request):
        return self._respond("vast", request)

    def handle_encore_callback(self, request):
        return self._respond("encore", request)

    def handle_packaging_success(self, request):
        return self._respond("success", request)

    def handle_packaging_failure(self, request):
        return self._respond("failure", request)


class FailingAPI(StubAPI):
    def handle_vast(self, request):
        raise RuntimeError("boom")


def _client(api, environment=""):
    return Client(create_app(api, environment))


def test_health_check_direct():
    response = health_check(Request.from_values("/ping"))
    assert response.status_code == 200
    assert response.get_data() == b"pong"


def test_ping_route():
    response = _client(StubAPI()).get("/ping")
    assert response.status_code == 200
    assert response.get_data() == b"pong"


@pytest.mark.parametrize(
    "path,name",
    [
        ("/api/v1/vmap", "vmap"),
        ("/api/v1/vast", "vast"),
        ("/packagerCallback/success", "success"),
        ("/packagerCallback/failure", "failure"),
        ("/encoreCallback", "encore"),
    ],
)
def test_routes_reach_handlers(path, name):
    api = StubAPI()
    response = _client(api).post(path) if name in ("success", "failure", "encore") else _client(api).get(path)
    assert response.status_code == 200
    assert response.get_data() == b"vast-body"
    assert [call[0] for call in api.calls] == [name]


def test_prefix_is_stripped_for_mounted_handlers():
    api = StubAPI()
    _client(api).get("/api/v1/vast")
    assert api.calls[0][1] == "/api/v1/vast"
    assert api.calls[0][0] == "vast"


def test_unknown_path_is_not_found():
    response = _client(StubAPI()).get("/nope")
    assert response.status_code == 404
    assert response.get_data() == b"404 page not found\n"


def test_unknown_path_under_api_has_cors_headers():
    response = _client(StubAPI()).get("/api/v1/other")
    assert response.status_code == 404
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_cors_uses_request_origin():
    response = _client(StubAPI()).get(
        "/api/v1/vast", headers={"Origin": "https://player.example.com"}
    )
    assert response.headers["Access-Control-Allow-Origin"] == "https://player.example.com"
    assert response.headers["Access-Control-Allow-Credentials"] == "true"
    assert response.headers["Access-Control-Expose-Headers"] == "Set-Cookie"


def test_cors_defaults_to_wildcard():
    response = _client(StubAPI()).get("/api/v1/vmap")
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_ping_has_no_cors_headers():
    response = _client(StubAPI()).get("/ping")
    assert "Access-Control-Allow-Origin" not in response.headers


def test_recovery_turns_exception_into_500():
    response = _client(FailingAPI()).get("/api/v1/vast")
    assert response.status_code == 500
    assert response.get_data() == b""


def test_large_body_is_gzipped_when_accepted():
    body = b"<VAST>" + b"a" * 5000 + b"</VAST>"
    response = _client(StubAPI(body)).get(
        "/api/v1/vast", headers={"Accept-Encoding": "gzip"}
    )
    assert response.headers["Content-Encoding"] == "gzip"
    assert gzip.decompress(response.get_data()) == body
    assert int(response.headers["Content-Length"]) == len(response.get_data())


def test_small_body_is_not_gzipped():
    response = _client(StubAPI(b"short")).get(
        "/api/v1/vast", headers={"Accept-Encoding": "gzip"}
    )
    assert "Content-Encoding" not in response.headers
    assert response.get_data() == b"short"


def test_body_not_gzipped_without_accept_encoding():
    body = b"b" * 5000
    response = _client(StubAPI(body)).get("/api/v1/vast")
    assert "Content-Encoding" not in response.headers
    assert response.get_data() == body


def test_gzip_refused_with_zero_quality():
    body = b"c" * 5000
    response = _client(StubAPI(body)).get(
        "/api/v1/vast", headers={"Accept-Encoding": "gzip;q=0"}
    )
    assert response.get_data() == body


def test_gzip_middleware_respects_min_size():
    def app(environ, start_response):
        start_response("200 OK", [("Content-Type", "text/plain")])
        return [b"hello ", b"world"]

    client = Client(gzip_middleware(app, min_size=5, level=9))
    response = client.get("/", headers={"Accept-Encoding": "gzip, deflate"})
    assert gzip.decompress(response.get_data()) == b"hello world"


def test_middlewares_compose_directly():
    def app(environ, start_response):
        raise ValueError("bad")

    client = Client(recovery_middleware(cors_middleware(app)))
    response = client.get("/")
    assert response.status_code == 500


def test_debug_endpoint_outside_production():
    response = _client(StubAPI(), "DEVELOPMENT").get("/debug/threads")
    assert response.status_code == 200
    assert threading.current_thread().name in response.get_data(as_text=True)


def test_debug_endpoint_hidden_in_production():
    response = _client(StubAPI(), "PRODUCTION").get("/debug/threads")
    assert response.status_code == 404


def test_build_api_uses_config():
    config = AdNormalizerConfig(
        encore_url="http://encore.example.com",
        ad_server_url="http://ads.example.com",
        valkey_url="redis://localhost:6379",
        key_field="url",
        key_regex="[^a-zA-Z0-9]",
        encore_profile="program",
        bucket_url="s3://bucket.example.com",
        root_url="http://root.example.com",
        asset_server_url="http://assets.example.com",
        packaging_queue_name="package",
    )
    api = build_api(config)
    assert isinstance(api, API)
    assert api.ad_server_url == config.ad_server_url
    assert api.key_field == "url"
    assert api.package_queue == "package"
    assert api.encore_handler.encore_url == config.encore_url


def test_main_fails_on_missing_configuration(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    for name in (
        "ENCORE_URL",
        "REDIS_URL",
        "AD_SERVER_URL",
        "OUTPUT_BUCKET_URL",
        "ASSET_SERVER_URL",
        "ROOT_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    assert main([]) == 1
    output = capsys.readouterr().out
    assert "Failed to read configuration" in output
    assert "missing ENCORE_URL environment variable" in output