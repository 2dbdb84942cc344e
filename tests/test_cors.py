"""Tests for CORS header construction and injection."""

from fastapi import FastAPI, Response
from fastapi.testclient import TestClient

from relay.app.middleware.cors import CORSHeaderMiddleware
from relay.app.services.cors import CORSInjector


class TestCORSInjector:

    def test_reflects_origin(self):
        assert CORSInjector().allow_origin("https://app.example") == "https://app.example"

    def test_wildcard_without_origin(self):
        injector = CORSInjector()
        assert injector.allow_origin(None) == "*"
        assert injector.allow_origin("") == "*"

    def test_preflight_detection(self):
        injector = CORSInjector()
        assert injector.is_preflight("OPTIONS") is True
        assert injector.is_preflight("options") is True
        assert injector.is_preflight("GET") is False

    def test_preflight_reflects_requested_headers_and_method(self):
        headers = CORSInjector().preflight_headers({
            "origin": "http://foo",
            "access-control-request-method": "PUT",
            "access-control-request-headers": "x-api-key, content-type",
        })

        assert headers == {
            "Access-Control-Allow-Origin": "http://foo",
            "Access-Control-Allow-Methods": "PUT",
            "Access-Control-Allow-Headers": "x-api-key, content-type",
        }

    def test_preflight_without_request_headers(self):
        headers = CORSInjector().preflight_headers({})
        assert headers == {"Access-Control-Allow-Origin": "*"}

    def test_preflight_response_is_204(self):
        response = CORSInjector().preflight_response({"access-control-request-method": "GET"})

        assert response.status_code == 204
        assert response.headers["access-control-allow-methods"] == "GET"


def _make_app():
    app = FastAPI()
    app.add_middleware(CORSHeaderMiddleware)

    @app.get("/plain")
    async def plain():
        return {"ok": True}

    @app.get("/upstream-cors")
    async def upstream_cors():
        return Response(
            content=b"x",
            headers={"Access-Control-Allow-Origin": "https://somewhere.else"},
        )

    @app.get("/boom")
    async def boom():
        return Response(status_code=502)

    return app


class TestCORSHeaderMiddleware:

    def test_wildcard_when_no_origin(self):
        client = TestClient(_make_app())
        resp = client.get("/plain")

        assert resp.headers["access-control-allow-origin"] == "*"

    def test_reflects_request_origin(self):
        client = TestClient(_make_app())
        resp = client.get("/plain", headers={"Origin": "https://app.example"})

        assert resp.headers["access-control-allow-origin"] == "https://app.example"

    def test_overrides_existing_header(self):
        client = TestClient(_make_app())
        resp = client.get("/upstream-cors", headers={"Origin": "https://app.example"})

        assert resp.headers.get_list("access-control-allow-origin") == ["https://app.example"]

    def test_applies_to_error_statuses(self):
        client = TestClient(_make_app())
        resp = client.get("/boom")

        assert resp.status_code == 502
        assert resp.headers["access-control-allow-origin"] == "*"

    def test_applies_to_not_found(self):
        client = TestClient(_make_app())
        resp = client.get("/missing")

        assert resp.status_code == 404
        assert resp.headers["access-control-allow-origin"] == "*"
