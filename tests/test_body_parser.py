"""Tests for the body parser middleware."""

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from backend.app.middleware.body_parser import BodyParserMiddleware


def _build_app(max_body_size: int = 16) -> FastAPI:
    app = FastAPI()
    app.add_middleware(BodyParserMiddleware, max_body_size=max_body_size)

    @app.post("/echo")
    async def echo(req: Request):
        return {"size": len(await req.body())}

    @app.post("/json")
    async def echo_json(req: Request):
        body = await req.body()
        return {"payload": await req.json() if body else None}

    @app.post("/boom")
    async def boom(_: Request):
        raise RuntimeError("boom")

    return app


def test_does_not_mask_route_exceptions():
    client = TestClient(_build_app(max_body_size=1024), raise_server_exceptions=False)

    resp = client.post("/boom", json={"x": 1})

    # If the middleware masked exceptions this would be 413
    assert resp.status_code == 500


def test_oversize_body_rejected_by_content_length():
    client = TestClient(_build_app(), raise_server_exceptions=False)

    resp = client.post("/echo", content=b"x" * 17)

    assert resp.status_code == 413
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json() == {
        "success": False,
        "error": "Request body too large. Maximum allowed: 16 bytes",
        "limit": 16,
    }


def test_body_at_limit_accepted():
    client = TestClient(_build_app(), raise_server_exceptions=False)

    resp = client.post("/echo", content=b"x" * 16)

    assert resp.status_code == 200
    assert resp.json() == {"size": 16}


def test_chunked_upload_over_limit_rejected():
    client = TestClient(_build_app(), raise_server_exceptions=False)

    resp = client.post("/echo", content=iter([b"x" * 10, b"x" * 10]))

    assert resp.status_code == 413


def test_chunked_json_over_limit_rejected():
    client = TestClient(_build_app(), raise_server_exceptions=False)

    resp = client.post(
        "/json",
        content=iter([b'{"a": "', b"x" * 20, b'"}']),
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 413


def test_malformed_json_rejected():
    client = TestClient(_build_app(max_body_size=1024), raise_server_exceptions=False)

    resp = client.post("/json", content=b'{"email": ', headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Malformed JSON body"}


def test_malformed_json_with_suffix_media_type_rejected():
    client = TestClient(_build_app(max_body_size=1024), raise_server_exceptions=False)

    resp = client.post(
        "/json",
        content=b"not json",
        headers={"Content-Type": "application/merge-patch+json; charset=utf-8"},
    )

    assert resp.status_code == 400


def test_valid_json_replayed_to_route():
    client = TestClient(_build_app(max_body_size=1024), raise_server_exceptions=False)

    resp = client.post("/json", json={"email": "a@b.c", "days": 2})

    assert resp.status_code == 200
    assert resp.json() == {"payload": {"email": "a@b.c", "days": 2}}


def test_empty_json_body_passes_through():
    client = TestClient(_build_app(max_body_size=1024), raise_server_exceptions=False)

    resp = client.post("/json", content=b"", headers={"Content-Type": "application/json"})

    assert resp.status_code == 200
    assert resp.json() == {"payload": None}


def test_non_json_body_not_parsed():
    client = TestClient(_build_app(max_body_size=1024), raise_server_exceptions=False)

    resp = client.post("/echo", content=b"{not json", headers={"Content-Type": "text/plain"})

    assert resp.status_code == 200
    assert resp.json() == {"size": 9}


def test_pipeline_rejects_malformed_json_before_routes(client):
    resp = client.post(
        "/api/auth/login",
        content=b"{broken",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Malformed JSON body"
    assert "X-Request-ID" in resp.headers
