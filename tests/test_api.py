from __future__ import annotations

import base64
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import RedisError

from irisvision import dependencies
from irisvision.main import app
from tests.utils.auth import build_headers
from tests.utils.fakes import make_jpeg

JPEG = make_jpeg(1024, 768)


def _device() -> str:
    return f"device-{uuid.uuid4().hex[:12]}"


def _scan(client, headers, data: bytes = JPEG):
    return client.post(
        "/v1/scans", headers=headers, files={"image": ("iris.jpg", data, "image/jpeg")}
    )


def test_missing_version_header(client):
    headers = build_headers(_device())
    headers.pop("X-API-Ver")
    resp = client.get("/v1/quota", headers=headers)
    assert resp.status_code == 426
    assert resp.json()["detail"]["code"] == "UPGRADE_REQUIRED"


def test_invalid_version_header(client):
    resp = client.get("/v1/quota", headers=build_headers(_device(), api_ver="v0"))
    assert resp.status_code == 426


def test_invalid_api_key(client):
    resp = client.get("/v1/quota", headers=build_headers(_device(), api_key="nope"))
    assert resp.status_code == 401
    assert resp.json()["detail"]["code"] == "UNAUTHORIZED"


def test_missing_device_id(client):
    headers = build_headers(_device())
    headers.pop("X-Device-ID")
    resp = client.get("/v1/quota", headers=headers)
    assert resp.status_code == 401


def test_invalid_bearer_token(client):
    headers = build_headers(_device())
    headers["Authorization"] = "Bearer not-a-jwt"
    resp = client.get("/v1/quota", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["detail"]["message"] == "Invalid identity token"


def test_scan_multipart(client):
    headers = build_headers(_device())
    resp = _scan(client, headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["state"] == "succeeded"
    assert body["fallback"] is False
    assert body["analysis"]["pattern"]["name"] == "Crypts of Fuchs"
    assert body["record_id"] == body["scan_id"]
    assert body["scans_used"] == 1
    assert body["weekly_limit"] == 3


def test_scan_base64_json(client):
    headers = build_headers(_device())
    payload = {"image_base64": base64.b64encode(JPEG).decode(), "image_ref": "file:///iris.jpg"}
    resp = client.post("/v1/scans", headers=headers, json=payload)
    assert resp.status_code == 200

    history = client.get("/v1/history", headers=headers).json()
    assert history[0]["image_ref"] == "file:///iris.jpg"
    assert history[0]["image_url"] is None


def test_scan_invalid_base64(client):
    resp = client.post(
        "/v1/scans", headers=build_headers(_device()), json={"image_base64": "%%%"}
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "BAD_REQUEST"


def test_scan_missing_image(client):
    resp = client.post("/v1/scans", headers=build_headers(_device()), json={})
    assert resp.status_code == 400


def test_scan_unreadable_image(client):
    resp = _scan(client, build_headers(_device()), data=b"not an image")
    assert resp.status_code == 400


def test_upload_too_large(client, monkeypatch):
    monkeypatch.setattr(app.state.engine.settings, "max_upload_bytes", 100)
    resp = _scan(client, build_headers(_device()))
    assert resp.status_code == 413


def test_quota_exceeded_returns_402(client):
    headers = build_headers(_device())
    for _ in range(3):
        assert _scan(client, headers).status_code == 200

    resp = _scan(client, headers)
    assert resp.status_code == 402
    body = resp.json()
    assert body["code"] == "QUOTA_EXCEEDED"
    assert body["limit"] == 3
    assert len(client.get("/v1/history", headers=headers).json()) == 3


def test_quota_endpoint(client):
    headers = build_headers(_device())
    body = client.get("/v1/quota", headers=headers).json()
    assert body["scans_used"] == 0
    assert body["remaining"] == 3
    assert body["subscription_status"] == "free"
    assert body["can_scan"] is True

    _scan(client, headers)
    body = client.get("/v1/quota", headers=headers).json()
    assert body["scans_used"] == 1
    assert body["remaining"] == 2


def test_history_and_clear(client):
    headers = build_headers(_device())
    first = _scan(client, headers).json()
    second = _scan(client, headers).json()

    history = client.get("/v1/history", headers=headers).json()
    assert {item["id"] for item in history} == {first["scan_id"], second["scan_id"]}

    other = client.get("/v1/history", headers=build_headers(_device())).json()
    assert other == []

    resp = client.delete("/v1/history", headers=headers)
    assert resp.status_code == 204
    assert client.get("/v1/history", headers=headers).json() == []


def test_authenticated_history_follows_user_across_devices(client):
    uid = f"user-{uuid.uuid4().hex[:8]}"
    phone = build_headers(_device(), uid=uid)
    tablet = build_headers(_device(), uid=uid)

    scan = _scan(client, phone).json()
    history = client.get("/v1/history", headers=tablet).json()
    assert [item["id"] for item in history] == [scan["scan_id"]]
    assert client.get("/v1/quota", headers=tablet).json()["scans_used"] == 1


def test_pro_token_claim_grants_premium(client):
    uid = f"user-{uuid.uuid4().hex[:8]}"
    expiry = datetime.now(timezone.utc) + timedelta(days=30)
    headers = build_headers(
        _device(), uid=uid, is_pro=True, expiry_ms=int(expiry.timestamp() * 1000)
    )
    for _ in range(4):
        assert _scan(client, headers).status_code == 200

    body = client.get("/v1/quota", headers=headers).json()
    assert body["subscription_status"] == "premium"
    assert body["is_premium"] is True
    assert body["remaining"] is None
    assert body["can_scan"] is True


def test_purchase_verification_sandbox(client):
    headers = build_headers(_device(), uid=f"user-{uuid.uuid4().hex[:8]}")
    resp = client.post(
        "/v1/purchases/verify",
        headers=headers,
        json={"purchaseToken": "tok", "productId": "iris_pro_monthly"},
    )
    assert resp.status_code == 200
    assert resp.json()["subscription_status"] == "premium"


def test_purchase_verification_rejects_missing_token(client):
    resp = client.post(
        "/v1/purchases/verify",
        headers=build_headers(_device()),
        json={"purchaseToken": "", "productId": "iris_pro_monthly"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "PAYMENT_INVALID"


def test_metrics_exposed(client):
    _scan(client, build_headers(_device()))
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "scan_requests_total" in resp.text
    assert "scan_latency_seconds_bucket" in resp.text


def test_rate_limit_ip(client):
    headers = build_headers(_device())
    headers["X-Forwarded-For"] = "1.1.1.1"
    for _ in range(30):
        assert client.get("/v1/quota", headers=headers).status_code == 200
    assert client.get("/v1/quota", headers=headers).status_code == 429


def test_rate_limit_redis_unavailable(client, monkeypatch):
    class _RedisFail:
        def pipeline(self):
            raise RedisError

    monkeypatch.setattr(dependencies, "redis_client", _RedisFail())
    resp = client.get("/v1/quota", headers=build_headers(_device()))
    assert resp.status_code == 503


@pytest.mark.parametrize("path", ["/v1/history", "/v1/quota"])
def test_endpoints_require_api_key(client, path):
    resp = client.get(path)
    assert resp.status_code == 422
