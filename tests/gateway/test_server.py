"""Tests for gateway/server.py - HTTP and WebSocket front end."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from gateway.platforms.registry import ChannelRegistry
from gateway.rpc import RpcDispatcher
from gateway.run import GatewayRunner
from gateway.server import DEVICE_HEADER, create_app


def _client(tmp_path, token=None):
    cfg = {"agents": {"list": [{"id": "main"}]}}
    if token:
        cfg["gateway"] = {"auth": {"token": token}}
    runner = GatewayRunner(cfg, registry=ChannelRegistry(), state_dir=tmp_path)
    dispatcher = RpcDispatcher(runner, config_path=tmp_path / "oni.json")
    return TestClient(create_app(dispatcher)), runner


class TestHttp:
    def test_healthz_needs_no_token(self, tmp_path):
        client, _ = _client(tmp_path, token="s3cret")
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["ok"] is True

    def test_rpc_without_token_configured(self, tmp_path):
        client, _ = _client(tmp_path)
        body = client.post("/rpc", json={"id": 1, "method": "agents.list"}).json()
        assert body["id"] == 1
        assert body["ok"] is True
        assert body["payload"]["defaultId"] == "main"

    def test_rpc_requires_bearer(self, tmp_path):
        client, _ = _client(tmp_path, token="s3cret")
        assert client.post("/rpc", json={"method": "health"}).status_code == 401
        wrong = client.post("/rpc", json={"method": "health"}, headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401
        ok = client.post("/rpc", json={"method": "health"}, headers={"Authorization": "Bearer s3cret"})
        assert ok.status_code == 200
        assert ok.json()["ok"] is True

    def test_paired_device_token(self, tmp_path):
        client, runner = _client(tmp_path, token="s3cret")
        request = runner.device_store.request("laptop")
        token = runner.device_store.approve(request["requestId"])["tokens"]["operator"]
        headers = {"Authorization": f"Bearer {token}", DEVICE_HEADER: "laptop"}
        assert client.post("/rpc", json={"method": "health"}, headers=headers).status_code == 200
        headers[DEVICE_HEADER] = "phone"
        assert client.post("/rpc", json={"method": "health"}, headers=headers).status_code == 401

    def test_method_required(self, tmp_path):
        client, _ = _client(tmp_path)
        response = client.post("/rpc", json={"id": "x"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"

    def test_body_must_be_json(self, tmp_path):
        client, _ = _client(tmp_path)
        response = client.post("/rpc", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_rpc_errors_use_200_envelope(self, tmp_path):
        client, _ = _client(tmp_path)
        body = client.post("/rpc", json={"id": 2, "method": "nope"}).json()
        assert body == {"id": 2, "ok": False, "error": {"code": "NOT_FOUND", "message": "unknown method: nope"}}


class TestWebSocket:
    def test_request_response_frames(self, tmp_path):
        client, _ = _client(tmp_path)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "req", "id": "a", "method": "agents.list"})
            frame = ws.receive_json()
            assert frame["type"] == "res"
            assert frame["id"] == "a"
            assert frame["ok"] is True

            ws.send_json({"type": "event", "id": "b"})
            bad = ws.receive_json()
            assert bad["id"] == "b"
            assert bad["error"]["code"] == "INVALID_REQUEST"

    def test_token_in_query(self, tmp_path):
        client, _ = _client(tmp_path, token="s3cret")
        with client.websocket_connect("/ws?token=s3cret") as ws:
            ws.send_json({"type": "req", "id": 1, "method": "health"})
            assert ws.receive_json()["ok"] is True

    def test_unauthorized_closes_4401(self, tmp_path):
        client, _ = _client(tmp_path, token="s3cret")
        with client.websocket_connect("/ws") as ws:
            frame = ws.receive_json()
            assert frame["error"]["code"] == "UNAUTHORIZED"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 4401
