import pytest
from fastapi.testclient import TestClient
from fastapi import WebSocketDisconnect

from config import RelaySettings
from main import create_app


@pytest.fixture
def client():
    settings = RelaySettings(allowed_origins=["https://calls.example"])
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["connections"] == 0


def test_identity_lookup(client):
    assert client.get("/identities/missing").status_code == 404
    with client.websocket_connect("/ws") as ws:
        identity = ws.receive_json()["data"]
        response = client.get(f"/identities/{identity}")
        assert response.status_code == 200
        assert response.json() == {"identity": identity, "connected": True}


def test_call_scenario(client):
    with client.websocket_connect("/ws") as ws_x, client.websocket_connect("/ws") as ws_y:
        x = ws_x.receive_json()
        y = ws_y.receive_json()
        assert x["event"] == y["event"] == "me"
        assert x["data"] != y["data"]

        ws_y.send_json({
            "event": "callUser",
            "data": {"userToCall": x["data"], "signalData": "P1", "from": y["data"], "name": "Y"},
        })
        assert ws_x.receive_json() == {
            "event": "callUser",
            "data": {"signal": "P1", "from": y["data"], "name": "Y"},
        }

        ws_x.send_json({"event": "answerCall", "data": {"to": y["data"], "signal": "P2"}})
        assert ws_y.receive_json() == {"event": "callAccepted", "data": "P2"}

        ws_x.close()
        assert ws_y.receive_json() == {"event": "callEnded", "data": {"identity": x["data"]}}


def test_call_to_missing_user(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"event": "callUser", "data": {"userToCall": "ghost", "signalData": "P1", "name": "Y"}})
        assert ws.receive_json() == {"event": "userUnavailable", "data": {"identity": "ghost"}}


def test_malformed_frame_keeps_connection_open(client):
    with client.websocket_connect("/ws") as ws:
        identity = ws.receive_json()["data"]
        ws.send_text("{broken")
        ws.send_json({"event": "callUser", "data": {"userToCall": "ghost", "signalData": "P1"}})
        assert ws.receive_json()["event"] == "userUnavailable"
        assert client.get(f"/identities/{identity}").status_code == 200


def test_allowed_origin_accepted(client):
    with client.websocket_connect("/ws", headers={"origin": "https://calls.example"}) as ws:
        assert ws.receive_json()["event"] == "me"


def test_foreign_origin_rejected(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws", headers={"origin": "https://elsewhere.example"}):
            pass
    assert excinfo.value.code == 1008


def test_settings_read_port_from_environment(monkeypatch):
    monkeypatch.setenv("PORT", "6123")
    monkeypatch.setenv("RELAY_END_CALL_SCOPE", "peer")
    settings = RelaySettings()
    assert settings.port == 6123
    assert settings.end_call_scope == "peer"


def test_wildcard_origin():
    settings = RelaySettings(allowed_origins=["*"])
    assert settings.origin_allowed("https://anything.example")
    assert settings.origin_allowed(None)
    assert not RelaySettings().origin_allowed("https://anything.example")


def test_single_origin_from_environment(monkeypatch):
    monkeypatch.setenv("RELAY_ALLOWED_ORIGINS", "https://rtcfinal.vercel.app")
    settings = RelaySettings()
    assert settings.allowed_origins == ["https://rtcfinal.vercel.app"]
    assert settings.origin_allowed("https://rtcfinal.vercel.app")


def test_origin_list_from_environment(monkeypatch):
    monkeypatch.setenv("RELAY_ALLOWED_ORIGINS", "https://a.example, https://b.example")
    assert RelaySettings().allowed_origins == ["https://a.example", "https://b.example"]
    monkeypatch.setenv("RELAY_ALLOWED_ORIGINS", '["https://c.example"]')
    assert RelaySettings().allowed_origins == ["https://c.example"]


def test_log_level_is_normalised(monkeypatch):
    monkeypatch.setenv("RELAY_LOG_LEVEL", "info")
    assert RelaySettings().log_level == "INFO"
