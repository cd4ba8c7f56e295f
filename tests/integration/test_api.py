import httpx
import pytest
from fastapi.testclient import TestClient

from helpers import posix_only, wait_for
from main import create_app
from sbmanager.core.config import ManagerConfig
from sbmanager.repos.config_repo import ConfigRepo
from sbmanager.services.daemon_service import SystemdManager
from sbmanager.services.kernel_service import KernelService

CLASH_YAML = """
proxies:
  - {name: "🇸🇬 Singapore 01", type: trojan, server: sg.example.com, port: 443, password: pw, tls: true}
"""


def _make_client(data_dir, **overrides):
    config = ManagerConfig(DATA_DIR=data_dir, READ_SYSTEM_HOSTS=False, **overrides)
    return TestClient(create_app(config, setup_logging=False))


@pytest.fixture
def client(data_dir, tmp_path):
    with _make_client(data_dir) as test_client:
        test_client.app.state.service_manager = SystemdManager(str(tmp_path / "home"))
        yield test_client


def test_rule_crud_and_preview(client):
    response = client.post("/api/v2/rules/", json={"rule_type": "domain", "values": ["corp.example"], "outbound": "DIRECT"})
    assert response.status_code == 200
    rule = response.json()["data"]

    preview = client.get("/api/v2/config/preview").json()["data"]
    assert {"domain": ["corp.example"], "outbound": "DIRECT"} in preview["route"]["rules"]

    response = client.put(f"/api/v2/rules/{rule['id']}",
                          json={"rule_type": "domain", "values": ["corp.example"], "outbound": "REJECT"})
    assert response.json()["data"]["outbound"] == "REJECT"

    assert client.delete(f"/api/v2/rules/{rule['id']}").status_code == 200
    assert client.get("/api/v2/rules/").json()["data"] == []


def test_current_config_appears_after_background_apply(client):
    assert client.get("/api/v2/config/current").status_code == 404

    client.post("/api/v2/filters/", json={"name": "stream", "include": ["HK"]})

    assert wait_for(lambda: client.get("/api/v2/config/current").status_code == 200)
    current = client.get("/api/v2/config/current").json()["data"]
    assert current["route"]["final"] == "Final"


def test_unknown_entities_map_to_404(client):
    response = client.put("/api/v2/filters/nope", json={"name": "x"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Filter 'nope' not found"

    assert client.delete("/api/v2/subscriptions/nope").status_code == 404
    assert client.post("/api/v2/subscriptions/nope/refresh").status_code == 404


def test_invalid_payload_is_rejected(client):
    response = client.post("/api/v2/rules/", json={"rule_type": "bogus", "values": [], "outbound": "DIRECT"})
    assert response.status_code == 422


def test_manual_node_country_detection(client):
    node = {"tag": "🇯🇵 Tokyo 01", "type": "shadowsocks", "server": "jp.example.com", "server_port": 8388,
            "extra": {"method": "aes-128-gcm", "password": "pw"}}
    response = client.post("/api/v2/nodes/manual", json={"node": node})
    assert response.json()["data"]["node"]["country"] == "JP"

    groups = client.get("/api/v2/nodes/countries").json()["data"]
    assert [(g["code"], g["node_count"]) for g in groups] == [("JP", 1)]
    assert [n["tag"] for n in client.get("/api/v2/nodes/countries/jp").json()["data"]] == ["🇯🇵 Tokyo 01"]


def test_rule_group_update(client):
    groups = client.get("/api/v2/rule-groups/").json()["data"]
    group = dict(groups[0], outbound="DIRECT")

    response = client.put(f"/api/v2/rule-groups/{group['id']}", json=group)

    assert response.status_code == 200
    assert client.get("/api/v2/rule-groups/").json()["data"][0]["outbound"] == "DIRECT"


def test_settings_update_manages_clash_api_secret(client):
    settings = client.get("/api/v2/settings/").json()["data"]

    lan = client.put("/api/v2/settings/", json=dict(settings, allow_lan=True, clash_api_secret="")).json()["data"]
    assert len(lan["clash_api_secret"]) == 32

    local = client.put("/api/v2/settings/", json=dict(settings, allow_lan=False, clash_api_secret="kept?")).json()["data"]
    assert local["clash_api_secret"] == ""


def test_add_subscription(client):
    def handler(request):
        return httpx.Response(200, text=CLASH_YAML)

    client.app.state.subscriptions.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    response = client.post("/api/v2/subscriptions/", json={"name": "main", "url": "https://sub.example.com/clash"})

    assert response.status_code == 200
    subscription = response.json()["data"]
    assert subscription["node_count"] == 1
    nodes = client.get("/api/v2/nodes/").json()["data"]
    assert [(n["tag"], n["country"]) for n in nodes] == [("🇸🇬 Singapore 01", "SG")]

    response = client.put(f"/api/v2/subscriptions/{subscription['id']}", json={"enabled": False})
    assert response.json()["data"]["enabled"] is False
    assert client.get("/api/v2/nodes/").json()["data"] == []


def test_service_start_without_binary_is_a_client_error(client):
    response = client.post("/api/v2/service/start")
    assert response.status_code == 400
    assert "binary not found" in response.json()["detail"]

    status = client.get("/api/v2/service/status").json()["data"]
    assert status["running"] is False
    assert status["state"] == "stopped"
    assert status["version"] == ""


def test_daemon_status(client):
    status = client.get("/api/v2/daemon/status").json()["data"]
    assert status["supported"] is True
    assert status["installed"] is False


@posix_only
def test_apply_then_run_engine(client, fake_engine):
    _, config_path = fake_engine

    response = client.post("/api/v2/config/apply")
    assert response.status_code == 200
    assert response.json()["data"]["path"] == config_path

    response = client.post("/api/v2/service/start")
    assert response.status_code == 200
    try:
        status = client.get("/api/v2/service/status").json()["data"]
        assert status["running"] is True
        assert status["pid"] == response.json()["data"]["pid"]
        assert status["version"] == "sing-box version 1.11.0-fake"

        assert client.post("/api/v2/service/start").status_code == 409
    finally:
        assert client.post("/api/v2/service/stop").status_code == 200

    assert client.get("/api/v2/service/status").json()["data"]["running"] is False


def test_api_key_is_enforced(data_dir):
    with _make_client(data_dir, USE_API_KEY=True, API_KEY="secret") as client:
        assert client.get("/api/v2/rules/").status_code == 401
        assert client.get("/api/v2/rules/?api_key=wrong").status_code == 401
        assert client.get("/api/v2/rules/?api_key=secret").status_code == 200


def test_health_checker_follows_settings(client):
    health = client.get("/api/v2/service/health").json()["data"]
    assert health["enabled"] is False
    assert health["running"] is False
    assert health["fail_count"] == 0

    settings = client.get("/api/v2/settings/").json()["data"]
    settings.update(health_check_enabled=True, health_check_interval=60, health_check_auto_restart=False)
    assert client.put("/api/v2/settings/", json=settings).status_code == 200

    health = client.get("/api/v2/service/health").json()["data"]
    assert health["enabled"] is True
    assert health["running"] is True
    assert health["interval"] == 60
    assert health["auto_restart"] is False

    settings["health_check_enabled"] = False
    client.put("/api/v2/settings/", json=settings)
    assert client.get("/api/v2/service/health").json()["data"]["running"] is False


def test_kernel_info_and_idle_progress(client, data_dir):
    info = client.get("/api/v2/kernel/info").json()["data"]
    assert info["installed"] is False
    assert info["path"].endswith("sing-box")

    progress = client.get("/api/v2/kernel/progress").json()["data"]
    assert progress["status"] == "idle"
    assert progress["progress"] == 0


def test_kernel_releases_rate_limit_maps_to_429(client, data_dir):
    transport = httpx.MockTransport(lambda request: httpx.Response(403, json={"message": "rate limited"}))
    client.app.state.kernel = KernelService(client.app.state.store, ConfigRepo(data_dir),
                                            client=httpx.AsyncClient(transport=transport))

    response = client.get("/api/v2/kernel/releases")
    assert response.status_code == 429
    assert "rate limit" in response.json()["detail"]
