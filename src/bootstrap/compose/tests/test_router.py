"""
测试 compose/router.py 模块。
"""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.bootstrap.config import config
from src.bootstrap.compose.router import router


app = FastAPI()
app.include_router(router)

client = TestClient(app)


def test_compile_endpoint(tmp_path, monkeypatch):
    """测试编译清单端点"""
    monkeypatch.setattr(config, "target_folder", str(tmp_path))
    monkeypatch.setattr(config, "docker_user", "none")
    body = {
        "preset": {
            "databases": [{"name": "db", "openPort": True}],
            "nodes": [{"name": "peer-node", "databaseHost": "db"}],
        }
    }
    response = client.post("/compose", json=body)

    assert response.status_code == 200
    data = response.json()
    assert data["services"]["db"]["ports"] == ["27017:27017"]
    assert data["services"]["peer-node"]["depends_on"] == ["db"]
    assert (tmp_path / "docker" / "docker-compose.yml").exists()


def test_compile_endpoint_configuration_error(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "target_folder", str(tmp_path))
    body = {"preset": {"httpsProxies": [{"name": "https-proxy"}]}}
    response = client.post("/compose", json=body)
    assert response.status_code == 400
    assert "https-proxy" in response.json()["detail"]


def test_compile_endpoint_validation_error():
    response = client.post("/compose", json={"preset": {"nodes": [{"host": "missing-name"}]}})
    assert response.status_code == 422


def test_compile_endpoint_returns_existing_manifest_verbatim(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "target_folder", str(tmp_path))
    compose_file = tmp_path / "docker" / "docker-compose.yml"
    compose_file.parent.mkdir(parents=True)
    compose_file.write_text(
        "version: '2.4'\nservices:\n  db:\n    image: mongo\n    networks:\n    - default\n",
        encoding="utf-8",
    )

    response = client.post("/compose", json={"preset": {"nodes": [{"name": "peer-node"}]}})

    assert response.status_code == 200
    assert response.json() == {
        "version": "2.4",
        "services": {"db": {"image": "mongo", "networks": ["default"]}},
    }
