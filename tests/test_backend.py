import pytest
from fastapi.testclient import TestClient

from backend.main import app
from backend.services.k8s_service import K8sService, get_k8s_service
from kubeconverge import state
from kubeconverge.controller import Controller

from fake_cluster import EXAMPLE_DIR, FakeCluster, FakeClock, scenario_specs


@pytest.fixture()
def cluster(tmp_path, monkeypatch):
    monkeypatch.setattr(state.settings, "state_file", str(tmp_path / "last-run.json"))
    fake = FakeCluster()
    app.dependency_overrides[get_k8s_service] = lambda: K8sService(client=fake)
    yield fake
    app.dependency_overrides.pop(get_k8s_service, None)


def _record_run(fake: FakeCluster) -> None:
    clock = FakeClock()
    result = Controller(fake, clock=clock, sleep=clock.sleep).run(scenario_specs(), manifest_dir="scenario")
    state.save_result(result)


def test_root() -> None:
    response = TestClient(app).get("/")
    assert response.status_code == 200


def test_status_404_without_run(cluster) -> None:
    response = TestClient(app).get("/api/status")
    assert response.status_code == 404


def test_status_returns_summary(cluster) -> None:
    _record_run(cluster)
    body = TestClient(app).get("/api/status").json()
    assert body["success"] is True
    assert body["exit_code"] == 0
    assert body["states"]["default/StatefulSet/db"] == "ready"


def test_plan_orders_example() -> None:
    response = TestClient(app).post("/api/plan", json={"manifest_dir": str(EXAMPLE_DIR), "namespace": "default"})
    assert response.status_code == 200
    order = [item["identity"] for item in response.json()["order"]]
    assert order.index("default/StatefulSet/mongo") < order.index("default/Deployment/flask-app")


def test_plan_reports_cycle(tmp_path) -> None:
    (tmp_path / "m.yaml").write_text(
        "kind: Secret\nname: a\ndependsOn: [ConfigMap/b]\npayload: {data: {}}\n---\n"
        "kind: ConfigMap\nname: b\ndependsOn: [Secret/a]\npayload: {data: {}}\n",
        encoding="utf-8",
    )
    response = TestClient(app).post("/api/plan", json={"manifest_dir": str(tmp_path)})
    assert response.status_code == 409
    assert sorted(response.json()["detail"]["members"]) == ["default/ConfigMap/b", "default/Secret/a"]


def test_plan_rejects_bad_manifest_dir(tmp_path) -> None:
    response = TestClient(app).post("/api/plan", json={"manifest_dir": str(tmp_path / "missing")})
    assert response.status_code == 422


def test_snapshot_reports_live_state(cluster) -> None:
    _record_run(cluster)
    body = TestClient(app).get("/api/snapshot").json()
    rows = {row["identity"]: row for row in body["resources"]}
    assert body["manifest_dir"] == "scenario"
    assert rows["default/Deployment/app"]["state"] == "ready"
    assert rows["default/Deployment/app"]["pods"] == 2
