import sqlite3

from formrules.app import create_app
from formrules.db import connect

ORDER_SCHEMA = {
    "fields": [
        {"name": "price", "component": "Number", "defaultValue": 100, "rules": [{"type": "required"}]},
        {"name": "quantity", "component": "Number", "defaultValue": 1, "rules": [{"type": "min", "value": 1}]},
        {
            "name": "total",
            "component": "Number",
            "compute": {"expr": "price * quantity", "dependencies": ["price", "quantity"]},
        },
        {"name": "accountType", "component": "Radio"},
        {"name": "taxId", "label": "Tax ID", "component": "Text", "requiredWhen": {"field": "accountType", "eq": "business"}},
        {"name": "internal", "component": "Text", "noSubmit": True},
    ]
}


def create_form(client, schema=None) -> dict:
    response = client.post("/api/forms", json={"name": "order", "schema": schema or ORDER_SCHEMA})
    assert response.status_code == 201
    return response.get_json()


def test_healthz(tmp_path) -> None:
    client = create_app(str(tmp_path / "forms.db")).test_client()
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_create_and_fetch_form(tmp_path) -> None:
    client = create_app(str(tmp_path / "forms.db")).test_client()
    created = create_form(client)

    assert created["watch_fields"] == ["accountType", "price", "quantity"]
    assert created["default_values"] == {"price": 100, "quantity": 1, "total": 100}

    fetched = client.get(f"/api/forms/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["schema"] == ORDER_SCHEMA


def test_invalid_schema_is_rejected(tmp_path) -> None:
    client = create_app(str(tmp_path / "forms.db")).test_client()
    response = client.post(
        "/api/forms",
        json={
            "name": "loop",
            "schema": [
                {"name": "a", "component": "Number", "compute": "b + 1"},
                {"name": "b", "component": "Number", "compute": "a + 1"},
            ],
        },
    )
    assert response.status_code == 400
    assert "cycle" in response.get_json()["error"]

    missing = client.post("/api/forms", json={"schema": ORDER_SCHEMA})
    assert missing.status_code == 400
    assert missing.get_json() == {"error": "invalid request payload"}


def test_unknown_form_returns_json_404(tmp_path) -> None:
    client = create_app(str(tmp_path / "forms.db")).test_client()
    response = client.post("/api/forms/99/validate", json={"values": {}})
    assert response.status_code == 404
    assert "not found" in response.get_json()["error"]


def test_state_endpoint_recomputes(tmp_path) -> None:
    client = create_app(str(tmp_path / "forms.db")).test_client()
    form_id = create_form(client)["id"]

    response = client.post(
        f"/api/forms/{form_id}/state",
        json={
            "previous": {"price": 100, "quantity": 1, "total": 100},
            "values": {"price": 50, "quantity": 3, "total": 100},
            "readonly": True,
        },
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["computed_writes"] == {"total": 150}
    assert body["values"]["total"] == 150
    assert body["field_states"]["price"] == {"visible": True, "disabled": False, "required": True, "readonly": True}


def test_validate_endpoint(tmp_path) -> None:
    client = create_app(str(tmp_path / "forms.db")).test_client()
    form_id = create_form(client)["id"]

    personal = client.post(f"/api/forms/{form_id}/validate", json={"values": {"price": 10, "accountType": "personal"}})
    assert personal.get_json() == {"success": True, "errors": {}}

    business = client.post(f"/api/forms/{form_id}/validate", json={"values": {"price": 10, "accountType": "business"}})
    assert business.get_json() == {"success": False, "errors": {"taxId": "Tax ID is required"}}


def test_submission_round_trip(tmp_path) -> None:
    db = tmp_path / "forms.db"
    client = create_app(str(db)).test_client()
    form_id = create_form(client)["id"]

    rejected = client.post(f"/api/forms/{form_id}/submissions", json={"values": {"price": 10, "quantity": 0}})
    assert rejected.status_code == 422
    assert rejected.get_json()["errors"] == {"quantity": "quantity must be at least 1"}

    accepted = client.post(
        f"/api/forms/{form_id}/submissions",
        json={"values": {"price": "10", "quantity": 2, "total": 20, "accountType": "personal", "internal": "x"}},
    )
    assert accepted.status_code == 201
    payload = accepted.get_json()["payload"]
    assert payload == {"price": 10, "quantity": 2, "total": 20, "accountType": "personal", "taxId": None}

    listed = client.get(f"/api/forms/{form_id}/submissions").get_json()["submissions"]
    assert [item["payload"] for item in listed] == [payload]

    conn = connect(db)
    stored = conn.execute("SELECT COUNT(*) AS total FROM submissions").fetchone()
    conn.close()
    assert stored["total"] == 1


def test_non_object_payload_is_bad_request(tmp_path) -> None:
    client = create_app(str(tmp_path / "forms.db")).test_client()
    form_id = create_form(client)["id"]
    response = client.post(f"/api/forms/{form_id}/validate", json=["not", "an", "object"])
    assert response.status_code == 400


def test_engine_cache_is_bounded(tmp_path) -> None:
    app = create_app(str(tmp_path / "forms.db"))
    app.config["ENGINE_CACHE_SIZE"] = 1
    client = app.test_client()

    first = create_form(client)
    second = create_form(client, [{"name": "note", "component": "Text"}])
    engines = app.extensions["formrules_engines"]
    assert len(engines) == 1

    # evicted engines are rebuilt on demand
    response = client.post(f"/api/forms/{first['id']}/validate", json={"values": {"price": 1}})
    assert response.get_json()["success"] is True
    assert len(engines) == 1
    assert second["id"] != first["id"]


class TrackingConnection(sqlite3.Connection):
    closed = False

    def close(self) -> None:
        self.closed = True
        super().close()


def test_request_connections_are_closed(tmp_path, monkeypatch) -> None:
    opened = []

    def tracking_connect(db_path):
        conn = sqlite3.connect(str(db_path), factory=TrackingConnection)
        conn.row_factory = sqlite3.Row
        opened.append(conn)
        return conn

    client = create_app(str(tmp_path / "forms.db")).test_client()
    monkeypatch.setattr("formrules.app.connect", tracking_connect)

    form_id = create_form(client)["id"]
    client.post(f"/api/forms/{form_id}/submissions", json={"values": {"price": 10}})
    client.get(f"/api/forms/{form_id}/submissions")

    assert len(opened) >= 3
    assert all(conn.closed for conn in opened)
