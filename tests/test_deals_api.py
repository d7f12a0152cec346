from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from conftest import DEAL_ID, PIPELINE_ID, STAGE_NEW, STAGE_WON, FakeRemoteStore, open_deal
from dealflow.cache.store import CacheRegistry
from dealflow.crm.errors import RemoteWriteError
from dealflow.crm.service import DealsClient
from dealflow.main import app
from dealflow.realtime.channel import InProcessPushChannel


@pytest.fixture()
def client(remote: FakeRemoteStore, channel: InProcessPushChannel) -> Generator[TestClient, None, None]:
    remote.deals.records["deal-big"] = open_deal(id="deal-big", title="Globex platform", value=12000.0, company_id=None)
    app.state.deals_client = DealsClient(remote, channel, registry=CacheRegistry())
    with TestClient(app) as test_client:
        yield test_client
    del app.state.deals_client


def test_list_returns_enriched_items(client: TestClient) -> None:
    response = client.get("/api/deals")

    assert response.status_code == 200
    body = {item["id"]: item for item in response.json()}
    assert body[DEAL_ID]["company_name"] == "Acme"
    assert body[DEAL_ID]["stage_label"] == "New"
    assert body["deal-big"]["company_name"] == "No company"


def test_list_applies_filters(client: TestClient) -> None:
    by_search = client.get("/api/deals", params={"search": "acme"})
    by_value = client.get("/api/deals", params={"min_value": 1000})
    by_temp_pipeline = client.get("/api/deals", params={"pipeline_id": "temp-123"})
    by_stage = client.get("/api/deals", params={"pipeline_id": PIPELINE_ID, "stage_id": STAGE_WON})

    assert [item["id"] for item in by_search.json()] == [DEAL_ID]
    assert [item["id"] for item in by_value.json()] == ["deal-big"]
    assert by_temp_pipeline.json() == []
    assert by_stage.json() == []


def test_create_update_and_delete(client: TestClient, remote: FakeRemoteStore) -> None:
    created = client.post(
        "/api/deals",
        json={"title": "Initech pilot", "pipeline_id": PIPELINE_ID, "stage_id": STAGE_NEW, "value": 300},
    )
    assert created.status_code == 201
    deal_id = created.json()["id"]
    assert not deal_id.startswith("temp-")
    assert deal_id in remote.deals.records

    updated = client.patch(f"/api/deals/{deal_id}", json={"value": 450, "priority": "high"})
    assert updated.status_code == 200
    assert (updated.json()["value"], updated.json()["priority"], updated.json()["title"]) == (450.0, "high", "Initech pilot")

    deleted = client.delete(f"/api/deals/{deal_id}")
    assert deleted.status_code == 204
    assert client.get(f"/api/deals/{deal_id}").status_code == 404


def test_move_returns_transition_and_tracks_status(client: TestClient, remote: FakeRemoteStore) -> None:
    response = client.post(f"/api/deals/{DEAL_ID}/move", json={"stage_id": STAGE_WON})

    assert response.status_code == 200
    assert response.json()["transition"] == "won"
    assert response.json()["is_won"] is True
    assert client.get(f"/api/deals/{DEAL_ID}").json()["stage_label"] == "Won"

    statuses = {item["operation"]: item for item in client.get("/api/deals/mutations").json()}
    assert statuses["move_item"]["settled"] == 1
    assert statuses["move_item"]["pending"] == 0
    assert statuses["create_item"]["settled"] == 0


def test_conflicting_overrides_are_rejected(client: TestClient) -> None:
    response = client.post(
        f"/api/deals/{DEAL_ID}/move",
        json={"stage_id": STAGE_WON, "explicit_win": True, "explicit_lost": True},
    )

    assert response.status_code == 422


@pytest.mark.parametrize("payload", [{"title": None}, {"value": None}, {"tags": None}, {"custom_fields": None}])
def test_null_for_required_field_is_rejected(client: TestClient, payload: dict) -> None:
    response = client.patch(f"/api/deals/{DEAL_ID}", json=payload)

    assert response.status_code == 422
    record = client.get(f"/api/deals/{DEAL_ID}").json()
    assert (record["title"], record["value"]) == ("Acme renewal", 500.0)


def test_null_clears_optional_reference(client: TestClient) -> None:
    response = client.patch(f"/api/deals/{DEAL_ID}", json={"company_id": None})

    assert response.status_code == 200
    assert response.json()["company_id"] is None
    assert response.json()["company_name"] == "No company"


def test_unknown_item_maps_to_not_found(client: TestClient) -> None:
    response = client.patch("/api/deals/deal-missing", json={"title": "Nope"}, headers={"X-Correlation-Id": "nf-1"})

    assert response.status_code == 404
    assert response.json()["code"] == "deal_not_found"
    assert response.json()["correlation_id"] == "nf-1"


def test_remote_rejection_maps_to_bad_gateway_and_rolls_back(client: TestClient, remote: FakeRemoteStore) -> None:
    remote.deals.fail_with = RemoteWriteError("deal", "update", "conflict", "row locked")

    response = client.post(f"/api/deals/{DEAL_ID}/move", json={"stage_id": STAGE_WON})

    assert response.status_code == 502
    assert response.json()["code"] == "remote_conflict"
    assert response.json()["details"]["detail"] == "row locked"
    record = client.get(f"/api/deals/{DEAL_ID}").json()
    assert (record["stage_id"], record["is_won"]) == (STAGE_NEW, False)
    statuses = {item["operation"]: item for item in client.get("/api/deals/mutations").json()}
    assert statuses["move_item"]["failed"] == 1
    assert "conflict" in statuses["move_item"]["last_error"]


def test_health_reports_loaded_dataset(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["deals_loaded"] is True


def test_correlation_id_is_echoed(client: TestClient) -> None:
    response = client.get("/api/deals", headers={"X-Correlation-Id": "corr-42"})

    assert response.headers["x-correlation-id"] == "corr-42"
    generated = client.get("/api/deals")
    assert generated.headers["x-correlation-id"]
