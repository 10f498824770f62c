from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from src.dispatch.api.routes.dispatch import get_session_registry
from src.dispatch.config import settings
from src.dispatch.main import create_app
from src.dispatch.persistence.filesystem import FileStorage
from src.dispatch.services.geocoding import GeocodeCache, Geocoder
from src.dispatch.services.routing.matrix import TravelTimeMatrixBuilder
from src.dispatch.services.schedule.persistence import SchedulePersistence
from src.dispatch.services.schedule.session import SessionRegistry

from conftest import DummyGeocodingProvider, DummyTravelTimeProvider, FakeRepository

DAY = "2024-03-04"


@pytest.fixture
def repository() -> FakeRepository:
    repository = FakeRepository()
    repository.roster_rows = [
        {"pm_name": "Kevin", "pm_title": "Sr. Production Manager", "crew_name": "Gabriel", "color": "#3b82f6"},
        {"pm_name": "Kevin", "pm_title": "Sr. Production Manager", "crew_name": "David", "color": "#3b82f6"},
    ]
    repository.pre_scheduled[DAY] = [
        {"id": 5, "technician_name": "Gabriel", "scheduled_time": "09:00", "job_number": "WF-5", "address": "5 Oak"},
    ]
    return repository


@pytest.fixture
def client(tmp_path: Path, repository: FakeRepository):
    registry = SessionRegistry(
        SchedulePersistence(repository=repository, storage=FileStorage(root=tmp_path)),
        geocoder=Geocoder(provider=DummyGeocodingProvider(), cache=GeocodeCache()),
        matrix_builder=TravelTimeMatrixBuilder(provider=DummyTravelTimeProvider()),
        autosave_delay=0.01,
    )
    app = create_app()
    app.dependency_overrides[get_session_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client


def test_health_endpoints(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "osrm_base_url", None)

    assert client.get("/api/health").json() == {"status": "ok"}
    assert client.get("/api/health/osrm").json() == {
        "service": "osrm",
        "configured": False,
        "healthy": False,
        "fallback": "haversine",
    }
    assert client.get("/").json()["status"] == "running"


def test_placements_endpoint(client: TestClient) -> None:
    response = client.post(
        "/api/dispatch/placements",
        json={
            "jobs": [{"id": "a", "hours": 8.0}, {"id": "b", "hours": 2.0}],
            "legs": [1800, 4500],
            "opening_hour": 8.5,
            "closing_hour": 18.0,
            "slot_hours": 0.5,
        },
    )

    assert response.status_code == 200
    first, second = response.json()["placements"]
    assert first["start_hour"] == pytest.approx(9.0)
    assert first["end_hour"] == pytest.approx(17.0)
    assert first["start_label"] == "9:00 AM"
    assert second["start_hour"] == pytest.approx(18.25)
    assert second["overflow"] is True
    assert second["start_row"] is None


def test_placements_rejects_inverted_window(client: TestClient) -> None:
    response = client.post(
        "/api/dispatch/placements",
        json={"jobs": [{"id": "a", "hours": 1.0}], "opening_hour": 17.0, "closing_hour": 9.0},
    )
    assert response.status_code == 400


def test_conflicts_endpoint(client: TestClient) -> None:
    response = client.post(
        "/api/dispatch/conflicts",
        json={
            "lanes": [
                {"id": "crew-0", "name": "Gabriel", "kind": "crew"},
                {"id": "crew-1", "name": "David"},
            ],
            "schedule": {
                "crew-0": [{"id": "a", "hours": 1.0, "job_number": "WF-100 "}],
                "crew-1": [{"id": "b", "hours": 1.0, "job_number": "wf-100"}],
            },
        },
    )

    assert response.status_code == 200
    (warning,) = response.json()["warnings"]
    assert warning["kind"] == "duplicate_job"
    assert warning["lane_ids"] == ["crew-0", "crew-1"]


def test_redistribute_endpoint(client: TestClient) -> None:
    response = client.post(
        "/api/dispatch/redistribute",
        json={
            "source_jobs": [{"id": "big", "hours": 4.0}, {"id": "small", "hours": 1.0}],
            "targets": [{"lane_id": "A"}, {"lane_id": "B", "jobs": [{"id": "x", "hours": 4.0}]}],
            "day_length_hours": 6.0,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["assignments"]["big"] == "A"
    assert set(body["assignments"]) == {"big", "small"}
    assert len(body["previews"]) == 2


def test_redistribute_requires_targets(client: TestClient) -> None:
    response = client.post(
        "/api/dispatch/redistribute",
        json={"source_jobs": [{"id": "a", "hours": 1.0}], "targets": []},
    )
    assert response.status_code == 422


def test_sequence_endpoint_with_matrix(client: TestClient) -> None:
    response = client.post(
        "/api/dispatch/routes/sequence",
        json={"matrix": [[0, 100, None], [100, 0, 50], [200, 50, 0]]},
    )

    assert response.status_code == 200
    assert response.json() == {"order": [1, 2], "legs": [100.0, 50.0, 200.0], "total_seconds": 350.0, "partial": False}


def test_sequence_endpoint_rejects_bad_input(client: TestClient) -> None:
    assert client.post("/api/dispatch/routes/sequence", json={"matrix": [[0, 1], [1]]}).status_code == 400
    assert client.post("/api/dispatch/routes/sequence", json={}).status_code == 400


def test_schedule_lifecycle(client: TestClient, repository: FakeRepository) -> None:
    response = client.get(f"/api/dispatch/schedules/{DAY}")
    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "defaults"
    lane_ids = [lane["id"] for lane in body["document"]["lanes"]]
    assert lane_ids == ["manager-0", "crew-0", "crew-1"]
    (merged,) = body["document"]["schedule"]["crew-0"]
    assert merged["job_number"] == "WF-5"
    assert merged["pinned_start"] == 9.0

    document = body["document"]
    document["schedule"]["crew-1"] = [{"id": "d1", "job_type": "demo", "hours": 6.0, "job_number": "WF-6"}]
    response = client.put(f"/api/dispatch/schedules/{DAY}", json=document)
    assert response.status_code == 200
    assert response.json()["source"] == "client"
    assert [job["id"] for job in repository.documents[DAY]["schedule"]["crew-1"]] == ["d1"]

    response = client.post(f"/api/dispatch/schedules/{DAY}/finalize", json={"finalized_by": "dispatcher-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["finalized"] is True
    assert body["persisted"] is True
    assert {record["technician_name"] for record in body["records"]} == {"Gabriel", "David"}
    assert set(body["notifications"]) == {"Gabriel", "David"}
    assert DAY in repository.finalized

    # a second GET does not merge the appointment again
    again = client.get(f"/api/dispatch/schedules/{DAY}").json()
    assert len(again["document"]["schedule"]["crew-0"]) == 1
    assert again["document"]["finalized"] is True


def test_invalid_schedule_date(client: TestClient) -> None:
    assert client.get("/api/dispatch/schedules/03-04-2024").status_code == 400


def test_roster_endpoint(client: TestClient) -> None:
    response = client.get("/api/dispatch/roster", params={"schedule_date": DAY})

    assert response.status_code == 200
    body = response.json()
    assert [group["manager"] for group in body["manager_groups"]] == ["Kevin"]
    assert [lane["name"] for lane in body["lanes"]] == ["Kevin", "Gabriel", "David"]
