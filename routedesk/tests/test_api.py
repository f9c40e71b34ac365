"""
API Flow Tests.

Dispatcher edit -> driver notification -> acknowledgment, route lifecycle
into the payment workflow, pricing versions and batch repairs over HTTP.
"""

import pytest

from routedesk.app.core.dependencies import get_geocoder
from routedesk.app.main import app
from routedesk.app.models.enums import RouteStatus
from routedesk.app.services.geocoding import GeocodeResult


def stop_payload(stop):
    return stop.model_dump(mode="json")


@pytest.mark.asyncio
async def test_health_and_root(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["redis"] == "up"

    response = await client.get("/")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_edit_notify_acknowledge_flow(client, route_factory, stop_factory):
    p1, p2 = stop_factory("P1", 0), stop_factory("P2", 1)
    route = await route_factory([p1, p2], driver_id=7)

    # 1. Dispatcher swaps the stops
    response = await client.put(
        f"/v1/routes/{route.id}/stops",
        json={"stops": [stop_payload(p2), stop_payload(p1)], "expected_revision": 0, "actor_id": 1}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["route"]["revision"] == 1
    assert [change["change_type"] for change in body["changes"]] == ["sequence", "sequence"]
    notification_id = body["notification_id"]
    assert notification_id is not None

    # 2. Driver app sees the flagged stops and the pending notification
    response = await client.get(f"/v1/routes/{route.id}")
    assert response.status_code == 200
    view = response.json()
    assert [stop["was_modified"] for stop in view["stops"]] == [True, True]
    assert view["pending_notification"]["id"] == notification_id

    response = await client.get("/v1/drivers/7/notifications/pending")
    assert [item["id"] for item in response.json()] == [notification_id]

    # 3. Acknowledge twice
    first = await client.post(f"/v1/notifications/{notification_id}/acknowledge", json={"driver_id": 7})
    second = await client.post(f"/v1/notifications/{notification_id}/acknowledge", json={"driver_id": 7})
    assert first.status_code == 200
    assert first.json()["newly_acknowledged"] is True
    assert second.json()["newly_acknowledged"] is False
    assert second.json()["notification"]["acknowledged_at"] == first.json()["notification"]["acknowledged_at"]

    response = await client.get("/v1/drivers/7/notifications/pending")
    assert response.json() == []

    response = await client.get(f"/v1/routes/{route.id}/notifications")
    assert [item["acknowledged"] for item in response.json()] == [True]


@pytest.mark.asyncio
async def test_acknowledge_by_other_driver_is_rejected(client, route_factory, stop_factory):
    p1, p2 = stop_factory("P1", 0), stop_factory("P2", 1)
    route = await route_factory([p1, p2], driver_id=7)
    response = await client.put(f"/v1/routes/{route.id}/stops", json={"stops": [stop_payload(p2), stop_payload(p1)]})
    notification_id = response.json()["notification_id"]

    response = await client.post(f"/v1/notifications/{notification_id}/acknowledge", json={"driver_id": 8})

    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_STATE_001"


@pytest.mark.asyncio
async def test_stop_update_errors(client, route_factory, stop_factory):
    p1, p2 = stop_factory("P1", 0), stop_factory("P2", 1)
    route = await route_factory([p1, p2])

    # Stale revision
    response = await client.put(
        f"/v1/routes/{route.id}/stops",
        json={"stops": [stop_payload(p2), stop_payload(p1)], "expected_revision": 3}
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_STATE_001"

    # Duplicate stop ids
    response = await client.put(f"/v1/routes/{route.id}/stops", json={"stops": [stop_payload(p1), stop_payload(p1)]})
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION_001"

    # Malformed coordinates
    response = await client.put(f"/v1/routes/{route.id}/stops", json={"stops": [{"id": "P1", "lat": 120}]})
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION"

    # Unknown route
    response = await client.put("/v1/routes/999/stops", json={"stops": [stop_payload(p1)]})
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND_001"


@pytest.mark.asyncio
async def test_lifecycle_to_payment(client, route_factory, stop_factory, pricing_rule):
    route = await route_factory(
        [stop_factory("P1", 0), stop_factory("P2", 1, city="Trindade")],
        status=RouteStatus.DRAFT,
        driver_id=None,
    )

    response = await client.post(f"/v1/routes/{route.id}/dispatch", json={"driver_id": 21})
    assert response.status_code == 200
    assert response.json()["status"] == "dispatched"

    response = await client.post(f"/v1/routes/{route.id}/stops/P1/outcome", json={"outcome": "completed"})
    assert response.status_code == 409

    assert (await client.post(f"/v1/routes/{route.id}/start", json={})).status_code == 200
    response = await client.post(f"/v1/routes/{route.id}/stops/P1/outcome", json={"outcome": "completed"})
    assert response.status_code == 200
    response = await client.post(
        f"/v1/routes/{route.id}/stops/P2/outcome", json={"outcome": "failed", "attempted": True}
    )
    assert response.status_code == 200

    response = await client.post(f"/v1/routes/{route.id}/complete", json={"actor_id": 1})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.get(f"/v1/routes/{route.id}/earnings")
    [earnings] = response.json()
    assert earnings["driver_id"] == 21
    assert earnings["delivery_bonuses"] == "5.00"
    assert earnings["failed_attempt_bonuses"] == "4.00"
    assert earnings["total_earnings"] == "9.00"
    assert earnings["status"] == "pending"

    earnings_id = earnings["id"]
    response = await client.post(f"/v1/earnings/{earnings_id}/pay", json={})
    assert response.status_code == 409

    response = await client.post(f"/v1/earnings/{earnings_id}/approve", json={"actor_id": 1})
    assert response.json()["status"] == "approved"

    response = await client.post(
        f"/v1/earnings/{earnings_id}/pay", json={"actor_id": 1, "payment_reference": "PIX-123"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "paid"
    assert response.json()["payment_method"] == "pix"

    response = await client.post(f"/v1/earnings/{earnings_id}/cancel", json={"reason": "late"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_generate_and_batch_recalculate(client, route_factory, stop_factory, pricing_rule):
    done = await route_factory(
        [stop_factory("P1", 0, outcome="completed", attempted=True)], status=RouteStatus.COMPLETED, code="R-1"
    )
    draft = await route_factory([stop_factory("P2", 0)], status=RouteStatus.DRAFT, driver_id=None, code="R-2")

    response = await client.post("/v1/earnings/generate")
    assert response.json() == {"created": [done.id], "errors": []}

    response = await client.post("/v1/earnings/recalculate", json={"route_ids": [done.id, draft.id]})
    body = response.json()
    assert body["recalculated"] == [done.id]
    assert [error["route_id"] for error in body["errors"]] == [draft.id]


@pytest.mark.asyncio
async def test_recalculate_without_pricing_rules(client, route_factory, stop_factory):
    route = await route_factory([stop_factory("P1", 0)], status=RouteStatus.COMPLETED)

    response = await client.post(f"/v1/routes/{route.id}/earnings/recalculate")

    assert response.status_code == 500
    assert response.json()["error_code"] == "ERR_PRICING_001"


@pytest.mark.asyncio
async def test_pricing_rule_versions(client):
    response = await client.get("/v1/pricing/rules/active")
    assert response.status_code == 404

    rules = {
        "zones": [
            {"name": "Trindade", "kind": "flat", "match_terms": ["Trindade"], "amount": "25.00"},
            {
                "name": "Goiania",
                "kind": "distance_tiered",
                "match_terms": ["goiania"],
                "tiers": [{"max_km": 7, "amount": "6.00"}, {"max_km": 999, "amount": "11.00"}],
            },
        ],
        "default_amount": "10.00",
        "failed_attempt_factor": "0.2",
        "created_by": 1,
    }
    first = await client.put("/v1/pricing/rules", json=rules)
    second = await client.put("/v1/pricing/rules", json={**rules, "default_amount": "12.00"})
    assert first.status_code == 200
    assert (first.json()["version"], second.json()["version"]) == (1, 2)

    response = await client.get("/v1/pricing/rules/active")
    assert response.json()["version"] == 2
    assert response.json()["zones"][0]["match_terms"] == ["trindade"]

    broken = {**rules, "zones": [{**rules["zones"][1], "tiers": [{"max_km": 9, "amount": "1"}, {"max_km": 3, "amount": "2"}]}]}
    response = await client.put("/v1/pricing/rules", json=broken)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_address_correction_endpoint(client, route_factory, stop_factory):
    route = await route_factory([stop_factory("P1", 0), stop_factory("P2", 1)])

    class StaticGeocoder:
        async def resolve(self, address_text):
            return GeocodeResult(
                query=address_text,
                formatted_address="Av. Goias, 200 - Centro, Goiania - GO",
                lat=-16.67,
                lng=-49.25,
                city="Goiania",
                neighborhood="Setor Bueno",
            )

    app.dependency_overrides[get_geocoder] = lambda: StaticGeocoder()
    try:
        response = await client.post(
            f"/v1/routes/{route.id}/stops/P1/address", json={"address_text": "av goias 200"}
        )
    finally:
        app.dependency_overrides.pop(get_geocoder, None)

    assert response.status_code == 200
    body = response.json()
    assert [(change["stop_id"], change["change_type"]) for change in body["changes"]] == [("P1", "address")]
    assert body["route"]["stops"][0]["address"] == "Av. Goias, 200 - Centro, Goiania - GO"


@pytest.mark.asyncio
async def test_batch_reconciliation_and_repair(client, db_session, batch_factory, route_factory, stop_factory):
    batch = await batch_factory(["S1", "S2", "S3"], stop_count=4)
    route_a = await route_factory([stop_factory("S1", 0), stop_factory("S2", 1)], batch=batch, code="R-A")
    route_b = await route_factory([stop_factory("S2", 0), stop_factory("S3", 1)], batch=batch, code="R-B")
    batch.route_ids = [route_a.id, route_b.id]
    await db_session.commit()

    response = await client.get(f"/v1/batches/{batch.id}/reconciliation")
    report = response.json()
    assert report["consistent"] is False
    assert [(violation["kind"], violation["route_ids"]) for violation in report["violations"]] == [
        ("duplicate_assignment", sorted([route_a.id, route_b.id]))
    ]

    response = await client.post(
        f"/v1/batches/{batch.id}/repairs/resolve-duplicate",
        json={"stop_id": "S2", "keep_route_id": route_b.id, "actor_id": 1}
    )
    assert response.status_code == 200
    assert response.json()["consistent"] is True

    response = await client.get("/v1/batches/999/reconciliation")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_stop_edit_commits_when_earnings_cannot_be_priced(client, route_factory, stop_factory):
    p1 = stop_factory("P1", 0, outcome="completed", attempted=True)
    p2 = stop_factory("P2", 1)
    route = await route_factory([p1, p2], status=RouteStatus.IN_PROGRESS)

    response = await client.put(
        f"/v1/routes/{route.id}/stops", json={"stops": [stop_payload(p2), stop_payload(p1)], "expected_revision": 0}
    )

    assert response.status_code == 200
    assert response.json()["route"]["revision"] == 1
    assert (await client.get(f"/v1/routes/{route.id}/earnings")).json() == []
