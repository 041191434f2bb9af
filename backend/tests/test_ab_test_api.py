"""Tests for the A/B testing HTTP API."""

import asyncio
import json
import math

import pytest

from app.middleware.logging import ab_test_id_from_path
from app.main import auto_conclusion_sweep
from app.middleware.metrics import normalize_path

BASE = "/api/v1/ab-test"

CREATE_PAYLOAD = {
    "name": "Vehicle detail CTA",
    "hypothesis": "A financing CTA drives more test-drive bookings",
    "test_type": "cta",
    "conversion_goal": "test-drive booking",
    "arms": [
        {"arm_id": "A", "name": "Book a test drive", "content": {"cta": "Book a test drive"}},
        {"arm_id": "B", "name": "See monthly payment", "content": {"cta": "From 199/month"}},
    ],
    "traffic_split": {"A": 50, "B": 50},
    "confidence_level": 95,
    "min_sample_size": 100,
}


async def create_test(client, **overrides):
    payload = {**CREATE_PAYLOAD, **overrides}
    response = await client.post(f"{BASE}/create", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


async def create_running_test(client, **overrides):
    test = await create_test(client, **overrides)
    response = await client.post(f"{BASE}/{test['id']}/start")
    assert response.status_code == 200
    return response.json()


class TestCreateEndpoint:
    @pytest.mark.asyncio
    async def test_create(self, client):
        test = await create_test(client)

        assert test["status"] == "draft"
        assert test["control_arm"] == "A"
        assert test["confidence_level"] == pytest.approx(0.95)
        assert [v["arm_id"] for v in test["variants"]] == ["A", "B"]
        assert all(v["impressions"] == 0 for v in test["variants"])

    @pytest.mark.asyncio
    async def test_bad_split_is_400(self, client):
        response = await client.post(
            f"{BASE}/create", json={**CREATE_PAYLOAD, "traffic_split": {"A": 70, "B": 70}}
        )
        assert response.status_code == 400
        assert "sum to 100" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_unknown_control_is_400(self, client):
        response = await client.post(f"{BASE}/create", json={**CREATE_PAYLOAD, "control_arm": "Z"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_single_arm_is_422(self, client):
        response = await client.post(
            f"{BASE}/create", json={**CREATE_PAYLOAD, "arms": CREATE_PAYLOAD["arms"][:1]}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"traffic_split": {"A": math.nan, "B": math.nan}},
            {"traffic_split": {"A": math.nan, "B": 50.0}},
            {"traffic_split": {"A": math.inf, "B": 50.0}},
            {"max_duration_days": math.nan},
        ],
    )
    async def test_non_finite_numbers_rejected(self, client, overrides):
        # The stdlib encoder writes NaN/Infinity literals, which the server's JSON parser accepts
        body = json.dumps({**CREATE_PAYLOAD, **overrides})
        response = await client.post(
            f"{BASE}/create", content=body, headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 422
        assert (await client.get(f"{BASE}/")).json()["total"] == 0

    @pytest.mark.asyncio
    async def test_confidence_level_of_one_rejected(self, client):
        response = await client.post(f"{BASE}/create", json={**CREATE_PAYLOAD, "confidence_level": 1})
        assert response.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize("confidence_level", [0.95, 95])
    async def test_confidence_level_as_fraction_or_percent(self, client, confidence_level):
        test = await create_test(client, confidence_level=confidence_level)
        assert test["confidence_level"] == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_half_entity_link_is_400(self, client):
        response = await client.post(f"{BASE}/create", json={**CREATE_PAYLOAD, "entity_id": "vin-123"})
        assert response.status_code == 400


class TestLifecycleEndpoints:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client):
        test = await create_running_test(client)
        test_id = test["id"]
        assert test["status"] == "running"
        assert test["start_date"] is not None

        response = await client.post(f"{BASE}/{test_id}/pause")
        assert response.json()["status"] == "paused"

        response = await client.post(f"{BASE}/{test_id}/resume")
        assert response.json()["status"] == "running"

        response = await client.post(f"{BASE}/{test_id}/stop", json={"note": "Campaign ended"})
        assert response.status_code == 200
        stopped = response.json()
        assert stopped["status"] == "completed"
        assert stopped["conclusion_reason"] == "manual"
        assert stopped["conclusion_notes"].endswith("Campaign ended")

    @pytest.mark.asyncio
    async def test_stop_without_body(self, client):
        test = await create_test(client)
        response = await client.post(f"{BASE}/{test['id']}/stop")
        assert response.status_code == 200
        assert response.json()["winner"] is None

    @pytest.mark.asyncio
    async def test_invalid_transition_is_409(self, client):
        test = await create_running_test(client)

        response = await client.post(f"{BASE}/{test['id']}/start")

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "running"
        assert body["operation"] == "start"

    @pytest.mark.asyncio
    async def test_unknown_test_is_404(self, client):
        assert (await client.get(f"{BASE}/9999")).status_code == 404
        assert (await client.post(f"{BASE}/9999/start")).status_code == 404
        assert (await client.get(f"{BASE}/9999/results")).status_code == 404


class TestTrafficEndpoints:
    @pytest.mark.asyncio
    async def test_variant_is_sticky(self, client):
        test = await create_running_test(client)

        first = await client.get(f"{BASE}/{test['id']}/variant", params={"visitor_id": "visitor_42"})
        second = await client.get(f"{BASE}/{test['id']}/variant", params={"visitor_id": "visitor_42"})

        assert first.status_code == 200
        assert first.json()["arm_id"] == second.json()["arm_id"]
        assert first.json()["content"]["cta"]

    @pytest.mark.asyncio
    async def test_variant_for_draft_is_null(self, client):
        test = await create_test(client)
        response = await client.get(f"{BASE}/{test['id']}/variant", params={"visitor_id": "v1"})
        assert response.status_code == 200
        assert response.json() is None

    @pytest.mark.asyncio
    async def test_impression_and_conversion(self, client):
        test = await create_running_test(client)
        test_id = test["id"]

        response = await client.post(f"{BASE}/{test_id}/impression", json={"arm_id": "B", "visitor_id": "v1"})
        assert response.json() == {"test_id": test_id, "arm_id": "B", "event_type": "impression", "recorded": True}

        response = await client.post(
            f"{BASE}/{test_id}/conversion", json={"arm_id": "B", "visitor_id": "v1", "value": 350.0}
        )
        assert response.json()["recorded"] is True

        variants = (await client.get(f"{BASE}/{test_id}")).json()["variants"]
        arm_b = next(v for v in variants if v["arm_id"] == "B")
        assert (arm_b["impressions"], arm_b["conversions"]) == (1, 1)
        assert arm_b["conversion_rate"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_stray_events_are_ignored(self, client):
        test = await create_test(client)

        response = await client.post(f"{BASE}/{test['id']}/impression", json={"arm_id": "A"})
        assert response.status_code == 200
        assert response.json()["recorded"] is False

        response = await client.post(f"{BASE}/9999/conversion", json={"arm_id": "A"})
        assert response.status_code == 200
        assert response.json()["recorded"] is False


class TestReportingEndpoints:
    @pytest.mark.asyncio
    async def test_results_without_data(self, client):
        test = await create_running_test(client)

        response = await client.get(f"{BASE}/{test['id']}/results")

        assert response.status_code == 200
        results = response.json()
        assert results["is_significant"] is False
        assert results["p_value"] == 1.0
        assert results["winner_arm"] is None
        assert results["recommended_action"] == "Continue test - insufficient data"
        assert [arm["arm_id"] for arm in results["per_arm"]] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_performance(self, client):
        test = await create_running_test(client, max_duration_days=14)

        response = await client.get(f"{BASE}/{test['id']}/performance")

        assert response.status_code == 200
        performance = response.json()
        assert performance["runtime_days"] == 0
        assert performance["total_impressions"] == 0
        assert performance["expected_end_date"] is not None

    @pytest.mark.asyncio
    async def test_list_and_active(self, client):
        draft = await create_test(client, name="Draft test")
        running = await create_running_test(client, name="Running test")

        listing = (await client.get(f"{BASE}/")).json()
        assert listing["total"] == 2
        assert {t["id"] for t in listing["tests"]} == {draft["id"], running["id"]}

        filtered = (await client.get(f"{BASE}/", params={"status": "draft"})).json()
        assert [t["id"] for t in filtered["tests"]] == [draft["id"]]

        active = (await client.get(f"{BASE}/active")).json()
        assert [t["id"] for t in active["tests"]] == [running["id"]]

    @pytest.mark.asyncio
    async def test_sweep(self, client):
        await create_running_test(client)

        response = await client.post(f"{BASE}/sweep")

        assert response.status_code == 200
        assert response.json() == {"checked": 1, "concluded": {}}

    @pytest.mark.asyncio
    async def test_list_by_entity(self, client):
        first = await create_test(client, name="Price badge", entity_type="vehicle", entity_id="vin-123")
        second = await create_test(client, name="Gallery order", entity_type="vehicle", entity_id="vin-123")
        await create_test(client, name="Other car", entity_type="vehicle", entity_id="vin-999")
        await create_test(client, name="Unlinked")

        assert first["entity_type"] == "vehicle"
        assert first["entity_id"] == "vin-123"

        history = (
            await client.get(f"{BASE}/", params={"entity_type": "vehicle", "entity_id": "vin-123"})
        ).json()
        assert history["total"] == 2
        assert {t["id"] for t in history["tests"]} == {first["id"], second["id"]}

        vehicles = (await client.get(f"{BASE}/", params={"entity_type": "vehicle"})).json()
        assert vehicles["total"] == 3


class TestAutoConclusionSweepTask:
    @pytest.mark.asyncio
    async def test_cancel_stops_the_loop(self):
        task = asyncio.create_task(auto_conclusion_sweep(3600))
        await asyncio.sleep(0)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()


class TestServiceEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_detailed_health_counts_running_tests(self, client):
        await create_running_test(client)
        body = (await client.get("/health/detailed")).json()
        assert body["checks"]["database"] == "healthy"
        assert body["running_tests"] == 1

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await client.get("/health")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "ab_test_events_total" in response.text


class TestMiddlewareHelpers:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/api/v1/ab-test/42/results", 42),
            ("/api/v1/ab-test/7", 7),
            ("/api/v1/ab-test/active", None),
            ("/health", None),
        ],
    )
    def test_ab_test_id_from_path(self, path, expected):
        assert ab_test_id_from_path(path) == expected

    def test_normalize_path(self):
        assert normalize_path("/api/v1/ab-test/42/results") == "/api/v1/ab-test/{id}/results"
