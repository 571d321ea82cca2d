"""Integration tests for workout plans, sharing and importing."""

import pytest

from levelup.service.runtime import get_runtime


@pytest.fixture
def user_headers(auth_headers):
    return auth_headers("lifter")


@pytest.fixture
def admin_headers(auth_headers):
    return auth_headers("coach", admin=True)


def _exercise(client, headers, name="Squat"):
    response = client.post(
        "/api/exercises",
        json={
            "name": name,
            "description": f"{name} description",
            "target": ["legs"],
            "recommendations": {"beginner": {"weight": 40, "reps": 8, "sets": 3}},
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _plan(client, headers, name="Leg Day", exercises=(), **extra):
    response = client.post(
        "/api/workoutplans",
        json={"name": name, "exercises": list(exercises), **extra},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestPlanCrud:
    def test_create_plan_populates_exercises(self, client, user_headers):
        squat = _exercise(client, user_headers)
        plan = _plan(client, user_headers, exercises=[squat["id"], squat["id"]], type="strength")
        assert plan["type"] == "strength"
        assert [e["id"] for e in plan["exercises"]] == [squat["id"]]
        assert plan["exercises"][0]["name"] == "Squat"

    def test_plan_name_required(self, client, user_headers):
        response = client.post("/api/workoutplans", json={"name": "  "}, headers=user_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Workout plan name is required"

    def test_unknown_plan_type(self, client, user_headers):
        response = client.post(
            "/api/workoutplans", json={"name": "Odd", "type": "yoga"}, headers=user_headers
        )
        assert response.status_code == 400

    def test_duplicate_name_conflicts(self, client, user_headers):
        _plan(client, user_headers)
        response = client.post("/api/workoutplans", json={"name": "Leg Day"}, headers=user_headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_same_name_allowed_for_different_users(self, client, user_headers, auth_headers):
        _plan(client, user_headers)
        other = auth_headers("stranger")
        _plan(client, other)

    def test_cannot_reference_someone_elses_exercise(self, client, user_headers, auth_headers):
        squat = _exercise(client, user_headers)
        other = auth_headers("stranger")
        response = client.post(
            "/api/workoutplans", json={"name": "Sneaky", "exercises": [squat["id"]]}, headers=other
        )
        assert response.status_code == 404

    def test_list_and_get(self, client, user_headers):
        plan = _plan(client, user_headers)
        listed = client.get("/api/workoutplans", headers=user_headers).json()["data"]["plans"]
        assert [p["id"] for p in listed] == [plan["id"]]
        fetched = client.get(f"/api/workoutplans/{plan['id']}", headers=user_headers)
        assert fetched.status_code == 200

    def test_private_plan_invisible_to_others(self, client, user_headers, auth_headers):
        plan = _plan(client, user_headers)
        other = auth_headers("stranger")
        response = client.get(f"/api/workoutplans/{plan['id']}", headers=other)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Workout plan not found"

    def test_update_plan(self, client, user_headers):
        plan = _plan(client, user_headers)
        response = client.put(
            f"/api/workoutplans/{plan['id']}",
            json={"name": "Heavy Legs", "scheduledDate": "2026-03-01T08:00:00+02:00"},
            headers=user_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Heavy Legs"
        assert data["scheduledDate"].startswith("2026-03-01T06:00:00")

    def test_add_and_remove_exercise(self, client, user_headers):
        squat = _exercise(client, user_headers)
        plan = _plan(client, user_headers)
        added = client.post(
            f"/api/workoutplans/{plan['id']}/exercises",
            json={"exerciseId": squat["id"]},
            headers=user_headers,
        )
        assert added.status_code == 200
        assert [e["id"] for e in added.json()["data"]["exercises"]] == [squat["id"]]

        again = client.post(
            f"/api/workoutplans/{plan['id']}/exercises",
            json={"exerciseId": squat["id"]},
            headers=user_headers,
        )
        assert again.status_code == 400

        removed = client.delete(
            f"/api/workoutplans/{plan['id']}/exercises/{squat['id']}", headers=user_headers
        )
        assert removed.status_code == 200
        assert removed.json()["data"]["exercises"] == []

        missing = client.delete(
            f"/api/workoutplans/{plan['id']}/exercises/{squat['id']}", headers=user_headers
        )
        assert missing.status_code == 404
        assert missing.json()["error"]["message"] == "Exercise not found in the workout plan"

    def test_add_exercise_requires_id(self, client, user_headers):
        plan = _plan(client, user_headers)
        response = client.post(
            f"/api/workoutplans/{plan['id']}/exercises", json={}, headers=user_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Exercise ID is required"

    def test_deleting_exercise_drops_it_from_plans(self, client, user_headers):
        squat = _exercise(client, user_headers)
        plan = _plan(client, user_headers, exercises=[squat["id"]])
        client.delete(f"/api/exercises/{squat['id']}", headers=user_headers)
        data = client.get(f"/api/workoutplans/{plan['id']}", headers=user_headers).json()["data"]
        assert data["exercises"] == []

    def test_delete_plan(self, client, user_headers):
        plan = _plan(client, user_headers)
        response = client.delete(f"/api/workoutplans/{plan['id']}", headers=user_headers)
        assert response.json()["data"]["message"] == "Workout plan deleted successfully"
        assert client.get(f"/api/workoutplans/{plan['id']}", headers=user_headers).status_code == 404


class TestDefaultPlans:
    def test_default_plan_requires_admin(self, client, user_headers):
        response = client.post(
            "/api/workoutplans/default", json={"name": "Starter", "exercises": []}, headers=user_headers
        )
        assert response.status_code == 403

    def test_default_plan_payload_checked(self, client, admin_headers):
        response = client.post(
            "/api/workoutplans/default", json={"name": "Starter", "exercises": "squat"}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid workout plan data"

    def test_user_hides_default_plan(self, client, admin_headers, user_headers):
        response = client.post(
            "/api/workoutplans/default", json={"name": "Starter", "exercises": []}, headers=admin_headers
        )
        plan = response.json()["data"]
        assert plan["isDefault"] is True

        edit = client.put(
            f"/api/workoutplans/{plan['id']}", json={"name": "Mine"}, headers=user_headers
        )
        assert edit.status_code == 403

        deleted = client.delete(f"/api/workoutplans/{plan['id']}", headers=user_headers)
        assert deleted.json()["data"]["message"] == "Workout plan removed from your view"
        listed = client.get("/api/workoutplans", headers=user_headers).json()["data"]["plans"]
        assert plan["id"] not in {p["id"] for p in listed}
        me = client.get("/api/auth/user", headers=user_headers).json()["data"]
        assert plan["id"] in me["deletedWorkoutPlans"]

        still = client.get(f"/api/workoutplans/{plan['id']}", headers=admin_headers)
        assert still.status_code == 200

    def test_user_plan_name_cannot_shadow_default(self, client, admin_headers, user_headers):
        client.post(
            "/api/workoutplans/default", json={"name": "Starter", "exercises": []}, headers=admin_headers
        )
        response = client.post("/api/workoutplans", json={"name": "Starter"}, headers=user_headers)
        assert response.status_code == 409

    def test_non_admin_cannot_share_default(self, client, admin_headers, user_headers):
        plan = client.post(
            "/api/workoutplans/default", json={"name": "Starter", "exercises": []}, headers=admin_headers
        ).json()["data"]
        response = client.post(f"/api/workoutplans/{plan['id']}/share", headers=user_headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "You do not have permission to share this plan"


class TestShareAndImport:
    def test_share_link_is_stable(self, client, user_headers):
        plan = _plan(client, user_headers)
        first = client.post(f"/api/workoutplans/{plan['id']}/share", headers=user_headers).json()["data"]
        second = client.post(f"/api/workoutplans/{plan['id']}/share", headers=user_headers).json()["data"]
        share_id = first["plan"]["shareId"]
        assert first["plan"]["isShared"] is True
        assert first["shareLink"].endswith(f"/import-plan/{share_id}")
        assert first["shareLink"].startswith(get_runtime().settings.frontend_url)
        assert second["shareLink"] == first["shareLink"]

    def test_cannot_share_foreign_plan(self, client, user_headers, auth_headers):
        plan = _plan(client, user_headers)
        other = auth_headers("stranger")
        response = client.post(f"/api/workoutplans/{plan['id']}/share", headers=other)
        assert response.status_code == 404

    def test_import_deep_copies_plan_and_exercises(self, client, user_headers, auth_headers):
        squat = _exercise(client, user_headers)
        plan = _plan(client, user_headers, exercises=[squat["id"]])
        share = client.post(f"/api/workoutplans/{plan['id']}/share", headers=user_headers).json()["data"]
        share_id = share["plan"]["shareId"]

        other = auth_headers("friend")
        response = client.post(f"/api/workoutplans/import/{share_id}", headers=other)
        assert response.status_code == 201
        imported = response.json()["data"]
        assert imported["id"] != plan["id"]
        assert imported["name"] == "Leg Day"
        assert imported["isShared"] is False
        assert imported["importedFrom"]["username"] == "lifter"
        assert imported["importedFrom"]["shareId"] == share_id

        copy = imported["exercises"][0]
        assert copy["id"] != squat["id"]
        assert copy["name"] == "Squat"
        assert copy["importedFrom"]["username"] == "lifter"
        assert copy["baseRecommendations"]["beginner"]["weight"] == 40

        # edits to the copy never reach the source
        client.put(f"/api/exercises/{copy['id']}", json={"name": "Front Squat"}, headers=other)
        original = client.get(f"/api/exercises/{squat['id']}", headers=user_headers).json()["data"]
        assert original["name"] == "Squat"

    def test_import_carries_sharers_overlay(self, client, admin_headers, user_headers, auth_headers):
        default = client.post(
            "/api/exercises/default",
            json={"name": "Deadlift", "description": "Conventional", "target": ["back"]},
            headers=admin_headers,
        ).json()["data"]
        client.put(
            f"/api/exercises/{default['id']}", json={"name": "Sumo Deadlift"}, headers=user_headers
        )
        plan = _plan(client, user_headers, name="Pull", exercises=[default["id"]])
        share_id = client.post(
            f"/api/workoutplans/{plan['id']}/share", headers=user_headers
        ).json()["data"]["plan"]["shareId"]

        other = auth_headers("friend")
        imported = client.post(f"/api/workoutplans/import/{share_id}", headers=other).json()["data"]
        copy = imported["exercises"][0]
        assert copy["name"] == "Sumo Deadlift"
        assert copy["isDefault"] is False

    def test_repeat_imports_get_distinct_names(self, client, user_headers, auth_headers):
        plan = _plan(client, user_headers)
        share_id = client.post(
            f"/api/workoutplans/{plan['id']}/share", headers=user_headers
        ).json()["data"]["plan"]["shareId"]
        other = auth_headers("friend")
        names = [
            client.post(f"/api/workoutplans/import/{share_id}", headers=other).json()["data"]["name"]
            for _ in range(3)
        ]
        assert names == ["Leg Day", "Leg Day (imported)", "Leg Day (imported 2)"]

    def test_import_unknown_share(self, client, user_headers):
        response = client.post("/api/workoutplans/import/deadbeef", headers=user_headers)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Shared workout plan not found"
