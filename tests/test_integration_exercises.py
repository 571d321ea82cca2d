"""Integration tests for the exercise catalog: personal, default, overlays, archive."""

import pytest

from levelup.service.runtime import get_runtime

BENCH = {
    "name": "Bench Press",
    "description": "Flat barbell bench press",
    "target": ["chest", "triceps"],
    "category": "Strength",
    "recommendations": {
        "beginner": {"weight": 20, "reps": 10, "sets": 3},
        "advanced": {"weight": 80, "reps": 5, "sets": 5},
    },
}


@pytest.fixture
def user_headers(auth_headers):
    return auth_headers("lifter")


@pytest.fixture
def admin_headers(auth_headers):
    return auth_headers("coach", admin=True)


@pytest.fixture
def default_exercise(client, admin_headers):
    response = client.post("/api/exercises/default", json=BENCH, headers=admin_headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _create(client, headers, **overrides):
    body = {"name": "Curl", "description": "Dumbbell curl", "target": "biceps", **overrides}
    response = client.post("/api/exercises", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestPersonalExercises:
    def test_create_personal_exercise(self, client, user_headers):
        data = _create(client, user_headers)
        assert data["isDefault"] is False
        assert data["target"] == ["biceps"]
        assert data["category"] == "Strength"
        assert data["exerciseType"] == "strength"
        assert data["measurementType"] == "weight_reps"
        assert data["imageUrl"]

    def test_cardio_types_follow_category(self, client, user_headers):
        data = _create(client, user_headers, name="Run", category="Cardio")
        assert data["exerciseType"] == "cardio"
        assert data["measurementType"] == "duration"

    def test_flexibility_measured_by_duration(self, client, user_headers):
        data = _create(client, user_headers, name="Stretch", category="Flexibility")
        assert data["measurementType"] == "duration"

    def test_missing_fields_reported_together(self, client, user_headers):
        response = client.post("/api/exercises", json={}, headers=user_headers)
        assert response.status_code == 400
        errors = response.json()["error"]["details"]["errors"]
        assert {e["field"] for e in errors} == {"name", "description", "target"}

    def test_name_length_limit(self, client, user_headers):
        response = client.post(
            "/api/exercises",
            json={"name": "x" * 51, "description": "d", "target": ["legs"]},
            headers=user_headers,
        )
        assert response.status_code == 400
        errors = response.json()["error"]["details"]["errors"]
        assert errors[0]["message"] == "Name cannot be more than 50 characters"

    def test_non_admin_cannot_create_default(self, client, user_headers):
        data = _create(client, user_headers, isDefault=True)
        assert data["isDefault"] is False
        assert data["userId"]

    def test_recommendation_applies_to_callers_level(self, client, user_headers):
        data = _create(client, user_headers, recommendation={"weight": 12, "reps": 8})
        assert data["recommendation"] == {"weight": 12, "reps": 8}
        assert "beginner" in data["baseRecommendations"]

    def test_personal_exercise_hidden_from_others(self, client, user_headers, auth_headers):
        exercise = _create(client, user_headers)
        other = auth_headers("stranger")
        assert client.get(f"/api/exercises/{exercise['id']}", headers=other).status_code == 404
        assert (
            client.put(f"/api/exercises/{exercise['id']}", json={"name": "Mine"}, headers=other).status_code
            == 404
        )
        assert client.delete(f"/api/exercises/{exercise['id']}", headers=other).status_code == 404
        listed = client.get("/api/exercises", headers=other).json()["data"]
        assert exercise["id"] not in {e["id"] for e in listed}

    def test_owner_updates_exercise(self, client, user_headers):
        exercise = _create(client, user_headers)
        response = client.put(
            f"/api/exercises/{exercise['id']}",
            json={"name": "Hammer Curl", "category": "Cardio"},
            headers=user_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Hammer Curl"
        assert data["description"] == "Dumbbell curl"
        assert data["measurementType"] == "duration"


class TestDefaultExercises:
    def test_default_creation_requires_admin(self, client, user_headers):
        response = client.post("/api/exercises/default", json=BENCH, headers=user_headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Access denied. Admin rights required."

    def test_default_visible_to_everyone(self, client, default_exercise, user_headers):
        listed = client.get("/api/exercises", headers=user_headers).json()["data"]
        assert default_exercise["id"] in {e["id"] for e in listed}

    def test_recommendation_tracks_experience_level(self, client, default_exercise, user_headers):
        client.put(
            "/api/users/experience-level", json={"experienceLevel": "advanced"}, headers=user_headers
        )
        data = client.get(f"/api/exercises/{default_exercise['id']}", headers=user_headers).json()["data"]
        assert data["experienceLevel"] == "advanced"
        assert data["recommendation"] == {"weight": 80, "reps": 5, "sets": 5}

    def test_user_edit_personalizes_without_touching_default(
        self, client, default_exercise, user_headers, admin_headers
    ):
        response = client.put(
            f"/api/exercises/{default_exercise['id']}",
            json={"name": "My Bench", "recommendation": {"weight": 25}},
            headers=user_headers,
        )
        assert response.status_code == 200
        mine = response.json()["data"]
        assert mine["customized"] is True
        assert mine["name"] == "My Bench"
        assert mine["recommendation"]["weight"] == 25
        assert mine["recommendation"]["reps"] == 10

        base = client.get(f"/api/exercises/{default_exercise['id']}", headers=admin_headers).json()["data"]
        assert base["name"] == "Bench Press"
        assert base["customized"] is False

    def test_user_recommendation_endpoint(self, client, default_exercise, user_headers):
        response = client.put(
            f"/api/exercises/{default_exercise['id']}/user-recommendation",
            json={"weight": 30, "sets": 4},
            headers=user_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["userRecommendation"] == {"weight": 30, "sets": 4}
        data = client.get(f"/api/exercises/{default_exercise['id']}", headers=user_headers).json()["data"]
        assert data["recommendation"] == {"weight": 30, "reps": 10, "sets": 4}

    def test_negative_recommendation_rejected(self, client, default_exercise, user_headers):
        response = client.put(
            f"/api/exercises/{default_exercise['id']}/user-recommendation",
            json={"weight": -5},
            headers=user_headers,
        )
        assert response.status_code == 400

    def test_admin_edits_default_for_everyone(
        self, client, default_exercise, user_headers, admin_headers
    ):
        client.put(
            f"/api/exercises/{default_exercise['id']}",
            json={"description": "Updated cue"},
            headers=admin_headers,
        )
        data = client.get(f"/api/exercises/{default_exercise['id']}", headers=user_headers).json()["data"]
        assert data["description"] == "Updated cue"


class TestDeleteAndRestore:
    def test_user_delete_of_default_hides_it(
        self, client, default_exercise, user_headers, admin_headers
    ):
        response = client.delete(f"/api/exercises/{default_exercise['id']}", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Exercise removed from your view"

        assert client.get(f"/api/exercises/{default_exercise['id']}", headers=user_headers).status_code == 404
        assert client.get(f"/api/exercises/{default_exercise['id']}", headers=admin_headers).status_code == 200

    def test_restore_unhides_default(self, client, default_exercise, user_headers):
        client.delete(f"/api/exercises/{default_exercise['id']}", headers=user_headers)
        record = get_runtime().store.list_deleted_exercises()[0]
        response = client.post(f"/api/exercises/restore/{record.id}", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["data"]["id"] == default_exercise["id"]
        listed = client.get("/api/exercises", headers=user_headers).json()["data"]
        assert default_exercise["id"] in {e["id"] for e in listed}
        assert get_runtime().store.list_deleted_exercises() == []

    def test_owner_delete_then_restore_recreates(self, client, user_headers):
        exercise = _create(client, user_headers)
        response = client.delete(f"/api/exercises/{exercise['id']}", headers=user_headers)
        assert response.json()["data"]["message"] == "Exercise deleted successfully"
        assert client.get(f"/api/exercises/{exercise['id']}", headers=user_headers).status_code == 404

        record = get_runtime().store.list_deleted_exercises()[0]
        assert record.exercise_data["name"] == "Curl"
        restored = client.post(f"/api/exercises/restore/{record.id}", headers=user_headers)
        assert restored.status_code == 200
        assert restored.json()["data"]["id"] == exercise["id"]
        assert client.get(f"/api/exercises/{exercise['id']}", headers=user_headers).status_code == 200

    def test_restore_by_someone_else_forbidden(self, client, user_headers, auth_headers):
        exercise = _create(client, user_headers)
        client.delete(f"/api/exercises/{exercise['id']}", headers=user_headers)
        record = get_runtime().store.list_deleted_exercises()[0]
        other = auth_headers("stranger")
        response = client.post(f"/api/exercises/restore/{record.id}", headers=other)
        assert response.status_code == 403

    def test_restore_unknown_record(self, client, user_headers):
        response = client.post("/api/exercises/restore/nope", headers=user_headers)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Deleted exercise not found"

    def test_deleted_list_is_admin_only(self, client, user_headers, admin_headers):
        exercise = _create(client, user_headers)
        client.delete(f"/api/exercises/{exercise['id']}", headers=user_headers)
        assert client.get("/api/exercises/deleted", headers=user_headers).status_code == 403
        response = client.get("/api/exercises/deleted", headers=admin_headers)
        assert response.status_code == 200
        records = response.json()["data"]
        assert records[0]["exerciseId"] == exercise["id"]
        assert records[0]["exerciseData"]["name"] == "Curl"
