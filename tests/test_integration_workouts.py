"""Integration tests for finished workouts and the resumable in-progress session."""

import pytest


@pytest.fixture
def user_headers(auth_headers):
    return auth_headers("lifter")


@pytest.fixture
def setup(client, user_headers):
    """A squat exercise and a plan containing it."""
    squat = client.post(
        "/api/exercises",
        json={"name": "Squat", "description": "Back squat", "target": ["legs"]},
        headers=user_headers,
    ).json()["data"]
    plan = client.post(
        "/api/workoutplans",
        json={"name": "Leg Day", "exercises": [squat["id"]]},
        headers=user_headers,
    ).json()["data"]
    return {"exercise": squat, "plan": plan}


def _workout_body(setup, *, start="2026-05-01T10:00:00Z", end="2026-05-01T11:00:00Z", weight=100):
    return {
        "planId": setup["plan"]["id"],
        "planName": "Leg Day",
        "startTime": start,
        "endTime": end,
        "exercises": [
            {
                "exercise": setup["exercise"]["id"],
                "sets": [{"weight": weight, "reps": 5}, {"weight": weight, "reps": 5}],
                "notes": "felt strong",
            }
        ],
        "totalPauseTime": 120,
    }


class TestWorkouts:
    def test_save_and_list(self, client, user_headers, setup):
        response = client.post("/api/workouts", json=_workout_body(setup), headers=user_headers)
        assert response.status_code == 201, response.text
        workout = response.json()["data"]
        assert workout["planName"] == "Leg Day"
        assert workout["totalPauseTime"] == 120
        assert workout["exercises"][0]["sets"][0]["weight"] == 100
        assert workout["startTime"].startswith("2026-05-01T10:00:00")

        listed = client.get("/api/workouts/user", headers=user_headers).json()["data"]
        assert [w["id"] for w in listed] == [workout["id"]]

    def test_missing_fields(self, client, user_headers, setup):
        body = _workout_body(setup)
        del body["planName"]
        response = client.post("/api/workouts", json=body, headers=user_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing required fields"

    def test_empty_exercises(self, client, user_headers, setup):
        body = {**_workout_body(setup), "exercises": []}
        response = client.post("/api/workouts", json=body, headers=user_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid exercises data"

    def test_end_before_start(self, client, user_headers, setup):
        body = _workout_body(setup, start="2026-05-01T12:00:00Z", end="2026-05-01T11:00:00Z")
        response = client.post("/api/workouts", json=body, headers=user_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "End time cannot be before start time"

    def test_last_workout_for_plan(self, client, user_headers, setup):
        plan_id = setup["plan"]["id"]
        empty = client.get(f"/api/workouts/last/{plan_id}", headers=user_headers).json()["data"]
        assert empty["message"] == "No workouts found for this plan"

        client.post("/api/workouts", json=_workout_body(setup, weight=90), headers=user_headers)
        client.post(
            "/api/workouts",
            json=_workout_body(
                setup, start="2026-05-03T10:00:00Z", end="2026-05-03T11:00:00Z", weight=110
            ),
            headers=user_headers,
        )
        last = client.get(f"/api/workouts/last/{plan_id}", headers=user_headers).json()["data"]
        assert last["exercises"][0]["sets"][0]["weight"] == 110

    def test_exercise_history_newest_first_and_capped(self, client, user_headers, setup):
        for day in range(1, 8):
            client.post(
                "/api/workouts",
                json=_workout_body(
                    setup,
                    start=f"2026-05-0{day}T10:00:00Z",
                    end=f"2026-05-0{day}T11:00:00Z",
                    weight=80 + day,
                ),
                headers=user_headers,
            )
        response = client.get(
            f"/api/workouts/exercise-history/{setup['exercise']['id']}", headers=user_headers
        )
        assert response.status_code == 200
        history = response.json()["data"]
        assert len(history) == 5
        assert history[0]["sets"][0]["weight"] == 87
        assert history[0]["notes"] == "felt strong"

    def test_history_for_unknown_exercise(self, client, user_headers):
        response = client.get("/api/workouts/exercise-history/nope", headers=user_headers)
        assert response.status_code == 404

    def test_workouts_are_private(self, client, user_headers, setup, auth_headers):
        workout = client.post("/api/workouts", json=_workout_body(setup), headers=user_headers).json()["data"]
        other = auth_headers("stranger")
        assert client.get(f"/api/workouts/{workout['id']}", headers=other).status_code == 404
        assert client.delete(f"/api/workouts/{workout['id']}", headers=other).status_code == 404
        assert client.get("/api/workouts/user", headers=other).json()["data"] == []

    def test_update_and_delete(self, client, user_headers, setup):
        workout = client.post("/api/workouts", json=_workout_body(setup), headers=user_headers).json()["data"]
        updated = client.put(
            f"/api/workouts/{workout['id']}", json={"notes": "deload"}, headers=user_headers
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["notes"] == "deload"

        bad = client.put(
            f"/api/workouts/{workout['id']}",
            json={"endTime": "2026-05-01T09:00:00Z"},
            headers=user_headers,
        )
        assert bad.status_code == 400

        deleted = client.delete(f"/api/workouts/{workout['id']}", headers=user_headers)
        assert deleted.json()["data"]["message"] == "Workout deleted successfully"
        assert client.get(f"/api/workouts/{workout['id']}", headers=user_headers).status_code == 404

    def test_deleting_plan_flags_workouts(self, client, user_headers, setup):
        workout = client.post("/api/workouts", json=_workout_body(setup), headers=user_headers).json()["data"]
        client.delete(f"/api/workoutplans/{setup['plan']['id']}", headers=user_headers)
        data = client.get(f"/api/workouts/{workout['id']}", headers=user_headers).json()["data"]
        assert data["planDeleted"] is True
        assert data["planName"] == "Leg Day"


def _progress_body(setup, *, sets=1, version=None, index=0):
    body = {
        "planId": setup["plan"]["id"],
        "exercises": [
            {
                "exercise": setup["exercise"]["id"],
                "requiredSets": 3,
                "sets": [{"weight": 100, "reps": 5} for _ in range(sets)],
            }
        ],
        "currentExerciseIndex": index,
        "lastSetValues": {"weight": 100, "reps": 5},
    }
    if version is not None:
        body["version"] = version
    return body


class TestProgress:
    def test_no_progress_yet(self, client, user_headers):
        response = client.get("/api/workouts/progress", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["data"] is None

    def test_save_progress_tallies_sets(self, client, user_headers, setup):
        response = client.post(
            "/api/workouts/progress", json=_progress_body(setup, sets=2), headers=user_headers
        )
        assert response.status_code == 200
        progress = response.json()["data"]
        assert progress["completedSets"] == 2
        assert progress["totalSets"] == 3
        assert progress["version"] == 0
        assert progress["lastSetValues"] == {"weight": 100, "reps": 5}

    def test_extra_sets_do_not_overcount(self, client, user_headers, setup):
        progress = client.post(
            "/api/workouts/progress", json=_progress_body(setup, sets=5), headers=user_headers
        ).json()["data"]
        assert progress["completedSets"] == 3

    def test_versioned_saves(self, client, user_headers, setup):
        first = client.post(
            "/api/workouts/progress", json=_progress_body(setup), headers=user_headers
        ).json()["data"]
        second = client.post(
            "/api/workouts/progress",
            json=_progress_body(setup, sets=2, version=first["version"]),
            headers=user_headers,
        )
        assert second.status_code == 200
        assert second.json()["data"]["version"] == first["version"] + 1
        assert second.json()["data"]["id"] == first["id"]

        stale = client.post(
            "/api/workouts/progress",
            json=_progress_body(setup, sets=3, version=first["version"]),
            headers=user_headers,
        )
        assert stale.status_code == 409
        error = stale.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "Data is out of sync. Please refresh and try again."

    def test_invalid_exercise_index(self, client, user_headers, setup):
        response = client.post(
            "/api/workouts/progress", json=_progress_body(setup, index=4), headers=user_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid current exercise index"

    def test_progress_needs_visible_plan(self, client, user_headers, setup, auth_headers):
        other = auth_headers("stranger")
        response = client.post("/api/workouts/progress", json=_progress_body(setup), headers=other)
        assert response.status_code == 404

    def test_start_new_progress_replaces_existing(self, client, user_headers, setup):
        client.post("/api/workouts/progress", json=_progress_body(setup), headers=user_headers)
        client.post(
            "/api/workouts/progress", json=_progress_body(setup, sets=2, version=0), headers=user_headers
        )
        response = client.post(
            "/api/workouts/progress/new", json=_progress_body(setup), headers=user_headers
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["message"] == "New progress created successfully"
        assert data["progress"]["version"] == 0
        assert data["progress"]["completedSets"] == 1

    def test_clear_progress(self, client, user_headers, setup):
        client.post("/api/workouts/progress", json=_progress_body(setup), headers=user_headers)
        response = client.delete("/api/workouts/progress", headers=user_headers)
        assert response.json()["data"]["message"] == "Workout progress cleared successfully"
        assert client.get("/api/workouts/progress", headers=user_headers).json()["data"] is None

    def test_deleting_plan_discards_progress(self, client, user_headers, setup):
        client.post("/api/workouts/progress", json=_progress_body(setup), headers=user_headers)
        client.delete(f"/api/workoutplans/{setup['plan']['id']}", headers=user_headers)
        assert client.get("/api/workouts/progress", headers=user_headers).json()["data"] is None
