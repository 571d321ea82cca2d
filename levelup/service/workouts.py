from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from levelup.logging import get_logger
from levelup.service import entitlements
from levelup.service.errors import ConflictError, NotFoundError, ValidationError
from levelup.storage.errors import ConstraintViolation
from levelup.storage.models import (
    Exercise,
    User,
    Workout,
    WorkoutPlan,
    WorkoutProgress,
    new_id,
)

logger = get_logger(__name__)

DEFAULT_REQUIRED_SETS = 3
EXERCISE_HISTORY_LIMIT = 5
OUT_OF_SYNC_MESSAGE = "Data is out of sync. Please refresh and try again."

_WORKOUT_MUTABLE_FIELDS = (
    "plan_name",
    "exercises",
    "start_time",
    "end_time",
    "total_pause_time",
    "skipped_pauses",
    "progression",
    "notes",
)


class WorkoutStore(Protocol):
    def get_plan(self, plan_id: str) -> Optional[WorkoutPlan]: ...

    def get_exercise(self, exercise_id: str) -> Optional[Exercise]: ...

    def create_workout(self, workout: Workout) -> Workout: ...

    def get_workout(self, workout_id: str) -> Optional[Workout]: ...

    def list_workouts(self, user_id: str, plan_id: Optional[str] = None) -> List[Workout]: ...

    def update_workout(self, workout_id: str, **fields: Any) -> Optional[Workout]: ...

    def delete_workout(self, workout_id: str) -> bool: ...

    def get_progress(self, user_id: str) -> Optional[WorkoutProgress]: ...

    def save_progress(
        self, progress: WorkoutProgress, *, expected_version: Optional[int] = None
    ) -> WorkoutProgress: ...

    def replace_progress(self, progress: WorkoutProgress) -> WorkoutProgress: ...

    def delete_progress(self, user_id: str) -> bool: ...


def tally_sets(exercises: Iterable[Dict[str, Any]]) -> tuple[int, int]:
    """Return ``(completed, total)`` sets across workout exercise entries.

    Each entry counts at most its ``required_sets`` (default 3) toward
    completion, so extra sets never push completion past 100%.
    """
    completed = total = 0
    for entry in exercises:
        required = entry.get("required_sets") or DEFAULT_REQUIRED_SETS
        completed += min(len(entry.get("sets") or []), required)
        total += required
    return completed, total


class WorkoutService:
    """Finished workouts plus the single resumable in-progress session."""

    def __init__(self, store: WorkoutStore) -> None:
        self.store = store

    def _viewable_plan(self, user: User, plan_id: str) -> WorkoutPlan:
        plan = self.store.get_plan(plan_id)
        if not plan:
            raise NotFoundError("Workout plan not found")
        return entitlements.require_view(user, plan)

    def _owned(self, user: User, workout_id: str) -> Workout:
        workout = self.store.get_workout(workout_id)
        # other users' workouts are indistinguishable from missing ones
        if not workout or workout.user_id != user.id:
            raise NotFoundError("Workout not found")
        return workout

    def list_for(self, user: User) -> List[Workout]:
        return self.store.list_workouts(user.id)

    def create(
        self,
        user: User,
        *,
        plan_id: Optional[str],
        plan_name: Optional[str],
        exercises: Any,
        start_time: Optional[datetime],
        end_time: Optional[datetime],
        total_pause_time: int = 0,
        skipped_pauses: int = 0,
        progression: float = 0.0,
        notes: Optional[str] = None,
    ) -> Workout:
        if not plan_name or exercises is None or start_time is None or end_time is None:
            raise ValidationError("Missing required fields")
        if not isinstance(exercises, list) or not exercises:
            raise ValidationError("Invalid exercises data")
        if end_time < start_time:
            raise ValidationError("End time cannot be before start time")
        if plan_id:
            self._viewable_plan(user, plan_id)
        workout = Workout(
            id=new_id(),
            user_id=user.id,
            plan_id=plan_id,
            plan_name=plan_name,
            start_time=start_time,
            end_time=end_time,
            exercises=exercises,
            total_pause_time=total_pause_time,
            skipped_pauses=skipped_pauses,
            progression=progression,
            notes=notes,
        )
        created = self.store.create_workout(workout)
        logger.info(
            "workout_saved",
            workout_id=created.id,
            user_id=user.id,
            plan_id=plan_id,
            exercises=len(exercises),
        )
        return created

    def last_for_plan(self, user: User, plan_id: str) -> Optional[Workout]:
        workouts = self.store.list_workouts(user.id, plan_id=plan_id)
        return workouts[0] if workouts else None

    def exercise_history(self, user: User, exercise_id: str) -> List[Dict[str, Any]]:
        """The newest entries for one exercise across the user's workouts."""
        exercise = self.store.get_exercise(exercise_id)
        if not exercise:
            raise NotFoundError("Exercise not found")
        entitlements.require_view(user, exercise)
        history: List[Dict[str, Any]] = []
        for workout in self.store.list_workouts(user.id):
            for entry in workout.exercises:
                if entry.get("exercise") != exercise_id:
                    continue
                history.append(
                    {
                        "date": workout.start_time,
                        "sets": entry.get("sets") or [],
                        "notes": entry.get("notes"),
                    }
                )
                if len(history) >= EXERCISE_HISTORY_LIMIT:
                    return history
        return history

    def get(self, user: User, workout_id: str) -> Workout:
        return self._owned(user, workout_id)

    def update(self, user: User, workout_id: str, **changes: Any) -> Workout:
        workout = self._owned(user, workout_id)
        fields = {
            key: value
            for key, value in changes.items()
            if key in _WORKOUT_MUTABLE_FIELDS and value is not None
        }
        if "exercises" in fields and (
            not isinstance(fields["exercises"], list) or not fields["exercises"]
        ):
            raise ValidationError("Invalid exercises data")
        start = fields.get("start_time", workout.start_time)
        end = fields.get("end_time", workout.end_time)
        if end < start:
            raise ValidationError("End time cannot be before start time")
        if not fields:
            return workout
        updated = self.store.update_workout(workout.id, **fields)
        if not updated:
            raise NotFoundError("Workout not found")
        return updated

    def delete(self, user: User, workout_id: str) -> None:
        workout = self._owned(user, workout_id)
        self.store.delete_workout(workout.id)
        logger.info("workout_deleted", workout_id=workout.id, user_id=user.id)

    # -- progress ----------------------------------------------------------

    def get_progress(self, user: User) -> Optional[WorkoutProgress]:
        return self.store.get_progress(user.id)

    def _build_progress(
        self,
        user: User,
        *,
        plan_id: Optional[str],
        exercises: Any,
        current_exercise_index: int = 0,
        start_time: Optional[datetime] = None,
        total_pause_time: int = 0,
        skipped_pauses: int = 0,
        last_set_values: Optional[Dict[str, Any]] = None,
        notes: Optional[List[str]] = None,
    ) -> WorkoutProgress:
        if not plan_id:
            raise ValidationError("Missing required fields")
        if not isinstance(exercises, list):
            raise ValidationError("Invalid exercises data")
        self._viewable_plan(user, plan_id)
        if exercises and not 0 <= current_exercise_index < len(exercises):
            raise ValidationError("Invalid current exercise index")
        completed, total = tally_sets(exercises)
        return WorkoutProgress(
            id=new_id(),
            user_id=user.id,
            plan_id=plan_id,
            exercises=exercises,
            current_exercise_index=current_exercise_index,
            start_time=start_time or datetime.utcnow(),
            total_pause_time=total_pause_time,
            skipped_pauses=skipped_pauses,
            last_set_values=last_set_values or {},
            completed_sets=completed,
            total_sets=total,
            notes=list(notes or []),
        )

    def save_progress(
        self, user: User, *, version: Optional[int] = None, **fields: Any
    ) -> WorkoutProgress:
        """Upsert the user's progress.

        ``version`` is the version the client last read; a mismatch means
        another device saved in between.
        """
        progress = self._build_progress(user, **fields)
        try:
            saved = self.store.save_progress(progress, expected_version=version)
        except ConstraintViolation as exc:
            logger.info("progress_version_conflict", user_id=user.id, **exc.detail)
            raise ConflictError(OUT_OF_SYNC_MESSAGE, detail=exc.detail)
        return saved

    def start_progress(self, user: User, **fields: Any) -> WorkoutProgress:
        """Discard any existing progress and start a fresh one."""
        progress = self._build_progress(user, **fields)
        saved = self.store.replace_progress(progress)
        logger.info("progress_started", user_id=user.id, plan_id=saved.plan_id)
        return saved

    def clear_progress(self, user: User) -> None:
        self.store.delete_progress(user.id)
