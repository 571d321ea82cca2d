from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

MAX_ACTIVE_REFRESH_TOKENS = 5

EXPERIENCE_LEVELS = ("beginner", "intermediate", "advanced")
EXERCISE_CATEGORIES = ("Strength", "Cardio", "Flexibility")
PLAN_TYPES = ("strength", "cardio", "flexibility", "other")
RECOMMENDATION_FIELDS = ("weight", "reps", "sets", "duration", "distance", "intensity", "incline")

DEFAULT_EXERCISE_IMAGE = (
    "https://www.inspireusafoundation.org/wp-content/uploads/2023/03/"
    "barbell-bench-press-side-view.gif"
)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ExerciseOverlay:
    """Per-user customization layered over a shared exercise."""

    exercise_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    target: List[str] = field(default_factory=list)
    image_url: Optional[str] = None
    # level -> {weight, reps, sets, ...}
    recommendations: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    is_admin: bool = False
    experience_level: str = "beginner"
    has_seen_guide: bool = False
    is_email_verified: bool = False
    # fingerprint of the outstanding verification token, never the token itself
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    email_verification_sent_at: Optional[datetime] = None
    active_refresh_tokens: List[str] = field(default_factory=list)
    deleted_exercises: List[str] = field(default_factory=list)
    deleted_workout_plans: List[str] = field(default_factory=list)
    user_exercises: Dict[str, ExerciseOverlay] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def add_refresh_token(
        self, token: str, limit: int = MAX_ACTIVE_REFRESH_TOKENS
    ) -> Optional[str]:
        """Append a refresh token, evicting the oldest entries past ``limit``.

        Returns the last evicted token, if any.
        """
        evicted = None
        while len(self.active_refresh_tokens) >= limit:
            evicted = self.active_refresh_tokens.pop(0)
        self.active_refresh_tokens.append(token)
        return evicted

    def remove_refresh_token(self, token: str) -> bool:
        try:
            self.active_refresh_tokens.remove(token)
        except ValueError:
            return False
        return True

    def has_refresh_token(self, token: str) -> bool:
        return token in self.active_refresh_tokens

    def hides_exercise(self, exercise_id: str) -> bool:
        return exercise_id in self.deleted_exercises

    def hides_plan(self, plan_id: str) -> bool:
        return plan_id in self.deleted_workout_plans


@dataclass
class Exercise:
    id: str
    name: str
    description: str
    target: List[str]
    category: str = "Strength"
    exercise_type: str = "strength"
    measurement_type: str = "weight_reps"
    image_url: str = DEFAULT_EXERCISE_IMAGE
    recommendations: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    is_default: bool = False
    user_id: Optional[str] = None
    imported_from: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DeletedExercise:
    """Archive record written whenever an exercise is deleted or hidden."""

    id: str
    exercise_id: str
    exercise_data: Dict[str, Any]
    deleted_by: str
    is_default: bool = False
    deleted_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class WorkoutPlan:
    id: str
    name: str
    exercises: List[str] = field(default_factory=list)
    type: str = "other"
    is_default: bool = False
    user_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    share_id: Optional[str] = None
    is_shared: bool = False
    imported_from: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Workout:
    """A finished workout session."""

    id: str
    user_id: str
    plan_id: Optional[str]
    plan_name: str
    start_time: datetime
    end_time: datetime
    # [{exercise, sets: [{weight, reps, ..., completedAt, skippedRest}], completedAt, notes}]
    exercises: List[Dict[str, Any]] = field(default_factory=list)
    total_pause_time: int = 0
    skipped_pauses: int = 0
    progression: float = 0.0
    notes: Optional[str] = None
    plan_deleted: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class WorkoutProgress:
    """The single resumable in-progress session a user may hold."""

    id: str
    user_id: str
    plan_id: str
    exercises: List[Dict[str, Any]] = field(default_factory=list)
    current_exercise_index: int = 0
    start_time: datetime = field(default_factory=datetime.utcnow)
    last_updated: datetime = field(default_factory=datetime.utcnow)
    total_pause_time: int = 0
    skipped_pauses: int = 0
    last_set_values: Dict[str, Any] = field(default_factory=dict)
    completed_sets: int = 0
    total_sets: int = 0
    notes: List[str] = field(default_factory=list)
    version: int = 0
