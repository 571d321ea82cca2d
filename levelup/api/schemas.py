from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from levelup.storage.models import EXPERIENCE_LEVELS

MAX_ARRAY_ITEMS = 1000

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_credentials",
    "unauthenticated",
    "token_invalid",
    "token_expired",
    "token_invalidated",
    "forbidden",
    "verification_required",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Every response body: ``data`` on success, ``error`` on failure."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """camelCase on the wire; snake_case accepted on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 30:
        raise ValueError("username must be at most 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, numbers, dots, underscores and hyphens")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_experience_level(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in EXPERIENCE_LEVELS:
        raise ValueError(f"experience level must be one of {', '.join(EXPERIENCE_LEVELS)}")
    return value


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# -- auth ------------------------------------------------------------------


class RegisterRequest(CamelModel):
    username: str
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(CamelModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=128)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        return value.strip()


class RefreshTokenRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ResendVerificationRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateUserRequest(CamelModel):
    username: Optional[str] = None
    email: Optional[str] = None
    experience_level: Optional[str] = None
    has_seen_guide: Optional[bool] = None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("experience_level")
    @classmethod
    def _check_level(cls, value: Optional[str]) -> Optional[str]:
        return _validate_experience_level(value)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ExperienceLevelRequest(CamelModel):
    experience_level: str

    @field_validator("experience_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        return _validate_experience_level(value)


class UserResponse(CamelModel):
    id: str
    username: str
    email: str
    is_admin: bool = False
    experience_level: str = "beginner"
    has_seen_guide: bool = False
    deleted_workout_plans: List[str] = Field(default_factory=list)


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str
    expires_in: int


class LoginResponse(TokenPairResponse):
    user: UserResponse


class RegisterResponse(CamelModel):
    message: str
    requires_verification: bool = True


class MessageResponse(CamelModel):
    message: str
    email: Optional[str] = None


class ExperienceLevelResponse(CamelModel):
    experience_level: str


# -- exercises -------------------------------------------------------------


class RecommendationModel(CamelModel):
    weight: Optional[float] = Field(default=None, ge=0)
    reps: Optional[int] = Field(default=None, ge=0)
    sets: Optional[int] = Field(default=None, ge=0)
    duration: Optional[float] = Field(default=None, ge=0)
    distance: Optional[float] = Field(default=None, ge=0)
    intensity: Optional[float] = Field(default=None, ge=0)
    incline: Optional[float] = Field(default=None, ge=0)


def _coerce_target(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


class ExerciseCreateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    target: Optional[List[str]] = None
    category: Optional[str] = None
    image_url: Optional[str] = Field(default=None, max_length=2048)
    recommendations: Optional[Dict[str, RecommendationModel]] = None
    recommendation: Optional[RecommendationModel] = None
    is_default: bool = False

    @field_validator("target", mode="before")
    @classmethod
    def _single_target(cls, value: Any) -> Any:
        return _coerce_target(value)


class ExerciseUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    target: Optional[List[str]] = None
    category: Optional[str] = None
    image_url: Optional[str] = Field(default=None, max_length=2048)
    recommendations: Optional[Dict[str, RecommendationModel]] = None
    recommendation: Optional[RecommendationModel] = None

    @field_validator("target", mode="before")
    @classmethod
    def _single_target(cls, value: Any) -> Any:
        return _coerce_target(value)


class ProvenanceResponse(CamelModel):
    user: Optional[str] = None
    username: Optional[str] = None
    import_date: Optional[datetime] = None
    share_id: Optional[str] = None


class ExerciseResponse(CamelModel):
    id: str
    name: str
    description: str
    target: List[str]
    category: str
    exercise_type: str
    measurement_type: str
    image_url: str
    is_default: bool
    user_id: Optional[str] = None
    experience_level: str
    recommendation: Dict[str, Any] = Field(default_factory=dict)
    base_recommendations: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    customized: bool = False
    imported_from: Optional[ProvenanceResponse] = None
    created_at: datetime
    updated_at: datetime


class UserRecommendationResponse(CamelModel):
    user_recommendation: Dict[str, Any]


class DeletedExerciseResponse(CamelModel):
    id: str
    exercise_id: str
    exercise_data: Dict[str, Any]
    deleted_by: str
    is_default: bool
    deleted_at: datetime


# -- workout plans ---------------------------------------------------------


class PlanCreateRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=100)
    exercises: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)
    type: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    is_default: bool = False

    @field_validator("scheduled_date")
    @classmethod
    def _naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class DefaultPlanRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=100)
    exercises: Any = None
    type: Optional[str] = None


class PlanUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=100)
    exercises: Optional[List[str]] = Field(default=None, max_length=MAX_ARRAY_ITEMS)
    type: Optional[str] = None
    scheduled_date: Optional[datetime] = None

    @field_validator("scheduled_date")
    @classmethod
    def _naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class PlanExerciseRequest(CamelModel):
    exercise_id: Optional[str] = None


class PlanResponse(CamelModel):
    id: str
    name: str
    type: str
    is_default: bool
    user_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    is_shared: bool = False
    share_id: Optional[str] = None
    imported_from: Optional[ProvenanceResponse] = None
    exercises: List[ExerciseResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PlanListResponse(CamelModel):
    plans: List[PlanResponse]


class ShareResponse(CamelModel):
    share_link: str
    plan: PlanResponse


# -- workouts --------------------------------------------------------------


class WorkoutSet(CamelModel):
    weight: Optional[float] = Field(default=None, ge=0)
    reps: Optional[int] = Field(default=None, ge=0)
    duration: Optional[float] = Field(default=None, ge=0)
    distance: Optional[float] = Field(default=None, ge=0)
    intensity: Optional[float] = Field(default=None, ge=0)
    incline: Optional[float] = None
    completed_at: Optional[datetime] = None
    skipped_rest: bool = False

    @field_validator("completed_at")
    @classmethod
    def _naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class WorkoutExerciseEntry(CamelModel):
    exercise: str
    sets: List[WorkoutSet] = Field(default_factory=list)
    required_sets: Optional[int] = Field(default=None, ge=1)
    completed: bool = False
    completed_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("completed_at")
    @classmethod
    def _naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class WorkoutCreateRequest(CamelModel):
    plan_id: Optional[str] = None
    plan_name: Optional[str] = Field(default=None, max_length=100)
    exercises: Optional[List[WorkoutExerciseEntry]] = Field(default=None, max_length=MAX_ARRAY_ITEMS)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_pause_time: int = Field(default=0, ge=0)
    skipped_pauses: int = Field(default=0, ge=0)
    progression: float = 0.0
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("start_time", "end_time")
    @classmethod
    def _naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class WorkoutUpdateRequest(CamelModel):
    plan_name: Optional[str] = Field(default=None, max_length=100)
    exercises: Optional[List[WorkoutExerciseEntry]] = Field(default=None, max_length=MAX_ARRAY_ITEMS)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_pause_time: Optional[int] = Field(default=None, ge=0)
    skipped_pauses: Optional[int] = Field(default=None, ge=0)
    progression: Optional[float] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("start_time", "end_time")
    @classmethod
    def _naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class WorkoutResponse(CamelModel):
    id: str
    user_id: str
    plan_id: Optional[str] = None
    plan_name: str
    start_time: datetime
    end_time: datetime
    exercises: List[WorkoutExerciseEntry]
    total_pause_time: int = 0
    skipped_pauses: int = 0
    progression: float = 0.0
    notes: Optional[str] = None
    plan_deleted: bool = False
    created_at: datetime


class ExerciseHistoryEntry(CamelModel):
    date: datetime
    sets: List[WorkoutSet]
    notes: Optional[str] = None


class ProgressRequest(CamelModel):
    plan_id: Optional[str] = None
    exercises: List[WorkoutExerciseEntry] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)
    current_exercise_index: int = Field(default=0, ge=0)
    start_time: Optional[datetime] = None
    total_pause_time: int = Field(default=0, ge=0)
    skipped_pauses: int = Field(default=0, ge=0)
    last_set_values: Dict[str, Any] = Field(default_factory=dict)
    notes: List[str] = Field(default_factory=list)
    version: Optional[int] = Field(default=None, ge=0)

    @field_validator("start_time")
    @classmethod
    def _naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class ProgressResponse(CamelModel):
    id: str
    user_id: str
    plan_id: str
    exercises: List[WorkoutExerciseEntry]
    current_exercise_index: int
    start_time: datetime
    last_updated: datetime
    total_pause_time: int
    skipped_pauses: int
    last_set_values: Dict[str, Any]
    completed_sets: int
    total_sets: int
    notes: List[str]
    version: int


class ProgressCreatedResponse(CamelModel):
    message: str
    progress: ProgressResponse
