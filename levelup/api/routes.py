from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path
from pydantic import BaseModel

from levelup.api.schemas import (
    ChangePasswordRequest,
    DefaultPlanRequest,
    DeletedExerciseResponse,
    Envelope,
    ExerciseCreateRequest,
    ExerciseHistoryEntry,
    ExerciseResponse,
    ExerciseUpdateRequest,
    ExperienceLevelRequest,
    ExperienceLevelResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    PlanCreateRequest,
    PlanExerciseRequest,
    PlanListResponse,
    PlanResponse,
    PlanUpdateRequest,
    ProgressCreatedResponse,
    ProgressRequest,
    ProgressResponse,
    ProvenanceResponse,
    RecommendationModel,
    RefreshTokenRequest,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    ShareResponse,
    TokenPairResponse,
    UpdateUserRequest,
    UserRecommendationResponse,
    UserResponse,
    WorkoutCreateRequest,
    WorkoutResponse,
    WorkoutUpdateRequest,
)
from levelup.logging import bind_user, get_correlation_id, get_logger
from levelup.service.auth import AuthContext, user_projection
from levelup.service.entitlements import MergedExercise
from levelup.service.errors import RateLimitedError
from levelup.service.plans import PlanView
from levelup.service.runtime import check_rate_limit, get_runtime
from levelup.storage.models import DeletedExercise, User, Workout, WorkoutProgress

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _dump(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True, mode="json")
    if isinstance(data, list):
        return [_dump(item) for item in data]
    return data


def _ok(data: Any = None) -> Envelope:
    correlation_id = get_correlation_id()
    if correlation_id:
        return Envelope(status="ok", data=_dump(data), request_id=correlation_id)
    return Envelope(status="ok", data=_dump(data))


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    if not await check_rate_limit(runtime, key, limit, window_seconds):
        logger.warning("rate_limited", key=key, limit=limit, window_seconds=window_seconds)
        raise RateLimitedError("Too many requests, please try again later")


# -- dependencies ----------------------------------------------------------


async def get_auth_context(
    x_auth_token: Optional[str] = Header(None, alias="x-auth-token"),
) -> AuthContext:
    principal = await get_runtime().auth.authenticate(x_auth_token)
    bind_user(principal.user_id)
    return principal


async def get_current_user(principal: AuthContext = Depends(get_auth_context)) -> User:
    return get_runtime().auth.get_user(principal.user_id)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        logger.warning("admin_required", user_id=user.id)
        raise _http_error("forbidden", "Access denied. Admin rights required.", status_code=403)
    return user


# -- response builders -----------------------------------------------------


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(**user_projection(user))


def _provenance(data: Optional[dict]) -> Optional[ProvenanceResponse]:
    return ProvenanceResponse(**data) if data else None


def _exercise_to_response(merged: MergedExercise) -> ExerciseResponse:
    ex = merged.exercise
    return ExerciseResponse(
        id=ex.id,
        name=ex.name,
        description=ex.description,
        target=ex.target,
        category=ex.category,
        exercise_type=ex.exercise_type,
        measurement_type=ex.measurement_type,
        image_url=ex.image_url,
        is_default=ex.is_default,
        user_id=ex.user_id,
        experience_level=merged.experience_level,
        recommendation=merged.recommendation,
        base_recommendations=merged.base_recommendations,
        customized=merged.customized,
        imported_from=_provenance(ex.imported_from),
        created_at=ex.created_at,
        updated_at=ex.updated_at,
    )


def _deleted_to_response(record: DeletedExercise) -> DeletedExerciseResponse:
    return DeletedExerciseResponse(
        id=record.id,
        exercise_id=record.exercise_id,
        exercise_data=record.exercise_data,
        deleted_by=record.deleted_by,
        is_default=record.is_default,
        deleted_at=record.deleted_at,
    )


def _plan_to_response(view: PlanView) -> PlanResponse:
    plan = view.plan
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        type=plan.type,
        is_default=plan.is_default,
        user_id=plan.user_id,
        scheduled_date=plan.scheduled_date,
        is_shared=plan.is_shared,
        share_id=plan.share_id,
        imported_from=_provenance(plan.imported_from),
        exercises=[_exercise_to_response(ex) for ex in view.exercises],
        created_at=plan.created_at,
        updated_at=plan.updated_at,
    )


def _workout_to_response(workout: Workout) -> WorkoutResponse:
    return WorkoutResponse(
        id=workout.id,
        user_id=workout.user_id,
        plan_id=workout.plan_id,
        plan_name=workout.plan_name,
        start_time=workout.start_time,
        end_time=workout.end_time,
        exercises=workout.exercises,
        total_pause_time=workout.total_pause_time,
        skipped_pauses=workout.skipped_pauses,
        progression=workout.progression,
        notes=workout.notes,
        plan_deleted=workout.plan_deleted,
        created_at=workout.created_at,
    )


def _progress_to_response(progress: WorkoutProgress) -> ProgressResponse:
    return ProgressResponse(
        id=progress.id,
        user_id=progress.user_id,
        plan_id=progress.plan_id,
        exercises=progress.exercises,
        current_exercise_index=progress.current_exercise_index,
        start_time=progress.start_time,
        last_updated=progress.last_updated,
        total_pause_time=progress.total_pause_time,
        skipped_pauses=progress.skipped_pauses,
        last_set_values=progress.last_set_values,
        completed_sets=progress.completed_sets,
        total_sets=progress.total_sets,
        notes=progress.notes,
        version=progress.version,
    )


def _recommendation(body: Optional[RecommendationModel]) -> Optional[dict]:
    return body.model_dump(exclude_none=True) if body else None


def _recommendations(body: Optional[dict[str, RecommendationModel]]) -> Optional[dict]:
    if body is None:
        return None
    return {level: rec.model_dump(exclude_none=True) for level, rec in body.items()}


# -- auth ------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and email a verification link.

    Raises:
        400: username or email already registered
        403: signups disabled
        429: too many registrations for this address
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    await runtime.auth.register(body.username, body.email, body.password)
    return _ok(
        RegisterResponse(
            message="Registration successful! Please check your email to verify your account.",
            requires_verification=True,
        )
    )


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Path(..., max_length=4096)):
    user = await get_runtime().auth.verify_email(token)
    return _ok(
        MessageResponse(
            message="Email verified successfully! You can now log in.", email=user.email
        )
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.resend_rate_limit_per_hour,
        3600,
    )
    user = await runtime.auth.resend_verification(body.email)
    return _ok(MessageResponse(message="Verification email sent successfully", email=user.email))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate and start a session; any earlier sessions end.

    Raises:
        400: invalid credentials
        403: email not verified (a new verification email is sent)
        429: too many attempts for this username
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, pair = await runtime.auth.login(body.username, body.password)
    return _ok(
        LoginResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            user=_user_to_response(user),
        )
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: Optional[RefreshTokenRequest] = None):
    pair = await get_runtime().auth.refresh(body.refresh_token if body else None)
    return _ok(
        TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_auth_context),
):
    await get_runtime().auth.logout(principal, body.refresh_token if body else None)
    return _ok(MessageResponse(message="Logged out successfully"))


@router.get("/auth/user", response_model=Envelope, tags=["auth"])
async def get_me(user: User = Depends(get_current_user)):
    return _ok(_user_to_response(user))


@router.put("/auth/user", response_model=Envelope, tags=["auth"])
async def update_me(body: UpdateUserRequest, principal: AuthContext = Depends(get_auth_context)):
    user = get_runtime().auth.update_profile(
        principal.user_id,
        username=body.username,
        email=body.email,
        experience_level=body.experience_level,
        has_seen_guide=body.has_seen_guide,
    )
    return _ok(_user_to_response(user))


@router.put("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_auth_context)
):
    await get_runtime().auth.change_password(
        principal, body.current_password, body.new_password
    )
    return _ok(MessageResponse(message="Password changed successfully"))


@router.delete("/auth/user", response_model=Envelope, tags=["auth"])
async def delete_me(principal: AuthContext = Depends(get_auth_context)):
    await get_runtime().auth.delete_account(principal)
    return _ok(MessageResponse(message="User account and associated data deleted successfully"))


@router.put("/users/experience-level", response_model=Envelope, tags=["users"])
async def set_experience_level(
    body: ExperienceLevelRequest, principal: AuthContext = Depends(get_auth_context)
):
    user = get_runtime().auth.set_experience_level(principal.user_id, body.experience_level)
    return _ok(ExperienceLevelResponse(experience_level=user.experience_level))


# -- exercises -------------------------------------------------------------


@router.get("/exercises", response_model=Envelope, tags=["exercises"])
async def list_exercises(user: User = Depends(get_current_user)):
    merged = get_runtime().exercises.list_for(user)
    return _ok([_exercise_to_response(ex) for ex in merged])


@router.post("/exercises", response_model=Envelope, status_code=201, tags=["exercises"])
async def create_exercise(body: ExerciseCreateRequest, user: User = Depends(get_current_user)):
    merged = get_runtime().exercises.create(
        user,
        name=body.name,
        description=body.description,
        target=body.target,
        category=body.category,
        image_url=body.image_url,
        recommendations=_recommendations(body.recommendations),
        recommendation=_recommendation(body.recommendation),
        is_default=body.is_default,
    )
    return _ok(_exercise_to_response(merged))


@router.post("/exercises/default", response_model=Envelope, status_code=201, tags=["exercises"])
async def create_default_exercise(
    body: ExerciseCreateRequest, admin: User = Depends(require_admin)
):
    merged = get_runtime().exercises.create_default(
        admin,
        name=body.name,
        description=body.description,
        target=body.target,
        category=body.category,
        image_url=body.image_url,
        recommendations=_recommendations(body.recommendations),
        recommendation=_recommendation(body.recommendation),
    )
    return _ok(_exercise_to_response(merged))


@router.get("/exercises/deleted", response_model=Envelope, tags=["exercises"])
async def list_deleted_exercises(admin: User = Depends(require_admin)):
    records = get_runtime().exercises.list_deleted(admin)
    return _ok([_deleted_to_response(r) for r in records])


@router.post("/exercises/restore/{deleted_id}", response_model=Envelope, tags=["exercises"])
async def restore_exercise(deleted_id: str, user: User = Depends(get_current_user)):
    merged = get_runtime().exercises.restore(user, deleted_id)
    return _ok(_exercise_to_response(merged))


@router.get("/exercises/{exercise_id}", response_model=Envelope, tags=["exercises"])
async def get_exercise(exercise_id: str, user: User = Depends(get_current_user)):
    return _ok(_exercise_to_response(get_runtime().exercises.get(user, exercise_id)))


@router.put("/exercises/{exercise_id}", response_model=Envelope, tags=["exercises"])
async def update_exercise(
    exercise_id: str, body: ExerciseUpdateRequest, user: User = Depends(get_current_user)
):
    merged = get_runtime().exercises.update(
        user,
        exercise_id,
        name=body.name,
        description=body.description,
        target=body.target,
        category=body.category,
        image_url=body.image_url,
        recommendations=_recommendations(body.recommendations),
        recommendation=_recommendation(body.recommendation),
    )
    return _ok(_exercise_to_response(merged))


@router.delete("/exercises/{exercise_id}", response_model=Envelope, tags=["exercises"])
async def delete_exercise(exercise_id: str, user: User = Depends(get_current_user)):
    message = get_runtime().exercises.delete(user, exercise_id)
    return _ok(MessageResponse(message=message))


@router.put(
    "/exercises/{exercise_id}/user-recommendation", response_model=Envelope, tags=["exercises"]
)
async def set_user_recommendation(
    exercise_id: str, body: RecommendationModel, user: User = Depends(get_current_user)
):
    recommendation = get_runtime().exercises.set_user_recommendation(
        user, exercise_id, body.model_dump(exclude_none=True)
    )
    return _ok(UserRecommendationResponse(user_recommendation=recommendation))


# -- workout plans ---------------------------------------------------------


@router.get("/workoutplans", response_model=Envelope, tags=["plans"])
async def list_plans(user: User = Depends(get_current_user)):
    views = get_runtime().plans.list_for(user)
    return _ok(PlanListResponse(plans=[_plan_to_response(v) for v in views]))


@router.post("/workoutplans", response_model=Envelope, status_code=201, tags=["plans"])
async def create_plan(body: PlanCreateRequest, user: User = Depends(get_current_user)):
    view = get_runtime().plans.create(
        user,
        name=body.name,
        exercises=body.exercises,
        plan_type=body.type,
        scheduled_date=body.scheduled_date,
        is_default=body.is_default,
    )
    return _ok(_plan_to_response(view))


@router.post("/workoutplans/default", response_model=Envelope, status_code=201, tags=["plans"])
async def create_default_plan(body: DefaultPlanRequest, admin: User = Depends(require_admin)):
    view = get_runtime().plans.create_default(
        admin, name=body.name, exercises=body.exercises, plan_type=body.type
    )
    return _ok(_plan_to_response(view))


@router.post(
    "/workoutplans/import/{share_id}", response_model=Envelope, status_code=201, tags=["plans"]
)
async def import_plan(share_id: str, user: User = Depends(get_current_user)):
    view = get_runtime().plans.import_shared(user, share_id)
    return _ok(_plan_to_response(view))


@router.get("/workoutplans/{plan_id}", response_model=Envelope, tags=["plans"])
async def get_plan(plan_id: str, user: User = Depends(get_current_user)):
    return _ok(_plan_to_response(get_runtime().plans.get(user, plan_id)))


@router.put("/workoutplans/{plan_id}", response_model=Envelope, tags=["plans"])
async def update_plan(
    plan_id: str, body: PlanUpdateRequest, user: User = Depends(get_current_user)
):
    view = get_runtime().plans.update(
        user,
        plan_id,
        name=body.name,
        exercises=body.exercises,
        plan_type=body.type,
        scheduled_date=body.scheduled_date,
    )
    return _ok(_plan_to_response(view))


@router.delete("/workoutplans/{plan_id}", response_model=Envelope, tags=["plans"])
async def delete_plan(plan_id: str, user: User = Depends(get_current_user)):
    message = get_runtime().plans.delete(user, plan_id)
    return _ok(MessageResponse(message=message))


@router.post("/workoutplans/{plan_id}/exercises", response_model=Envelope, tags=["plans"])
async def add_plan_exercise(
    plan_id: str, body: PlanExerciseRequest, user: User = Depends(get_current_user)
):
    view = get_runtime().plans.add_exercise(user, plan_id, body.exercise_id)
    return _ok(_plan_to_response(view))


@router.delete(
    "/workoutplans/{plan_id}/exercises/{exercise_id}", response_model=Envelope, tags=["plans"]
)
async def remove_plan_exercise(
    plan_id: str, exercise_id: str, user: User = Depends(get_current_user)
):
    view = get_runtime().plans.remove_exercise(user, plan_id, exercise_id)
    return _ok(_plan_to_response(view))


@router.post("/workoutplans/{plan_id}/share", response_model=Envelope, tags=["plans"])
async def share_plan(plan_id: str, user: User = Depends(get_current_user)):
    link, view = get_runtime().plans.share(user, plan_id)
    return _ok(ShareResponse(share_link=link, plan=_plan_to_response(view)))


# -- workouts --------------------------------------------------------------


def _entries(entries: Optional[list]) -> Optional[list[dict]]:
    if entries is None:
        return None
    return [entry.model_dump(mode="json") for entry in entries]


@router.get("/workouts/user", response_model=Envelope, tags=["workouts"])
async def list_workouts(user: User = Depends(get_current_user)):
    workouts = get_runtime().workouts.list_for(user)
    return _ok([_workout_to_response(w) for w in workouts])


@router.post("/workouts", response_model=Envelope, status_code=201, tags=["workouts"])
async def create_workout(body: WorkoutCreateRequest, user: User = Depends(get_current_user)):
    workout = get_runtime().workouts.create(
        user,
        plan_id=body.plan_id,
        plan_name=body.plan_name,
        exercises=_entries(body.exercises),
        start_time=body.start_time,
        end_time=body.end_time,
        total_pause_time=body.total_pause_time,
        skipped_pauses=body.skipped_pauses,
        progression=body.progression,
        notes=body.notes,
    )
    return _ok(_workout_to_response(workout))


@router.get("/workouts/last/{plan_id}", response_model=Envelope, tags=["workouts"])
async def last_workout(plan_id: str, user: User = Depends(get_current_user)):
    workout = get_runtime().workouts.last_for_plan(user, plan_id)
    if not workout:
        return _ok(MessageResponse(message="No workouts found for this plan"))
    return _ok(_workout_to_response(workout))


@router.get("/workouts/exercise-history/{exercise_id}", response_model=Envelope, tags=["workouts"])
async def exercise_history(exercise_id: str, user: User = Depends(get_current_user)):
    history = get_runtime().workouts.exercise_history(user, exercise_id)
    return _ok([ExerciseHistoryEntry.model_validate(entry) for entry in history])


@router.get("/workouts/progress", response_model=Envelope, tags=["workouts"])
async def get_progress(user: User = Depends(get_current_user)):
    progress = get_runtime().workouts.get_progress(user)
    return _ok(_progress_to_response(progress) if progress else None)


def _progress_fields(body: ProgressRequest) -> dict:
    return {
        "plan_id": body.plan_id,
        "exercises": _entries(body.exercises),
        "current_exercise_index": body.current_exercise_index,
        "start_time": body.start_time,
        "total_pause_time": body.total_pause_time,
        "skipped_pauses": body.skipped_pauses,
        "last_set_values": body.last_set_values,
        "notes": body.notes,
    }


@router.post("/workouts/progress", response_model=Envelope, tags=["workouts"])
async def save_progress(body: ProgressRequest, user: User = Depends(get_current_user)):
    progress = get_runtime().workouts.save_progress(
        user, version=body.version, **_progress_fields(body)
    )
    return _ok(_progress_to_response(progress))


@router.post("/workouts/progress/new", response_model=Envelope, status_code=201, tags=["workouts"])
async def start_progress(body: ProgressRequest, user: User = Depends(get_current_user)):
    progress = get_runtime().workouts.start_progress(user, **_progress_fields(body))
    return _ok(
        ProgressCreatedResponse(
            message="New progress created successfully",
            progress=_progress_to_response(progress),
        )
    )


@router.delete("/workouts/progress", response_model=Envelope, tags=["workouts"])
async def clear_progress(user: User = Depends(get_current_user)):
    get_runtime().workouts.clear_progress(user)
    return _ok(MessageResponse(message="Workout progress cleared successfully"))


@router.get("/workouts/{workout_id}", response_model=Envelope, tags=["workouts"])
async def get_workout(workout_id: str, user: User = Depends(get_current_user)):
    return _ok(_workout_to_response(get_runtime().workouts.get(user, workout_id)))


@router.put("/workouts/{workout_id}", response_model=Envelope, tags=["workouts"])
async def update_workout(
    workout_id: str, body: WorkoutUpdateRequest, user: User = Depends(get_current_user)
):
    workout = get_runtime().workouts.update(
        user,
        workout_id,
        plan_name=body.plan_name,
        exercises=_entries(body.exercises),
        start_time=body.start_time,
        end_time=body.end_time,
        total_pause_time=body.total_pause_time,
        skipped_pauses=body.skipped_pauses,
        progression=body.progression,
        notes=body.notes,
    )
    return _ok(_workout_to_response(workout))


@router.delete("/workouts/{workout_id}", response_model=Envelope, tags=["workouts"])
async def delete_workout(workout_id: str, user: User = Depends(get_current_user)):
    get_runtime().workouts.delete(user, workout_id)
    return _ok(MessageResponse(message="Workout deleted successfully"))
