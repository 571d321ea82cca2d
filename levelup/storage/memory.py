from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from levelup.logging import get_logger
from levelup.storage.errors import ConstraintViolation
from levelup.storage.models import (
    MAX_ACTIVE_REFRESH_TOKENS,
    DeletedExercise,
    Exercise,
    ExerciseOverlay,
    User,
    Workout,
    WorkoutPlan,
    WorkoutProgress,
    new_id,
)

_USER_MUTABLE_FIELDS = frozenset(
    {
        "username",
        "email",
        "password_hash",
        "is_admin",
        "experience_level",
        "has_seen_guide",
        "is_email_verified",
    }
)


class MemoryStore:
    """In-memory backing store with a JSON snapshot on disk.

    Every state transition runs under a single re-entrant lock and is followed
    by a snapshot write, so each mutating call is one atomic persistence step.
    Readers get deep copies; callers mutate state only through store methods.
    """

    def __init__(self, fs_root: str = "/tmp/levelup") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.exercises: Dict[str, Exercise] = {}
        self.deleted_exercises: Dict[str, DeletedExercise] = {}
        self.plans: Dict[str, WorkoutPlan] = {}
        self.workouts: Dict[str, Workout] = {}
        self.progress: Dict[str, WorkoutProgress] = {}
        # token fingerprint -> expiry
        self.token_blacklist: Dict[str, datetime] = {}
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        is_admin: bool = False,
        is_email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            self._check_user_unique(username=username, email=email)
            user = User(
                id=new_id(),
                username=username,
                email=email,
                password_hash=password_hash,
                is_admin=is_admin,
                is_email_verified=is_email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def _check_user_unique(
        self, *, username: Optional[str] = None, email: Optional[str] = None, exclude: Optional[str] = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude:
                continue
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.deepcopy(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_user_unique(
                username=fields.get("username"), email=fields.get("email"), exclude=user_id
            )
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def set_email_verification(
        self,
        user_id: str,
        token_fingerprint: str,
        expires_at: datetime,
        sent_at: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verification_token = token_fingerprint
            user.email_verification_expires = expires_at
            user.email_verification_sent_at = sent_at
            self._persist_state()
            return copy.deepcopy(user)

    def mark_email_verified(self, user_id: str, token_fingerprint: str) -> Optional[User]:
        """Verify the user only if ``token_fingerprint`` is the outstanding token."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.email_verification_token != token_fingerprint:
                return None
            user.is_email_verified = True
            user.email_verification_token = None
            user.email_verification_expires = None
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for ex_id, exercise in list(self.exercises.items()):
                if exercise.user_id == user_id and not exercise.is_default:
                    self._drop_exercise(ex_id)
            for plan_id, plan in list(self.plans.items()):
                if plan.user_id == user_id and not plan.is_default:
                    self.plans.pop(plan_id, None)
            for workout_id, workout in list(self.workouts.items()):
                if workout.user_id == user_id:
                    self.workouts.pop(workout_id, None)
            self.progress.pop(user_id, None)
            for archive_id, record in list(self.deleted_exercises.items()):
                if record.deleted_by == user_id:
                    self.deleted_exercises.pop(archive_id, None)
            self._persist_state()
            return True

    # -- refresh token ledger ----------------------------------------------

    def add_refresh_token(
        self, user_id: str, token_fingerprint: str, limit: int = MAX_ACTIVE_REFRESH_TOKENS
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.add_refresh_token(token_fingerprint, limit)
            self._persist_state()
            return True

    def reset_refresh_tokens(
        self, user_id: str, token_fingerprint: str, limit: int = MAX_ACTIVE_REFRESH_TOKENS
    ) -> bool:
        """Replace the whole ledger with a single token (new login)."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.active_refresh_tokens = []
            user.add_refresh_token(token_fingerprint, limit)
            self._persist_state()
            return True

    def remove_refresh_token(self, user_id: str, token_fingerprint: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.remove_refresh_token(token_fingerprint):
                return False
            self._persist_state()
            return True

    def clear_refresh_tokens(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and user.active_refresh_tokens:
                user.active_refresh_tokens = []
                self._persist_state()

    def rotate_refresh_token(
        self,
        user_id: str,
        old_fingerprint: str,
        new_fingerprint: str,
        limit: int = MAX_ACTIVE_REFRESH_TOKENS,
    ) -> bool:
        """Swap ``old`` for ``new`` only if ``old`` is still in the ledger.

        Exactly one of several concurrent callers presenting the same old
        token gets True.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.remove_refresh_token(old_fingerprint):
                return False
            user.add_refresh_token(new_fingerprint, limit)
            self._persist_state()
            return True

    # -- token blacklist ---------------------------------------------------

    def blacklist_token(self, token_fingerprint: str, expires_at: datetime) -> None:
        with self._data_lock:
            current = self.token_blacklist.get(token_fingerprint)
            # never shorten an existing entry
            if current is None or current < expires_at:
                self.token_blacklist[token_fingerprint] = expires_at
            self._purge_blacklist(datetime.utcnow())
            self._persist_state()

    def is_token_blacklisted(self, token_fingerprint: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        with self._data_lock:
            expires_at = self.token_blacklist.get(token_fingerprint)
            if expires_at is None:
                return False
            if expires_at <= now:
                self.token_blacklist.pop(token_fingerprint, None)
                return False
            return True

    def _purge_blacklist(self, now: datetime) -> None:
        for fingerprint, expires_at in list(self.token_blacklist.items()):
            if expires_at <= now:
                self.token_blacklist.pop(fingerprint, None)

    # -- per-user hidden sets and overlays ----------------------------------

    def hide_exercise(self, user_id: str, exercise_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and exercise_id not in user.deleted_exercises:
                user.deleted_exercises.append(exercise_id)
                self._persist_state()

    def unhide_exercise(self, user_id: str, exercise_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and exercise_id in user.deleted_exercises:
                user.deleted_exercises.remove(exercise_id)
                self._persist_state()

    def hide_plan(self, user_id: str, plan_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and plan_id not in user.deleted_workout_plans:
                user.deleted_workout_plans.append(plan_id)
                self._persist_state()

    def save_exercise_overlay(self, user_id: str, overlay: ExerciseOverlay) -> Optional[ExerciseOverlay]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.user_exercises[overlay.exercise_id] = copy.deepcopy(overlay)
            self._persist_state()
            return copy.deepcopy(overlay)

    # -- exercises ---------------------------------------------------------

    def create_exercise(self, exercise: Exercise) -> Exercise:
        with self._data_lock:
            if exercise.id in self.exercises:
                raise ConstraintViolation("exercise already exists", {"exercise_id": exercise.id})
            if not exercise.is_default and exercise.user_id not in self.users:
                raise ConstraintViolation("exercise owner missing", {"user_id": exercise.user_id})
            self.exercises[exercise.id] = copy.deepcopy(exercise)
            self._persist_state()
            return copy.deepcopy(exercise)

    def get_exercise(self, exercise_id: str) -> Optional[Exercise]:
        with self._data_lock:
            exercise = self.exercises.get(exercise_id)
            return copy.deepcopy(exercise) if exercise else None

    def get_exercises(self, exercise_ids: Iterable[str]) -> List[Exercise]:
        """Return the exercises that still exist, in the order given."""
        with self._data_lock:
            return [
                copy.deepcopy(self.exercises[ex_id])
                for ex_id in exercise_ids
                if ex_id in self.exercises
            ]

    def list_exercises(self, user_id: Optional[str] = None) -> List[Exercise]:
        """Defaults plus ``user_id``'s personal exercises (all when user_id is None)."""
        with self._data_lock:
            results = [
                ex
                for ex in self.exercises.values()
                if user_id is None or ex.is_default or ex.user_id == user_id
            ]
            results.sort(key=lambda ex: ex.created_at)
            return copy.deepcopy(results)

    def update_exercise(self, exercise_id: str, **fields: Any) -> Optional[Exercise]:
        with self._data_lock:
            exercise = self.exercises.get(exercise_id)
            if not exercise:
                return None
            for key, value in fields.items():
                if not hasattr(exercise, key) or key in {"id", "created_at"}:
                    raise ValueError(f"unsupported exercise field: {key}")
                setattr(exercise, key, value)
            exercise.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(exercise)

    def delete_exercise(self, exercise_id: str) -> bool:
        with self._data_lock:
            if exercise_id not in self.exercises:
                return False
            self._drop_exercise(exercise_id)
            self._persist_state()
            return True

    def _drop_exercise(self, exercise_id: str) -> None:
        self.exercises.pop(exercise_id, None)
        for plan in self.plans.values():
            if exercise_id in plan.exercises:
                plan.exercises = [ex for ex in plan.exercises if ex != exercise_id]
        for user in self.users.values():
            if exercise_id in user.deleted_exercises:
                user.deleted_exercises.remove(exercise_id)
            user.user_exercises.pop(exercise_id, None)

    def archive_exercise(self, record: DeletedExercise) -> DeletedExercise:
        with self._data_lock:
            self.deleted_exercises[record.id] = copy.deepcopy(record)
            self._persist_state()
            return copy.deepcopy(record)

    def get_deleted_exercise(self, record_id: str) -> Optional[DeletedExercise]:
        with self._data_lock:
            record = self.deleted_exercises.get(record_id)
            return copy.deepcopy(record) if record else None

    def list_deleted_exercises(self) -> List[DeletedExercise]:
        with self._data_lock:
            records = sorted(
                self.deleted_exercises.values(), key=lambda r: r.deleted_at, reverse=True
            )
            return copy.deepcopy(records)

    def remove_deleted_exercise(self, record_id: str) -> bool:
        with self._data_lock:
            if self.deleted_exercises.pop(record_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- workout plans -----------------------------------------------------

    def _check_plan_name(self, plan: WorkoutPlan) -> None:
        for existing in self.plans.values():
            if existing.id == plan.id or existing.name != plan.name:
                continue
            if existing.is_default or (not plan.is_default and existing.user_id == plan.user_id):
                raise ConstraintViolation(
                    "A plan with this name already exists for this user or as a default plan",
                    {"field": "name"},
                )

    def create_plan(self, plan: WorkoutPlan) -> WorkoutPlan:
        with self._data_lock:
            if not plan.is_default and plan.user_id not in self.users:
                raise ConstraintViolation("plan owner missing", {"user_id": plan.user_id})
            self._check_plan_name(plan)
            self.plans[plan.id] = copy.deepcopy(plan)
            self._persist_state()
            return copy.deepcopy(plan)

    def import_plan(self, plan: WorkoutPlan, exercises: List[Exercise]) -> WorkoutPlan:
        """Create a plan together with its copied exercises in one step."""
        with self._data_lock:
            self._check_plan_name(plan)
            for exercise in exercises:
                self.exercises[exercise.id] = copy.deepcopy(exercise)
            self.plans[plan.id] = copy.deepcopy(plan)
            self._persist_state()
            return copy.deepcopy(plan)

    def get_plan(self, plan_id: str) -> Optional[WorkoutPlan]:
        with self._data_lock:
            plan = self.plans.get(plan_id)
            return copy.deepcopy(plan) if plan else None

    def get_plan_by_share_id(self, share_id: str) -> Optional[WorkoutPlan]:
        with self._data_lock:
            plan = next(
                (p for p in self.plans.values() if p.is_shared and p.share_id == share_id),
                None,
            )
            return copy.deepcopy(plan) if plan else None

    def list_plans(self, user_id: Optional[str] = None) -> List[WorkoutPlan]:
        with self._data_lock:
            results = [
                p
                for p in self.plans.values()
                if user_id is None or p.is_default or p.user_id == user_id
            ]
            results.sort(key=lambda p: p.created_at)
            return copy.deepcopy(results)

    def plan_names_for(self, user_id: str) -> set[str]:
        with self._data_lock:
            return {
                p.name for p in self.plans.values() if p.is_default or p.user_id == user_id
            }

    def update_plan(self, plan_id: str, **fields: Any) -> Optional[WorkoutPlan]:
        with self._data_lock:
            plan = self.plans.get(plan_id)
            if not plan:
                return None
            candidate = copy.deepcopy(plan)
            for key, value in fields.items():
                if not hasattr(candidate, key) or key in {"id", "created_at"}:
                    raise ValueError(f"unsupported plan field: {key}")
                setattr(candidate, key, value)
            if "name" in fields:
                self._check_plan_name(candidate)
            candidate.updated_at = datetime.utcnow()
            self.plans[plan_id] = candidate
            self._persist_state()
            return copy.deepcopy(candidate)

    def add_plan_exercise(self, plan_id: str, exercise_id: str) -> Optional[WorkoutPlan]:
        with self._data_lock:
            plan = self.plans.get(plan_id)
            if not plan:
                return None
            if exercise_id in plan.exercises:
                raise ConstraintViolation(
                    "Exercise already in the workout plan", {"exercise_id": exercise_id}
                )
            plan.exercises.append(exercise_id)
            plan.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(plan)

    def remove_plan_exercise(self, plan_id: str, exercise_id: str) -> Optional[WorkoutPlan]:
        """Returns None when the plan is missing or the exercise is not in it."""
        with self._data_lock:
            plan = self.plans.get(plan_id)
            if not plan or exercise_id not in plan.exercises:
                return None
            plan.exercises.remove(exercise_id)
            plan.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(plan)

    def delete_plan(self, plan_id: str) -> bool:
        """Delete a plan; workouts that used it keep their plan name."""
        with self._data_lock:
            if self.plans.pop(plan_id, None) is None:
                return False
            for workout in self.workouts.values():
                if workout.plan_id == plan_id:
                    workout.plan_deleted = True
            for user in self.users.values():
                if plan_id in user.deleted_workout_plans:
                    user.deleted_workout_plans.remove(plan_id)
            for user_id, progress in list(self.progress.items()):
                if progress.plan_id == plan_id:
                    self.progress.pop(user_id, None)
            self._persist_state()
            return True

    # -- workouts ----------------------------------------------------------

    def create_workout(self, workout: Workout) -> Workout:
        with self._data_lock:
            if workout.user_id not in self.users:
                raise ConstraintViolation("workout owner missing", {"user_id": workout.user_id})
            self.workouts[workout.id] = copy.deepcopy(workout)
            self._persist_state()
            return copy.deepcopy(workout)

    def get_workout(self, workout_id: str) -> Optional[Workout]:
        with self._data_lock:
            workout = self.workouts.get(workout_id)
            return copy.deepcopy(workout) if workout else None

    def list_workouts(self, user_id: str, plan_id: Optional[str] = None) -> List[Workout]:
        """Workouts for ``user_id``, newest start time first."""
        with self._data_lock:
            results = [
                w
                for w in self.workouts.values()
                if w.user_id == user_id and (plan_id is None or w.plan_id == plan_id)
            ]
            results.sort(key=lambda w: w.start_time, reverse=True)
            return copy.deepcopy(results)

    def update_workout(self, workout_id: str, **fields: Any) -> Optional[Workout]:
        with self._data_lock:
            workout = self.workouts.get(workout_id)
            if not workout:
                return None
            for key, value in fields.items():
                if not hasattr(workout, key) or key in {"id", "user_id", "created_at"}:
                    raise ValueError(f"unsupported workout field: {key}")
                setattr(workout, key, value)
            workout.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(workout)

    def delete_workout(self, workout_id: str) -> bool:
        with self._data_lock:
            if self.workouts.pop(workout_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- workout progress --------------------------------------------------

    def get_progress(self, user_id: str) -> Optional[WorkoutProgress]:
        with self._data_lock:
            progress = self.progress.get(user_id)
            return copy.deepcopy(progress) if progress else None

    def save_progress(
        self, progress: WorkoutProgress, *, expected_version: Optional[int] = None
    ) -> WorkoutProgress:
        """Upsert the user's progress, bumping its version.

        When ``expected_version`` is given it must match the stored version.
        """
        with self._data_lock:
            current = self.progress.get(progress.user_id)
            if current and expected_version is not None and current.version != expected_version:
                raise ConstraintViolation(
                    "progress version mismatch",
                    {"expected": expected_version, "actual": current.version},
                )
            saved = copy.deepcopy(progress)
            if current:
                saved.id = current.id
                saved.version = current.version + 1
            else:
                saved.version = 0
            saved.last_updated = datetime.utcnow()
            self.progress[progress.user_id] = saved
            self._persist_state()
            return copy.deepcopy(saved)

    def replace_progress(self, progress: WorkoutProgress) -> WorkoutProgress:
        with self._data_lock:
            saved = copy.deepcopy(progress)
            saved.version = 0
            saved.last_updated = datetime.utcnow()
            self.progress[progress.user_id] = saved
            self._persist_state()
            return copy.deepcopy(saved)

    def delete_progress(self, user_id: str) -> bool:
        with self._data_lock:
            if self.progress.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "exercises": [self._serialize_exercise(e) for e in self.exercises.values()],
            "deleted_exercises": [
                self._serialize_deleted_exercise(r) for r in self.deleted_exercises.values()
            ],
            "plans": [self._serialize_plan(p) for p in self.plans.values()],
            "workouts": [self._serialize_workout(w) for w in self.workouts.values()],
            "progress": [self._serialize_progress(p) for p in self.progress.values()],
            "token_blacklist": [
                {"token": fp, "expires_at": self._serialize_datetime(exp)}
                for fp, exp in self.token_blacklist.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.exercises = {
            e["id"]: self._deserialize_exercise(e) for e in data.get("exercises", [])
        }
        self.deleted_exercises = {
            r["id"]: self._deserialize_deleted_exercise(r)
            for r in data.get("deleted_exercises", [])
        }
        self.plans = {p["id"]: self._deserialize_plan(p) for p in data.get("plans", [])}
        self.workouts = {
            w["id"]: self._deserialize_workout(w) for w in data.get("workouts", [])
        }
        self.progress = {}
        for raw in data.get("progress", []):
            progress = self._deserialize_progress(raw)
            self.progress[progress.user_id] = progress
        self.token_blacklist = {
            entry["token"]: self._deserialize_datetime(entry["expires_at"])
            for entry in data.get("token_blacklist", [])
        }
        self._purge_blacklist(datetime.utcnow())
        self.logger.info(
            "memory_store_loaded", users=len(self.users), exercises=len(self.exercises)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "is_admin": user.is_admin,
            "experience_level": user.experience_level,
            "has_seen_guide": user.has_seen_guide,
            "is_email_verified": user.is_email_verified,
            "email_verification_token": user.email_verification_token,
            "email_verification_expires": self._serialize_datetime(
                user.email_verification_expires
            ),
            "email_verification_sent_at": self._serialize_datetime(
                user.email_verification_sent_at
            ),
            "active_refresh_tokens": list(user.active_refresh_tokens),
            "deleted_exercises": list(user.deleted_exercises),
            "deleted_workout_plans": list(user.deleted_workout_plans),
            "user_exercises": [
                {
                    "exercise_id": o.exercise_id,
                    "name": o.name,
                    "description": o.description,
                    "target": o.target,
                    "image_url": o.image_url,
                    "recommendations": o.recommendations,
                }
                for o in user.user_exercises.values()
            ],
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        overlays = [ExerciseOverlay(**raw) for raw in data.get("user_exercises", [])]
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            is_admin=data.get("is_admin", False),
            experience_level=data.get("experience_level", "beginner"),
            has_seen_guide=data.get("has_seen_guide", False),
            is_email_verified=data.get("is_email_verified", False),
            email_verification_token=data.get("email_verification_token"),
            email_verification_expires=self._deserialize_datetime(
                data.get("email_verification_expires")
            ),
            email_verification_sent_at=self._deserialize_datetime(
                data.get("email_verification_sent_at")
            ),
            active_refresh_tokens=list(data.get("active_refresh_tokens", [])),
            deleted_exercises=list(data.get("deleted_exercises", [])),
            deleted_workout_plans=list(data.get("deleted_workout_plans", [])),
            user_exercises={o.exercise_id: o for o in overlays},
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_exercise(self, exercise: Exercise) -> dict:
        return {
            "id": exercise.id,
            "name": exercise.name,
            "description": exercise.description,
            "target": exercise.target,
            "category": exercise.category,
            "exercise_type": exercise.exercise_type,
            "measurement_type": exercise.measurement_type,
            "image_url": exercise.image_url,
            "recommendations": exercise.recommendations,
            "is_default": exercise.is_default,
            "user_id": exercise.user_id,
            "imported_from": self._serialize_provenance(exercise.imported_from),
            "created_at": self._serialize_datetime(exercise.created_at),
            "updated_at": self._serialize_datetime(exercise.updated_at),
        }

    def _deserialize_exercise(self, data: dict) -> Exercise:
        return Exercise(
            id=data["id"],
            name=data["name"],
            description=data["description"],
            target=list(data.get("target", [])),
            category=data.get("category", "Strength"),
            exercise_type=data.get("exercise_type", "strength"),
            measurement_type=data.get("measurement_type", "weight_reps"),
            image_url=data.get("image_url") or Exercise.__dataclass_fields__["image_url"].default,
            recommendations=data.get("recommendations") or {},
            is_default=data.get("is_default", False),
            user_id=data.get("user_id"),
            imported_from=self._deserialize_provenance(data.get("imported_from")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_provenance(self, provenance: Optional[Dict[str, Any]]) -> Optional[dict]:
        if not provenance:
            return None
        serialized = dict(provenance)
        if isinstance(serialized.get("import_date"), datetime):
            serialized["import_date"] = self._serialize_datetime(serialized["import_date"])
        return serialized

    def _deserialize_provenance(self, data: Optional[dict]) -> Optional[Dict[str, Any]]:
        if not data:
            return None
        provenance = dict(data)
        if provenance.get("import_date"):
            provenance["import_date"] = self._deserialize_datetime(provenance["import_date"])
        return provenance

    def _serialize_deleted_exercise(self, record: DeletedExercise) -> dict:
        return {
            "id": record.id,
            "exercise_id": record.exercise_id,
            "exercise_data": record.exercise_data,
            "deleted_by": record.deleted_by,
            "is_default": record.is_default,
            "deleted_at": self._serialize_datetime(record.deleted_at),
        }

    def _deserialize_deleted_exercise(self, data: dict) -> DeletedExercise:
        return DeletedExercise(
            id=data["id"],
            exercise_id=data["exercise_id"],
            exercise_data=data.get("exercise_data") or {},
            deleted_by=data["deleted_by"],
            is_default=data.get("is_default", False),
            deleted_at=self._deserialize_datetime(data["deleted_at"]),
        )

    def _serialize_plan(self, plan: WorkoutPlan) -> dict:
        return {
            "id": plan.id,
            "name": plan.name,
            "exercises": list(plan.exercises),
            "type": plan.type,
            "is_default": plan.is_default,
            "user_id": plan.user_id,
            "scheduled_date": self._serialize_datetime(plan.scheduled_date),
            "share_id": plan.share_id,
            "is_shared": plan.is_shared,
            "imported_from": self._serialize_provenance(plan.imported_from),
            "created_at": self._serialize_datetime(plan.created_at),
            "updated_at": self._serialize_datetime(plan.updated_at),
        }

    def _deserialize_plan(self, data: dict) -> WorkoutPlan:
        return WorkoutPlan(
            id=data["id"],
            name=data["name"],
            exercises=list(data.get("exercises", [])),
            type=data.get("type", "other"),
            is_default=data.get("is_default", False),
            user_id=data.get("user_id"),
            scheduled_date=self._deserialize_datetime(data.get("scheduled_date")),
            share_id=data.get("share_id"),
            is_shared=data.get("is_shared", False),
            imported_from=self._deserialize_provenance(data.get("imported_from")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_workout(self, workout: Workout) -> dict:
        return {
            "id": workout.id,
            "user_id": workout.user_id,
            "plan_id": workout.plan_id,
            "plan_name": workout.plan_name,
            "start_time": self._serialize_datetime(workout.start_time),
            "end_time": self._serialize_datetime(workout.end_time),
            "exercises": workout.exercises,
            "total_pause_time": workout.total_pause_time,
            "skipped_pauses": workout.skipped_pauses,
            "progression": workout.progression,
            "notes": workout.notes,
            "plan_deleted": workout.plan_deleted,
            "created_at": self._serialize_datetime(workout.created_at),
            "updated_at": self._serialize_datetime(workout.updated_at),
        }

    def _deserialize_workout(self, data: dict) -> Workout:
        return Workout(
            id=data["id"],
            user_id=data["user_id"],
            plan_id=data.get("plan_id"),
            plan_name=data["plan_name"],
            start_time=self._deserialize_datetime(data["start_time"]),
            end_time=self._deserialize_datetime(data["end_time"]),
            exercises=data.get("exercises", []),
            total_pause_time=data.get("total_pause_time", 0),
            skipped_pauses=data.get("skipped_pauses", 0),
            progression=data.get("progression", 0.0),
            notes=data.get("notes"),
            plan_deleted=data.get("plan_deleted", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_progress(self, progress: WorkoutProgress) -> dict:
        return {
            "id": progress.id,
            "user_id": progress.user_id,
            "plan_id": progress.plan_id,
            "exercises": progress.exercises,
            "current_exercise_index": progress.current_exercise_index,
            "start_time": self._serialize_datetime(progress.start_time),
            "last_updated": self._serialize_datetime(progress.last_updated),
            "total_pause_time": progress.total_pause_time,
            "skipped_pauses": progress.skipped_pauses,
            "last_set_values": progress.last_set_values,
            "completed_sets": progress.completed_sets,
            "total_sets": progress.total_sets,
            "notes": progress.notes,
            "version": progress.version,
        }

    def _deserialize_progress(self, data: dict) -> WorkoutProgress:
        return WorkoutProgress(
            id=data["id"],
            user_id=data["user_id"],
            plan_id=data["plan_id"],
            exercises=data.get("exercises", []),
            current_exercise_index=data.get("current_exercise_index", 0),
            start_time=self._deserialize_datetime(data["start_time"]),
            last_updated=self._deserialize_datetime(data["last_updated"]),
            total_pause_time=data.get("total_pause_time", 0),
            skipped_pauses=data.get("skipped_pauses", 0),
            last_set_values=data.get("last_set_values") or {},
            completed_sets=data.get("completed_sets", 0),
            total_sets=data.get("total_sets", 0),
            notes=list(data.get("notes", [])),
            version=data.get("version", 0),
        )
