from __future__ import annotations

import dataclasses
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from levelup.logging import get_logger
from levelup.service import entitlements
from levelup.service.entitlements import DeleteMode, MergedExercise
from levelup.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from levelup.storage.errors import ConstraintViolation
from levelup.storage.models import PLAN_TYPES, Exercise, User, WorkoutPlan, new_id

logger = get_logger(__name__)


class PlanStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_exercise(self, exercise_id: str) -> Optional[Exercise]: ...

    def get_exercises(self, exercise_ids: List[str]) -> List[Exercise]: ...

    def create_plan(self, plan: WorkoutPlan) -> WorkoutPlan: ...

    def import_plan(self, plan: WorkoutPlan, exercises: List[Exercise]) -> WorkoutPlan: ...

    def get_plan(self, plan_id: str) -> Optional[WorkoutPlan]: ...

    def get_plan_by_share_id(self, share_id: str) -> Optional[WorkoutPlan]: ...

    def list_plans(self, user_id: Optional[str] = None) -> List[WorkoutPlan]: ...

    def plan_names_for(self, user_id: str) -> set[str]: ...

    def update_plan(self, plan_id: str, **fields: Any) -> Optional[WorkoutPlan]: ...

    def add_plan_exercise(self, plan_id: str, exercise_id: str) -> Optional[WorkoutPlan]: ...

    def remove_plan_exercise(self, plan_id: str, exercise_id: str) -> Optional[WorkoutPlan]: ...

    def delete_plan(self, plan_id: str) -> bool: ...

    def hide_plan(self, user_id: str, plan_id: str) -> None: ...


@dataclass
class PlanView:
    """A plan with its exercises populated for one viewer."""

    plan: WorkoutPlan
    exercises: List[MergedExercise] = field(default_factory=list)


class PlanService:
    def __init__(self, store: PlanStore, *, frontend_url: str = "http://localhost:3000") -> None:
        self.store = store
        self.frontend_url = frontend_url.rstrip("/")

    def _load(self, plan_id: str) -> WorkoutPlan:
        plan = self.store.get_plan(plan_id)
        if not plan:
            raise NotFoundError("Workout plan not found")
        return plan

    def _view(self, user: User, plan: WorkoutPlan) -> PlanView:
        exercises = self.store.get_exercises(plan.exercises)
        return PlanView(
            plan=plan,
            exercises=[
                entitlements.merge_overlay(
                    ex, user.user_exercises.get(ex.id), user.experience_level
                )
                for ex in exercises
            ],
        )

    def _check_type(self, plan_type: Optional[str]) -> str:
        plan_type = plan_type or "other"
        if plan_type not in PLAN_TYPES:
            raise ValidationError(
                "Validation failed",
                detail={
                    "errors": [
                        {"field": "type", "message": f"type must be one of {', '.join(PLAN_TYPES)}"}
                    ]
                },
            )
        return plan_type

    def _check_exercises(self, user: User, exercise_ids: List[str]) -> List[str]:
        seen: List[str] = []
        for exercise_id in exercise_ids:
            exercise = self.store.get_exercise(exercise_id)
            if not exercise or not entitlements.can_view(user, exercise):
                raise NotFoundError("Exercise not found", detail={"exerciseId": exercise_id})
            if exercise_id not in seen:
                seen.append(exercise_id)
        return seen

    def list_for(self, user: User) -> List[PlanView]:
        return [
            self._view(user, plan)
            for plan in self.store.list_plans(user.id)
            if entitlements.can_view(user, plan)
        ]

    def get(self, user: User, plan_id: str) -> PlanView:
        plan = entitlements.require_view(user, self._load(plan_id))
        return self._view(user, plan)

    def create(
        self,
        user: User,
        *,
        name: Optional[str],
        exercises: Optional[List[str]] = None,
        plan_type: Optional[str] = None,
        scheduled_date: Optional[datetime] = None,
        is_default: bool = False,
    ) -> PlanView:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Workout plan name is required")
        default = bool(is_default and user.is_admin)
        plan = WorkoutPlan(
            id=new_id(),
            name=name,
            exercises=self._check_exercises(user, exercises or []),
            type=self._check_type(plan_type),
            is_default=default,
            user_id=None if default else user.id,
            scheduled_date=scheduled_date,
        )
        try:
            created = self.store.create_plan(plan)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        logger.info("plan_created", plan_id=created.id, user_id=user.id, is_default=default)
        return self._view(user, created)

    def create_default(
        self,
        admin: User,
        *,
        name: Optional[str],
        exercises: Any,
        plan_type: Optional[str] = None,
    ) -> PlanView:
        if not admin.is_admin:
            raise ForbiddenError("Access denied. Admin rights required.")
        if not name or not isinstance(exercises, list):
            raise ValidationError("Invalid workout plan data")
        return self.create(
            admin, name=name, exercises=exercises, plan_type=plan_type, is_default=True
        )

    def update(
        self,
        user: User,
        plan_id: str,
        *,
        name: Optional[str] = None,
        exercises: Optional[List[str]] = None,
        plan_type: Optional[str] = None,
        scheduled_date: Optional[datetime] = None,
    ) -> PlanView:
        plan = entitlements.require_edit(user, self._load(plan_id))
        changes: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Workout plan name is required")
            changes["name"] = name.strip()
        if exercises is not None:
            changes["exercises"] = self._check_exercises(user, exercises)
        if plan_type is not None:
            changes["type"] = self._check_type(plan_type)
        if scheduled_date is not None:
            changes["scheduled_date"] = scheduled_date
        if not changes:
            return self._view(user, plan)
        try:
            updated = self.store.update_plan(plan.id, **changes)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        if not updated:
            raise NotFoundError("Workout plan not found")
        logger.info("plan_updated", plan_id=plan.id, user_id=user.id, fields=sorted(changes))
        return self._view(user, updated)

    def add_exercise(self, user: User, plan_id: str, exercise_id: Optional[str]) -> PlanView:
        if not exercise_id:
            raise ValidationError("Exercise ID is required")
        plan = entitlements.require_edit(user, self._load(plan_id))
        self._check_exercises(user, [exercise_id])
        try:
            updated = self.store.add_plan_exercise(plan.id, exercise_id)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail)
        if not updated:
            raise NotFoundError("Workout plan not found")
        return self._view(user, updated)

    def remove_exercise(self, user: User, plan_id: str, exercise_id: str) -> PlanView:
        plan = entitlements.require_edit(user, self._load(plan_id))
        updated = self.store.remove_plan_exercise(plan.id, exercise_id)
        if not updated:
            raise NotFoundError("Exercise not found in the workout plan")
        return self._view(user, updated)

    def delete(self, user: User, plan_id: str) -> str:
        plan = self._load(plan_id)
        if entitlements.resolve_delete(user, plan) is DeleteMode.HIDE:
            self.store.hide_plan(user.id, plan.id)
            logger.info("plan_hidden", plan_id=plan.id, user_id=user.id)
            return "Workout plan removed from your view"
        self.store.delete_plan(plan.id)
        logger.info("plan_deleted", plan_id=plan.id, user_id=user.id)
        return "Workout plan deleted successfully"

    def share(self, user: User, plan_id: str) -> tuple[str, PlanView]:
        """Mark a plan shared and return ``(share_link, view)``.

        The share id is stable: sharing twice yields the same link.
        """
        plan = entitlements.require_view(user, self._load(plan_id))
        if plan.is_default and not user.is_admin:
            raise ForbiddenError("You do not have permission to share this plan")
        entitlements.require_edit(user, plan, message="You do not have permission to share this plan")
        share_id = plan.share_id or secrets.token_hex(16)
        if not plan.is_shared or plan.share_id != share_id:
            plan = self.store.update_plan(plan.id, share_id=share_id, is_shared=True) or plan
        logger.info("plan_shared", plan_id=plan.id, user_id=user.id)
        return f"{self.frontend_url}/import-plan/{share_id}", self._view(user, plan)

    def _import_name(self, user: User, name: str) -> str:
        taken = self.store.plan_names_for(user.id)
        if name not in taken:
            return name
        candidate = f"{name} (imported)"
        counter = 2
        while candidate in taken:
            candidate = f"{name} (imported {counter})"
            counter += 1
        return candidate

    def import_shared(self, user: User, share_id: str) -> PlanView:
        """Deep-copy a shared plan and its exercises into ``user``'s account.

        Exercises are copied as the sharer sees them, overlays included, so
        later edits on either side stay independent.
        """
        source = self.store.get_plan_by_share_id(share_id)
        if not source:
            raise NotFoundError("Shared workout plan not found")
        sharer = self.store.get_user(source.user_id) if source.user_id else None
        now = datetime.utcnow()
        provenance = {
            "user": sharer.id if sharer else None,
            "username": sharer.username if sharer else None,
            "import_date": now,
            "share_id": share_id,
        }
        copies: List[Exercise] = []
        for exercise in self.store.get_exercises(source.exercises):
            if sharer:
                exercise = entitlements.merge_overlay(
                    exercise, sharer.user_exercises.get(exercise.id), sharer.experience_level
                ).exercise
            copies.append(
                dataclasses.replace(
                    exercise,
                    id=new_id(),
                    is_default=False,
                    user_id=user.id,
                    imported_from=dict(provenance),
                    created_at=now,
                    updated_at=now,
                )
            )
        plan = WorkoutPlan(
            id=new_id(),
            name=self._import_name(user, source.name),
            exercises=[ex.id for ex in copies],
            type=source.type,
            user_id=user.id,
            imported_from=dict(provenance),
            created_at=now,
            updated_at=now,
        )
        try:
            created = self.store.import_plan(plan, copies)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        logger.info(
            "plan_imported",
            plan_id=created.id,
            source_plan_id=source.id,
            user_id=user.id,
            exercises=len(copies),
        )
        return self._view(user, created)
