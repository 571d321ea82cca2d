from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from levelup.logging import get_logger
from levelup.service import entitlements
from levelup.service.entitlements import DeleteMode, MergedExercise
from levelup.service.errors import ForbiddenError, NotFoundError, ValidationError
from levelup.storage.models import (
    DEFAULT_EXERCISE_IMAGE,
    EXERCISE_CATEGORIES,
    EXPERIENCE_LEVELS,
    RECOMMENDATION_FIELDS,
    DeletedExercise,
    Exercise,
    ExerciseOverlay,
    User,
    new_id,
)

logger = get_logger(__name__)

MAX_NAME_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 500

# category -> (exercise_type, measurement_type)
_CATEGORY_TYPES = {
    "Strength": ("strength", "weight_reps"),
    "Cardio": ("cardio", "duration"),
}
_FALLBACK_TYPES = ("strength", "duration")


class ExerciseStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_exercise(self, exercise: Exercise) -> Exercise: ...

    def get_exercise(self, exercise_id: str) -> Optional[Exercise]: ...

    def list_exercises(self, user_id: Optional[str] = None) -> List[Exercise]: ...

    def update_exercise(self, exercise_id: str, **fields: Any) -> Optional[Exercise]: ...

    def delete_exercise(self, exercise_id: str) -> bool: ...

    def hide_exercise(self, user_id: str, exercise_id: str) -> None: ...

    def unhide_exercise(self, user_id: str, exercise_id: str) -> None: ...

    def save_exercise_overlay(self, user_id: str, overlay: ExerciseOverlay) -> Optional[ExerciseOverlay]: ...

    def archive_exercise(self, record: DeletedExercise) -> DeletedExercise: ...

    def get_deleted_exercise(self, record_id: str) -> Optional[DeletedExercise]: ...

    def list_deleted_exercises(self) -> List[DeletedExercise]: ...

    def remove_deleted_exercise(self, record_id: str) -> bool: ...


def derive_types(category: str) -> tuple[str, str]:
    """Map a category to its (exercise_type, measurement_type)."""
    return _CATEGORY_TYPES.get(category, _FALLBACK_TYPES)


def normalize_target(target: Any) -> List[str]:
    if isinstance(target, str):
        target = [target]
    if not isinstance(target, (list, tuple)):
        return []
    return [t.strip() for t in target if isinstance(t, str) and t.strip()]


def clean_recommendation(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep known numeric recommendation fields."""
    cleaned: Dict[str, Any] = {}
    for key in RECOMMENDATION_FIELDS:
        value = (raw or {}).get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValidationError(
                "Validation failed",
                detail={"errors": [{"field": f"recommendation.{key}", "message": "must be a non-negative number"}]},
            )
        cleaned[key] = value
    return cleaned


def clean_recommendations(raw: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    cleaned = {}
    for level, values in (raw or {}).items():
        if level not in EXPERIENCE_LEVELS:
            raise ValidationError(
                "Validation failed",
                detail={"errors": [{"field": "recommendations", "message": f"unknown experience level '{level}'"}]},
            )
        cleaned[level] = clean_recommendation(values)
    return cleaned


def validate_exercise_fields(
    *,
    name: Optional[str],
    description: Optional[str],
    target: Any,
    category: Optional[str],
    partial: bool = False,
) -> Dict[str, Any]:
    """Check exercise fields, collecting every problem before raising.

    With ``partial`` only the fields that were supplied are checked.
    Returns the normalized fields that were supplied.
    """
    errors: List[dict] = []
    fields: Dict[str, Any] = {}
    if name is not None or not partial:
        name = (name or "").strip()
        if not name:
            errors.append({"field": "name", "message": "Exercise name is required"})
        elif len(name) > MAX_NAME_LENGTH:
            errors.append({"field": "name", "message": "Name cannot be more than 50 characters"})
        fields["name"] = name
    if description is not None or not partial:
        description = (description or "").strip()
        if not description:
            errors.append({"field": "description", "message": "Exercise description is required"})
        elif len(description) > MAX_DESCRIPTION_LENGTH:
            errors.append(
                {"field": "description", "message": "Description cannot be more than 500 characters"}
            )
        fields["description"] = description
    if target is not None or not partial:
        normalized = normalize_target(target)
        if not normalized:
            errors.append(
                {"field": "target", "message": "At least one target muscle group must be specified"}
            )
        fields["target"] = normalized
    if category is not None or not partial:
        category = category or "Strength"
        if category not in EXERCISE_CATEGORIES:
            errors.append(
                {"field": "category", "message": f"category must be one of {', '.join(EXERCISE_CATEGORIES)}"}
            )
        fields["category"] = category
    if errors:
        raise ValidationError("Validation failed", detail={"errors": errors})
    return fields


def exercise_snapshot(exercise: Exercise) -> Dict[str, Any]:
    """JSON-safe copy of an exercise for the deletion archive."""
    data = dataclasses.asdict(exercise)
    for key, value in list(data.items()):
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    if data.get("imported_from") and isinstance(data["imported_from"].get("import_date"), datetime):
        data["imported_from"]["import_date"] = data["imported_from"]["import_date"].isoformat()
    return data


def exercise_from_snapshot(data: Dict[str, Any]) -> Exercise:
    names = {f.name for f in dataclasses.fields(Exercise)}
    values = {k: v for k, v in data.items() if k in names}
    for key in ("created_at", "updated_at"):
        if isinstance(values.get(key), str):
            values[key] = datetime.fromisoformat(values[key])
    provenance = values.get("imported_from")
    if provenance and isinstance(provenance.get("import_date"), str):
        values["imported_from"] = {
            **provenance,
            "import_date": datetime.fromisoformat(provenance["import_date"]),
        }
    return Exercise(**values)


class ExerciseService:
    """Exercise catalog: personal and default exercises plus per-user overlays."""

    def __init__(self, store: ExerciseStore) -> None:
        self.store = store

    def _merged(self, user: User, exercise: Exercise) -> MergedExercise:
        return entitlements.merge_overlay(
            exercise, user.user_exercises.get(exercise.id), user.experience_level
        )

    def _load(self, exercise_id: str) -> Exercise:
        exercise = self.store.get_exercise(exercise_id)
        if not exercise:
            raise NotFoundError("Exercise not found")
        return exercise

    def merge_for(self, user: User, exercises: Iterable[Exercise]) -> List[MergedExercise]:
        return [self._merged(user, ex) for ex in exercises]

    def list_for(self, user: User) -> List[MergedExercise]:
        visible = [
            ex for ex in self.store.list_exercises(user.id) if entitlements.can_view(user, ex)
        ]
        return self.merge_for(user, visible)

    def get(self, user: User, exercise_id: str) -> MergedExercise:
        exercise = entitlements.require_view(user, self._load(exercise_id))
        return self._merged(user, exercise)

    def create(
        self,
        user: User,
        *,
        name: Optional[str],
        description: Optional[str],
        target: Any,
        category: Optional[str] = None,
        image_url: Optional[str] = None,
        recommendations: Optional[Dict[str, Dict[str, Any]]] = None,
        recommendation: Optional[Dict[str, Any]] = None,
        is_default: bool = False,
    ) -> MergedExercise:
        """Create an exercise.

        Only admins create defaults; for anyone else ``is_default`` is ignored.
        ``recommendation`` applies to the caller's experience level.
        """
        fields = validate_exercise_fields(
            name=name, description=description, target=target, category=category
        )
        per_level = clean_recommendations(recommendations)
        if recommendation:
            per_level[user.experience_level] = {
                **per_level.get(user.experience_level, {}),
                **clean_recommendation(recommendation),
            }
        exercise_type, measurement_type = derive_types(fields["category"])
        default = bool(is_default and user.is_admin)
        exercise = Exercise(
            id=new_id(),
            image_url=image_url or DEFAULT_EXERCISE_IMAGE,
            exercise_type=exercise_type,
            measurement_type=measurement_type,
            recommendations=per_level,
            is_default=default,
            user_id=None if default else user.id,
            **fields,
        )
        created = self.store.create_exercise(exercise)
        logger.info("exercise_created", exercise_id=created.id, user_id=user.id, is_default=default)
        return self._merged(user, created)

    def create_default(self, admin: User, **kwargs: Any) -> MergedExercise:
        if not admin.is_admin:
            raise ForbiddenError("Access denied. Admin rights required.")
        return self.create(admin, is_default=True, **kwargs)

    def update(
        self,
        user: User,
        exercise_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        target: Any = None,
        category: Optional[str] = None,
        image_url: Optional[str] = None,
        recommendations: Optional[Dict[str, Dict[str, Any]]] = None,
        recommendation: Optional[Dict[str, Any]] = None,
    ) -> MergedExercise:
        """Edit an exercise, or personalize a default one.

        Admins and owners change the record. A non-admin editing a visible
        default exercise writes their overlay instead.
        """
        exercise = self._load(exercise_id)
        if entitlements.can_personalize(user, exercise):
            return self._personalize(
                user,
                exercise,
                name=name,
                description=description,
                target=target,
                image_url=image_url,
                recommendation=recommendation,
            )
        entitlements.require_edit(user, exercise)
        changes = validate_exercise_fields(
            name=name, description=description, target=target, category=category, partial=True
        )
        if "category" in changes:
            changes["exercise_type"], changes["measurement_type"] = derive_types(changes["category"])
        if image_url is not None:
            changes["image_url"] = image_url or DEFAULT_EXERCISE_IMAGE
        if recommendations is not None or recommendation:
            merged = dict(exercise.recommendations)
            for level, values in clean_recommendations(recommendations).items():
                merged[level] = values
            if recommendation:
                merged[user.experience_level] = entitlements.merge_recommendation(
                    merged.get(user.experience_level), clean_recommendation(recommendation)
                )
            changes["recommendations"] = merged
        updated = self.store.update_exercise(exercise.id, **changes) if changes else exercise
        if not updated:
            raise NotFoundError("Exercise not found")
        logger.info("exercise_updated", exercise_id=exercise.id, user_id=user.id)
        return self._merged(user, updated)

    def _personalize(
        self,
        user: User,
        exercise: Exercise,
        *,
        name: Optional[str],
        description: Optional[str],
        target: Any,
        image_url: Optional[str],
        recommendation: Optional[Dict[str, Any]],
    ) -> MergedExercise:
        supplied = validate_exercise_fields(
            name=name, description=description, target=target, category=None, partial=True
        )
        overlay = user.user_exercises.get(exercise.id) or ExerciseOverlay(exercise_id=exercise.id)
        overlay = dataclasses.replace(
            overlay,
            name=supplied.get("name") or overlay.name,
            description=supplied.get("description") or overlay.description,
            target=supplied.get("target") or overlay.target,
            image_url=image_url or overlay.image_url,
            recommendations=dict(overlay.recommendations),
        )
        if recommendation:
            overlay.recommendations[user.experience_level] = entitlements.merge_recommendation(
                overlay.recommendations.get(user.experience_level),
                clean_recommendation(recommendation),
            )
        self.store.save_exercise_overlay(user.id, overlay)
        user.user_exercises[exercise.id] = overlay
        logger.info("exercise_personalized", exercise_id=exercise.id, user_id=user.id)
        return self._merged(user, exercise)

    def set_user_recommendation(
        self, user: User, exercise_id: str, recommendation: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Merge ``recommendation`` into the caller's overlay for their level.

        Returns the overlay recommendation for that level.
        """
        exercise = entitlements.require_view(user, self._load(exercise_id))
        overlay = user.user_exercises.get(exercise.id) or ExerciseOverlay(exercise_id=exercise.id)
        merged = entitlements.merge_recommendation(
            overlay.recommendations.get(user.experience_level),
            clean_recommendation(recommendation),
        )
        overlay = dataclasses.replace(
            overlay, recommendations={**overlay.recommendations, user.experience_level: merged}
        )
        self.store.save_exercise_overlay(user.id, overlay)
        return merged

    def delete(self, user: User, exercise_id: str) -> str:
        """Delete or hide an exercise; either way an archive record is kept.

        Returns the message describing what happened.
        """
        exercise = self._load(exercise_id)
        mode = entitlements.resolve_delete(user, exercise)
        self.store.archive_exercise(
            DeletedExercise(
                id=new_id(),
                exercise_id=exercise.id,
                exercise_data=exercise_snapshot(exercise),
                deleted_by=user.id,
                is_default=exercise.is_default,
            )
        )
        if mode is DeleteMode.HIDE:
            self.store.hide_exercise(user.id, exercise.id)
            logger.info("exercise_hidden", exercise_id=exercise.id, user_id=user.id)
            return "Exercise removed from your view"
        self.store.delete_exercise(exercise.id)
        logger.info("exercise_deleted", exercise_id=exercise.id, user_id=user.id)
        return "Exercise deleted successfully"

    def list_deleted(self, admin: User) -> List[DeletedExercise]:
        if not admin.is_admin:
            raise ForbiddenError("Access denied. Admin rights required.")
        return self.store.list_deleted_exercises()

    def restore(self, user: User, record_id: str) -> MergedExercise:
        """Undo a delete: unhide a hidden default or recreate a removed record.

        Raises:
            NotFoundError: no such archive record
            ForbiddenError: caller is neither admin nor the deleting user
        """
        record = self.store.get_deleted_exercise(record_id)
        if not record:
            raise NotFoundError("Deleted exercise not found")
        if not user.is_admin and record.deleted_by != user.id:
            raise ForbiddenError("You do not have permission to restore this exercise")
        existing = self.store.get_exercise(record.exercise_id)
        if existing:
            # the record survived, so this was a per-user hide
            self.store.unhide_exercise(record.deleted_by, existing.id)
            restored = existing
        else:
            snapshot = exercise_from_snapshot(record.exercise_data)
            if not snapshot.is_default and not self.store.get_user(snapshot.user_id or ""):
                raise NotFoundError("Exercise owner no longer exists")
            restored = self.store.create_exercise(snapshot)
        self.store.remove_deleted_exercise(record.id)
        logger.info("exercise_restored", exercise_id=restored.id, user_id=user.id)
        refreshed = self.store.get_user(user.id) or user
        return self._merged(refreshed, restored)
