"""Who may see and change exercises and workout plans.

Rules, first match wins:

1. Admins may view, edit and delete anything.
2. A personal resource belongs to one user; anyone else gets ``NotFound`` so
   private ids cannot be discovered.
3. A default resource is visible to every user who has not hidden it. Only
   admins edit it (others get ``Forbidden``). A non-admin "delete" hides it
   for that user alone.

Exercise overlays let a user personalize a default exercise without touching
the shared record; :func:`merge_overlay` defines the precedence.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Union

from levelup.logging import get_logger
from levelup.service.errors import ForbiddenError, NotFoundError
from levelup.storage.models import Exercise, ExerciseOverlay, User, WorkoutPlan

logger = get_logger(__name__)

Resource = Union[Exercise, WorkoutPlan]


class DeleteMode(str, Enum):
    REMOVE = "remove"  # delete the record for everyone
    HIDE = "hide"  # add to the caller's deletion set


def _kind(resource: Resource) -> str:
    return "exercise" if isinstance(resource, Exercise) else "plan"


def _not_found(resource: Resource) -> NotFoundError:
    return NotFoundError(
        "Exercise not found" if isinstance(resource, Exercise) else "Workout plan not found"
    )


def is_owner(user: User, resource: Resource) -> bool:
    return not resource.is_default and resource.user_id == user.id


def is_hidden_for(user: User, resource: Resource) -> bool:
    if isinstance(resource, Exercise):
        return user.hides_exercise(resource.id)
    return user.hides_plan(resource.id)


def can_view(user: User, resource: Resource) -> bool:
    if user.is_admin:
        return True
    if resource.is_default:
        return not is_hidden_for(user, resource)
    return is_owner(user, resource)


def can_edit(user: User, resource: Resource) -> bool:
    if user.is_admin:
        return True
    return is_owner(user, resource)


def can_delete(user: User, resource: Resource) -> bool:
    """Whether ``user`` may remove the record itself (not just hide it)."""
    return can_edit(user, resource)


def require_view(user: User, resource: Resource) -> Resource:
    if not can_view(user, resource):
        raise _not_found(resource)
    return resource


def require_edit(user: User, resource: Resource, *, message: Optional[str] = None) -> Resource:
    """Return ``resource`` if ``user`` may edit it.

    Raises:
        NotFoundError: missing, hidden, or another user's personal resource
        ForbiddenError: a visible default resource and ``user`` is not an admin
    """
    resource = require_view(user, resource)
    if not can_edit(user, resource):
        logger.warning(
            "entitlement_denied",
            user_id=user.id,
            resource=_kind(resource),
            resource_id=resource.id,
            action="edit",
        )
        raise ForbiddenError(
            message or f"You do not have permission to edit this {_kind(resource)}"
        )
    return resource


def resolve_delete(user: User, resource: Resource) -> DeleteMode:
    """Decide what a delete request from ``user`` does.

    Raises:
        NotFoundError: missing, hidden, or another user's personal resource
    """
    resource = require_view(user, resource)
    if can_delete(user, resource):
        return DeleteMode.REMOVE
    # only a visible default reaches here
    return DeleteMode.HIDE


def can_personalize(user: User, exercise: Exercise) -> bool:
    """Non-admins customize a default exercise through their overlay."""
    return exercise.is_default and not user.is_admin and can_view(user, exercise)


@dataclass
class MergedExercise:
    """An exercise as one user sees it."""

    exercise: Exercise
    # recommendation for the viewer's experience level only
    recommendation: Dict[str, Any] = field(default_factory=dict)
    experience_level: str = "beginner"
    base_recommendations: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    customized: bool = False


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def merge_recommendation(
    base: Optional[Dict[str, Any]], overlay: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    merged = dict(base or {})
    for key, value in (overlay or {}).items():
        if value is not None:
            merged[key] = value
    return merged


def merge_overlay(
    base: Exercise, overlay: Optional[ExerciseOverlay], experience_level: str
) -> MergedExercise:
    """Layer ``overlay`` over ``base`` for a viewer at ``experience_level``.

    Overlay name, description, image and target win when present and
    non-empty. The recommendation is reported for ``experience_level`` only,
    with overlay values taking precedence field by field.
    """
    base_level = base.recommendations.get(experience_level, {})
    if overlay is None:
        return MergedExercise(
            exercise=base,
            recommendation=dict(base_level),
            experience_level=experience_level,
            base_recommendations=base.recommendations,
        )
    merged = replace(
        base,
        name=overlay.name if _present(overlay.name) else base.name,
        description=overlay.description if _present(overlay.description) else base.description,
        image_url=overlay.image_url if _present(overlay.image_url) else base.image_url,
        target=list(overlay.target) if _present(overlay.target) else list(base.target),
    )
    return MergedExercise(
        exercise=merged,
        recommendation=merge_recommendation(
            base_level, overlay.recommendations.get(experience_level)
        ),
        experience_level=experience_level,
        base_recommendations=base.recommendations,
        customized=True,
    )
