"""
Approval outbound events.

Events are published after the state change that caused them has been
committed. Listeners register per event type with a decorator:

    @listens_to(FlowApproved)
    def post_to_ledger(event):
        ...

A failing listener is logged and does not affect the committed approval
state or the other listeners.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, ClassVar

from app.models import db

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Event types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StepPendingApproval:
    tenant_id: int
    flow_id: int
    step_id: int
    level_order: int
    role_name: str
    candidate_approver_ids: tuple[int, ...] = field(default_factory=tuple)

    event_type: ClassVar[str] = "step_pending"


@dataclass(frozen=True)
class FlowApproved:
    tenant_id: int
    flow_id: int
    transaction_id: str
    requester_user_id: int | None = None

    event_type: ClassVar[str] = "flow_approved"


@dataclass(frozen=True)
class FlowRejected:
    tenant_id: int
    flow_id: int
    transaction_id: str
    reason: str
    requester_user_id: int | None = None

    event_type: ClassVar[str] = "flow_rejected"


# ═══════════════════════════════════════════════════════════════════════════
#  Listener registry
# ═══════════════════════════════════════════════════════════════════════════

_listeners: dict[type, list[Callable]] = {}


def listens_to(*event_types: type):
    """Decorator registering a listener for one or more event types."""
    def decorator(fn: Callable) -> Callable:
        for event_type in event_types:
            _listeners.setdefault(event_type, []).append(fn)
        return fn
    return decorator


def get_listeners(event_type: type) -> list[Callable]:
    return list(_listeners.get(event_type, []))


def publish(event) -> int:
    """Deliver one event to its listeners. Returns the number that succeeded."""
    delivered = 0
    for listener in get_listeners(type(event)):
        try:
            listener(event)
            delivered += 1
        except Exception:
            db.session.rollback()
            logger.exception(
                "Listener %s failed for %s flow_id=%s",
                getattr(listener, "__name__", listener), event.event_type, event.flow_id,
                extra={"event_type": event.event_type, "flow_id": event.flow_id},
            )
    return delivered


def publish_all(events) -> None:
    for event in events:
        logger.info(
            "Approval event %s flow_id=%s", event.event_type, event.flow_id,
            extra={"tenant_id": event.tenant_id, "flow_id": event.flow_id,
                   "event_type": event.event_type},
        )
        publish(event)


# ═══════════════════════════════════════════════════════════════════════════
#  Default listeners: in-app notifications
# ═══════════════════════════════════════════════════════════════════════════

@listens_to(StepPendingApproval)
def notify_candidates(event: StepPendingApproval) -> None:
    from app.services.notification import NotificationService

    if not event.candidate_approver_ids:
        return
    NotificationService.broadcast(
        tenant_id=event.tenant_id,
        recipient_user_ids=event.candidate_approver_ids,
        title=f"Approval required: level {event.level_order} ({event.role_name})",
        message=f"Approval flow {event.flow_id} is waiting for your decision.",
        event_type=event.event_type,
        entity_type="approval_step",
        entity_id=event.step_id,
    )


@listens_to(FlowApproved, FlowRejected)
def notify_requester(event) -> None:
    from app.services.notification import NotificationService

    if event.requester_user_id is None:
        return
    if isinstance(event, FlowApproved):
        title = f"Request {event.transaction_id} approved"
        message = "All approval levels are complete."
        severity = "success"
    else:
        title = f"Request {event.transaction_id} rejected"
        message = f"Reason: {event.reason}"
        severity = "warning"
    NotificationService.create(
        tenant_id=event.tenant_id,
        recipient_user_id=event.requester_user_id,
        title=title,
        message=message,
        event_type=event.event_type,
        severity=severity,
        entity_type="approval_flow",
        entity_id=event.flow_id,
    )
