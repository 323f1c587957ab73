"""
Notifier adapters and workflow event types.

The engine emits one event per transition *after* the transition is
committed.  Delivery (e-mail, push, in-app) is somebody else's job; the
engine only hands events to a ``Notifier`` and to any completion handlers
the owning business modules registered for their request type.

Usage:
    from approval_engine.integrations import register_completion_handler

    def _mark_invoice(event):
        ...   # flip the invoice to APPROVED / REJECTED

    register_completion_handler("INVOICE", _mark_invoice, app=app)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Events
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class WorkflowEvent:
    instance_id: int
    request_type: str
    request_id: str

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def is_terminal(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {"event": self.name, **asdict(self)}


@dataclass(frozen=True)
class StageAdvanced(WorkflowEvent):
    """Approval moved to ``next_stage_order``; its approvers should be alerted."""
    next_stage_order: int = 0
    next_stage_name: str | None = None
    next_approver_roles: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowApproved(WorkflowEvent):
    approved_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class WorkflowRejected(WorkflowEvent):
    rejected_at_stage: int = 0
    comments: str | None = None
    acted_for: str | None = None

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class WorkflowCancelled(WorkflowEvent):
    reason: str | None = None
    cancelled_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return True


# ═════════════════════════════════════════════════════════════════════════════
# Notifiers
# ═════════════════════════════════════════════════════════════════════════════


class Notifier:
    """Interface: receives every workflow event."""

    def notify(self, event: WorkflowEvent) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default notifier — writes each event to the log."""

    def notify(self, event: WorkflowEvent) -> None:
        logger.info(
            "Workflow event %s instance=%s",
            event.name,
            event.instance_id,
            extra={"event_type": event.name, "instance_id": event.instance_id},
        )


class RecordingNotifier(Notifier):
    """Keeps events in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    def notify(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of_type(self, event_cls) -> list[WorkflowEvent]:
        return [e for e in self.events if isinstance(e, event_cls)]

    def clear(self) -> None:
        self.events.clear()


# ═════════════════════════════════════════════════════════════════════════════
# Completion handlers (owning modules)
# ═════════════════════════════════════════════════════════════════════════════

class CompletionHandlers:
    """Terminal-state callbacks keyed by request type; one registry per app."""

    def __init__(self) -> None:
        self._by_type: dict[str, list[Callable[[WorkflowEvent], None]]] = defaultdict(list)

    def register(self, request_type: str, handler: Callable[[WorkflowEvent], None]) -> None:
        self._by_type[request_type.strip().upper()].append(handler)

    def for_type(self, request_type: str) -> list[Callable[[WorkflowEvent], None]]:
        return list(self._by_type.get(request_type, []))

    def clear(self) -> None:
        self._by_type.clear()


def dispatch(
    notifier: Notifier,
    events: list[WorkflowEvent],
    handlers: CompletionHandlers | None = None,
) -> None:
    """Deliver committed events to the notifier and completion handlers.

    The transition is already durable at this point, so delivery failures
    are logged and do not propagate to the caller.
    """
    for event in events:
        try:
            notifier.notify(event)
        except Exception:
            logger.exception("Notifier failed for %s instance=%s", event.name, event.instance_id)

        if not event.is_terminal or handlers is None:
            continue
        for handler in handlers.for_type(event.request_type):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Completion handler %r failed for %s instance=%s",
                    handler, event.name, event.instance_id,
                )
