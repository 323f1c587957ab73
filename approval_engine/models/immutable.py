"""
Append-only / never-delete guards.

Models registered here cannot be rewritten through the ORM:

    protect_append_only(StageAction)     # no UPDATE, no DELETE
    protect_from_delete(WorkflowInstance)  # UPDATE allowed, no DELETE

The guards hook SQLAlchemy mapper events, so any flush that would issue an
UPDATE or DELETE for a protected row raises ``ImmutableRecordError`` and the
surrounding transaction is unusable until rolled back.
"""

from sqlalchemy import event

from approval_engine.core.exceptions import ImmutableRecordError


def protect_from_delete(model_cls):
    """Reject ORM deletes of *model_cls* rows."""

    @event.listens_for(model_cls, "before_delete")
    def _block_delete(mapper, connection, target):
        raise ImmutableRecordError(model_cls.__name__, "delete", getattr(target, "id", None))

    return model_cls


def protect_append_only(model_cls):
    """Reject ORM updates and deletes of *model_cls* rows."""

    @event.listens_for(model_cls, "before_update")
    def _block_update(mapper, connection, target):
        raise ImmutableRecordError(model_cls.__name__, "update", getattr(target, "id", None))

    return protect_from_delete(model_cls)
