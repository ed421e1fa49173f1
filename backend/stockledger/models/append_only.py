"""
Append-only guard for ledger and audit tables.

Mapped classes that mix in AppendOnlyMixin accept INSERTs only. ORM updates and
deletes fail at flush time; bulk UPDATE/DELETE statements against them fail
before they reach the database.
"""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import Session, object_session

from ..exceptions import ImmutableMovementError


class AppendOnlyMixin:
    """Marker for insert-only tables."""


def _reject_update(mapper, connection, target):
    # before_update also fires for rows that are dirty without net changes
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ImmutableMovementError(
        f"{type(target).__name__} rows are append-only and cannot be updated",
        details={"id": target.id},
    )


def _reject_delete(mapper, connection, target):
    raise ImmutableMovementError(
        f"{type(target).__name__} rows are append-only and cannot be deleted",
        details={"id": target.id},
    )


event.listen(AppendOnlyMixin, "before_update", _reject_update, propagate=True)
event.listen(AppendOnlyMixin, "before_delete", _reject_delete, propagate=True)


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_writes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and issubclass(mapper.class_, AppendOnlyMixin):
        raise ImmutableMovementError(
            f"Bulk writes are not allowed on append-only table {mapper.class_.__tablename__}"
        )
