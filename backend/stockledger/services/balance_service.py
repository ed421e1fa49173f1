# Overview: Point-in-time balances reconstructed from the movement stream.

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import and_, or_

from ..exceptions import ValidationError
from ..extensions import db
from ..models import ItemType, StockMovement, signed_quantity
from ..time_utils import as_utc_naive
from .movement_service import chronological, list_movements, parse_item_type

ZERO = Decimal("0")


def _fold(movements) -> Decimal:
    total = ZERO
    for m in movements:
        total += signed_quantity(m.movement_type, m.quantity)
    return total


def _item_query(item_type: ItemType, item_reference: int):
    return db.session.query(StockMovement).filter(
        StockMovement.item_type == item_type.value,
        StockMovement.item_reference == item_reference,
    )


def balance_as_of(
    item_type: ItemType | str,
    item_reference: int,
    effective_date: date | None = None,
    created_at_cutoff: datetime | None = None,
) -> Decimal:
    """
    Balance of one item at a point in time.

    Includes movements with effective_date < d, plus those on d with
    created_at <= cutoff (cutoff defaults to the end of time).
    effective_date=None folds every movement; a cutoff without a date is
    rejected.
    """
    if created_at_cutoff is not None and effective_date is None:
        raise ValidationError("created_at_cutoff requires effective_date")
    item_type = parse_item_type(item_type)
    q = _item_query(item_type, item_reference)
    if effective_date is not None:
        if created_at_cutoff is None:
            q = q.filter(StockMovement.effective_date <= effective_date)
        else:
            q = q.filter(or_(
                StockMovement.effective_date < effective_date,
                and_(
                    StockMovement.effective_date == effective_date,
                    StockMovement.created_at <= as_utc_naive(created_at_cutoff),
                ),
            ))
    return _fold(chronological(q))


def balance_before(movement: StockMovement) -> Decimal:
    """Balance from every movement of the same item sorting strictly before ``movement``."""
    q = _item_query(ItemType(movement.item_type), movement.item_reference).filter(or_(
        StockMovement.effective_date < movement.effective_date,
        and_(
            StockMovement.effective_date == movement.effective_date,
            or_(
                StockMovement.created_at < movement.created_at,
                and_(StockMovement.created_at == movement.created_at, StockMovement.id < movement.id),
            ),
        ),
    ))
    return _fold(chronological(q))


def balance_after(movement: StockMovement) -> Decimal:
    return balance_before(movement) + movement.signed_quantity


def movement_history(
    item_type: ItemType | str,
    item_reference: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[dict]:
    """
    Movements in ledger order, each with its running balance.

    The first row's balance_before carries everything before start_date.
    """
    item_type = parse_item_type(item_type)
    running = ZERO
    if start_date is not None:
        running = _fold(chronological(
            _item_query(item_type, item_reference).filter(StockMovement.effective_date < start_date)
        ))

    rows = []
    for m in list_movements(item_type, item_reference, start_date=start_date, end_date=end_date):
        before = running
        running = before + m.signed_quantity
        row = m.to_dict()
        row["balance_before"] = str(before)
        row["balance_after"] = str(running)
        rows.append(row)
    return rows


def available_for_deduction(
    item_type: ItemType | str,
    item_reference: int,
    effective_date: date,
    created_at: datetime,
) -> Decimal:
    """
    Largest quantity that can be taken out at (effective_date, created_at).

    This is the minimum running balance from that point to the end of the
    ledger, so a back-dated deduction never drives a later point negative.
    """
    item_type = parse_item_type(item_type)
    created_at = as_utc_naive(created_at)
    balance = ZERO
    lowest = None
    for m in chronological(_item_query(item_type, item_reference)):
        m_created = as_utc_naive(m.created_at)
        if lowest is None and (m.effective_date, m_created) > (effective_date, created_at):
            lowest = balance
        balance += m.signed_quantity
        if lowest is not None:
            lowest = min(lowest, balance)
    if lowest is None:
        lowest = balance
    return lowest
