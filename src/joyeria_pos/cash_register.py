"""Cash register sessions and the expected-versus-counted cash reconciliation.

A session moves ``Abierta -> Cerrada`` exactly once. While it is open,
deposits, withdrawals and refunds are appended to the ``cash_movements``
collection. Closing freezes the computed :class:`CashState` into the session
so later reads and repeated closes return the same figures.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from . import data_manager, log
from .constants import CashMovementType, PaymentMethod, SessionStatus
from .core_logic import (
    RuntimeContext,
    _resolve_timestamp,
    commit,
    list_cash_movements,
    list_cash_sessions,
    list_sales,
    next_id,
    require_nonnegative_money,
    round_money,
    to_decimal,
)
from .exceptions import (
    InvalidAmount,
    MissingReferenceError,
    NoOpenRegister,
    RegisterAlreadyOpen,
    ValidationError,
    WithdrawalExceedsAvailable,
)
from .sales import normalize_payment_method


ZERO = Decimal("0")

# Persisted EstadoCaja keys, in display order.
STATE_KEYS = {
    "total_sales": "ventasTotales",
    "cash_sales": "efectivoVentas",
    "card_sales": "tarjetaVentas",
    "transfer_sales": "transferenciaVentas",
    "initial_amount": "saldoInicial",
    "non_sale_income": "ingresosNoVenta",
    "withdrawals": "retiros",
    "cash_refunds": "devolucionesEfectivo",
    "expected_cash": "efectivoEsperado",
    "difference": "diferencia",
}


@dataclass(frozen=True)
class CashState:
    """Reconciliation snapshot of one register session (EstadoCaja)."""

    total_sales: Decimal
    cash_sales: Decimal
    card_sales: Decimal
    transfer_sales: Decimal
    initial_amount: Decimal
    non_sale_income: Decimal
    withdrawals: Decimal
    cash_refunds: Decimal
    expected_cash: Decimal
    difference: Decimal = ZERO

    def to_dict(self) -> Dict[str, Decimal]:
        return {STATE_KEYS[name]: value for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CashState":
        return cls(**{name: Decimal(str(raw.get(key, ZERO))) for name, key in STATE_KEYS.items()})


def _sum(amounts: Iterable[Decimal]) -> Decimal:
    return round_money(sum(amounts, ZERO))


def compute_cash_state(
    initial_amount: Decimal,
    sales: Iterable[data_manager.SaleRow],
    movements: Iterable[data_manager.CashMovementRow],
    counted: Optional[Decimal] = None,
) -> CashState:
    """Compute the EstadoCaja of a session from its sales and cash movements.

    The caller decides which sales and movements belong to the session; every
    sale passed in counts, whatever its status.

    ``expected_cash = initial + cash sales + deposits - withdrawals - refunds``
    and ``difference = counted - expected_cash`` (zero when nothing was
    counted).
    """

    sales = list(sales)
    movements = list(movements)
    by_method = {method.value: [] for method in PaymentMethod}
    for sale in sales:
        by_method[normalize_payment_method(sale.payment_method)].append(sale.total)
    by_type = {kind.value: [] for kind in CashMovementType}
    for movement in movements:
        if movement.movement_type in by_type:
            by_type[movement.movement_type].append(movement.amount)

    cash_sales = _sum(by_method[PaymentMethod.CASH.value])
    deposits = _sum(by_type[CashMovementType.DEPOSIT.value])
    withdrawals = _sum(by_type[CashMovementType.WITHDRAWAL.value])
    refunds = _sum(by_type[CashMovementType.REFUND.value])
    initial = round_money(Decimal(initial_amount))
    expected = round_money(initial + cash_sales + deposits - withdrawals - refunds)
    state = CashState(
        total_sales=_sum(sale.total for sale in sales),
        cash_sales=cash_sales,
        card_sales=_sum(by_method[PaymentMethod.CARD.value]),
        transfer_sales=_sum(by_method[PaymentMethod.TRANSFER.value]),
        initial_amount=initial,
        non_sale_income=deposits,
        withdrawals=withdrawals,
        cash_refunds=refunds,
        expected_cash=expected,
    )
    return with_counted_cash(state, counted) if counted is not None else state


def with_counted_cash(state: CashState, counted: Optional[Decimal]) -> CashState:
    """Recompute only ``difference`` for a counted cash figure."""

    amount = ZERO if counted is None else Decimal(counted)
    return replace(state, difference=round_money(amount - state.expected_cash))


def list_sessions(context: RuntimeContext) -> List[data_manager.CashSessionRow]:
    """Return every register session ordered by id."""

    return sorted(list_cash_sessions(context), key=lambda row: row.session_id)


def current_session(context: RuntimeContext) -> Optional[data_manager.CashSessionRow]:
    """Return the open session, if any."""

    open_sessions = [row for row in list_sessions(context) if row.status == SessionStatus.OPEN.value]
    return open_sessions[-1] if open_sessions else None


def get_session(context: RuntimeContext, session_id: int) -> data_manager.CashSessionRow:
    for session in list_cash_sessions(context):
        if session.session_id == session_id:
            return session
    log.warning("Cash session lookup failed for id '%s'", session_id)
    raise MissingReferenceError(f"Unknown cash session id: {session_id}", session_id=session_id)


def session_movements(context: RuntimeContext, session_id: int) -> List[data_manager.CashMovementRow]:
    """Return the cash movements recorded against ``session_id``."""

    return [movement for movement in list_cash_movements(context) if movement.session_id == session_id]


def _in_window(moment: datetime, start: datetime, end: datetime) -> bool:
    return start <= moment <= end


def _session_state(
    context: RuntimeContext,
    session: data_manager.CashSessionRow,
    *,
    until: datetime,
    counted: Optional[Decimal] = None,
) -> CashState:
    end = session.end_time or until
    sales = [sale for sale in list_sales(context) if _in_window(sale.created_at, session.start_time, end)]
    movements = [
        movement
        for movement in session_movements(context, session.session_id)
        if _in_window(movement.created_at, session.start_time, end)
    ]
    return compute_cash_state(session.initial_amount, sales, movements, counted)


def _validated_counted(counted: Any) -> Optional[Decimal]:
    if counted is None:
        return None
    amount = to_decimal(counted, field="counted")
    require_nonnegative_money(amount, field="counted")
    return amount


def open_register(
    context: RuntimeContext,
    initial_amount: Any,
    *,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CashSessionRow:
    """Open a new register session with ``initial_amount`` in the drawer.

    Raises:
        ValidationError: If the initial amount is negative or not finite.
        RegisterAlreadyOpen: If another session is still open.
    """
    amount = to_decimal(initial_amount, field="initialAmount")
    if amount < ZERO:
        log.error("Register opening rejected: negative initial amount %s", amount)
        raise ValidationError(
            "El saldo inicial debe ser mayor o igual a 0", field="initialAmount", value=initial_amount
        )

    when = _resolve_timestamp(timestamp)
    with context.lock:
        active = current_session(context)
        if active is not None:
            log.warning("Register opening rejected: session #%s is still open", active.session_id)
            raise RegisterAlreadyOpen(
                f"La caja ya está abierta (sesión #{active.session_id})", session_id=active.session_id
            )
        sessions = list_sessions(context)
        session = data_manager.CashSessionRow(
            session_id=next_id(row.session_id for row in sessions),
            start_time=when,
            initial_amount=round_money(amount),
            status=SessionStatus.OPEN.value,
            created_at=when,
            updated_at=when,
            notes=(notes or "").strip() or None,
        )
        commit(context, cash_sessions=[*sessions, session])

    log.info("Opened register session #%s with %s", session.session_id, session.initial_amount)
    return session


def _record_movement(
    context: RuntimeContext,
    movement_type: CashMovementType,
    amount: Any,
    reason: Optional[str],
    timestamp: Optional[datetime],
) -> data_manager.CashMovementRow:
    value = to_decimal(amount, field="monto", error=InvalidAmount)
    if value <= ZERO:
        log.error("Cash %s rejected: amount %s", movement_type.value, amount)
        raise InvalidAmount("Monto inválido", field="monto", value=amount)

    when = _resolve_timestamp(timestamp)
    with context.lock:
        session = current_session(context)
        if session is None:
            log.warning("Cash %s rejected: no open register", movement_type.value)
            raise NoOpenRegister("No hay caja abierta")
        if movement_type is CashMovementType.WITHDRAWAL:
            available = _session_state(context, session, until=when).expected_cash
            if value > available:
                log.warning("Withdrawal of %s rejected: only %s expected in drawer", value, available)
                raise WithdrawalExceedsAvailable(
                    "Retiro excede el efectivo disponible", field="monto", amount=value, available=available
                )
        movement = data_manager.CashMovementRow(
            movement_id=uuid4().hex,
            session_id=session.session_id,
            movement_type=movement_type.value,
            amount=value,
            created_at=when,
            reason=(reason or "").strip() or None,
        )
        commit(context, cash_movements=[*list_cash_movements(context), movement])

    log.info("Recorded cash %s of %s on session #%s", movement_type.value, value, session.session_id)
    return movement


def record_deposit(
    context: RuntimeContext, amount: Any, reason: Optional[str] = None, *, timestamp: Optional[datetime] = None
) -> data_manager.CashMovementRow:
    """Add non-sale cash to the drawer (``ingreso``)."""

    return _record_movement(context, CashMovementType.DEPOSIT, amount, reason, timestamp)


def record_withdrawal(
    context: RuntimeContext, amount: Any, reason: Optional[str] = None, *, timestamp: Optional[datetime] = None
) -> data_manager.CashMovementRow:
    """Take cash out of the drawer (``retiro``).

    Raises:
        InvalidAmount: If ``amount`` is not finite and positive.
        NoOpenRegister: If no session is open.
        WithdrawalExceedsAvailable: If ``amount`` exceeds the expected cash.
    """

    return _record_movement(context, CashMovementType.WITHDRAWAL, amount, reason, timestamp)


def record_refund(
    context: RuntimeContext, amount: Any, reason: Optional[str] = None, *, timestamp: Optional[datetime] = None
) -> data_manager.CashMovementRow:
    """Pay a cash refund out of the drawer (``devolucion``)."""

    return _record_movement(context, CashMovementType.REFUND, amount, reason, timestamp)


def load_cash_state(
    context: RuntimeContext,
    session_id: Optional[int] = None,
    counted: Any = None,
    *,
    now: Optional[datetime] = None,
) -> CashState:
    """Return the EstadoCaja of a session without writing anything.

    Without ``session_id`` the open session is used. Closed sessions return
    their frozen summary.

    Raises:
        NoOpenRegister: If no ``session_id`` is given and no session is open.
        MissingReferenceError: If ``session_id`` is unknown.
    """
    counted_amount = _validated_counted(counted)
    with context.lock:
        if session_id is None:
            session = current_session(context)
            if session is None:
                raise NoOpenRegister("No hay caja abierta")
        else:
            session = get_session(context, session_id)

        if session.status == SessionStatus.CLOSED.value and session.summary is not None:
            state = CashState.from_dict(session.summary)
            return with_counted_cash(state, counted_amount) if counted_amount is not None else state
        return _session_state(context, session, until=_resolve_timestamp(now), counted=counted_amount)


def close_register(
    context: RuntimeContext,
    session_id: int,
    notes: Optional[str] = None,
    counted: Any = None,
    *,
    timestamp: Optional[datetime] = None,
) -> CashState:
    """Close a session and freeze its EstadoCaja.

    ``finalAmount`` is the counted cash, or the expected cash when nothing
    was counted. Closing an already closed session returns the frozen state
    and writes nothing.

    Raises:
        MissingReferenceError: If ``session_id`` is unknown.
        ValidationError: If ``counted`` is negative or not a number.
    """
    counted_amount = _validated_counted(counted)
    when = _resolve_timestamp(timestamp)
    with context.lock:
        session = get_session(context, session_id)
        if session.status == SessionStatus.CLOSED.value:
            log.info("Register session #%s already closed; returning frozen state", session_id)
            if session.summary is not None:
                return CashState.from_dict(session.summary)
            return _session_state(context, session, until=session.end_time or when, counted=session.final_amount)

        state = _session_state(context, session, until=when, counted=counted_amount)
        closed = replace(
            session,
            end_time=when,
            status=SessionStatus.CLOSED.value,
            expected_amount=state.expected_cash,
            difference=state.difference,
            final_amount=round_money(counted_amount) if counted_amount is not None else state.expected_cash,
            notes=(notes or "").strip() or session.notes,
            summary=state.to_dict(),
            updated_at=when,
        )
        sessions = [closed if row.session_id == session_id else row for row in list_cash_sessions(context)]
        commit(context, cash_sessions=sessions)

    log.info(
        "Closed register session #%s (expected=%s, difference=%s)", session_id, state.expected_cash, state.difference
    )
    return state
