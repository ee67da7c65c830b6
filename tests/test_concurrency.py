"""Concurrent writers on a file-backed database never oversubscribe stock."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

from inventario.deps import build_services
from inventario.errors import ConflictError, InsufficientStockError
from inventario.schemas import (
    MovementCreate,
    PurchaseOrderCreate,
    PurchaseOrderLineCreate,
    ReceiveLine,
    SalesOrderCreate,
    SalesOrderLineCreate,
)

MAX_ATTEMPTS = 50


def _with_retry(session_factory, action):
    """Run ``action(services)`` in a fresh session, retrying lost races."""
    for attempt in range(MAX_ATTEMPTS):
        session = session_factory()
        try:
            return action(build_services(session, lock_timeout_ms=10000))
        except ConflictError as e:
            if not e.retryable:
                raise
            time.sleep(0.005 * (attempt + 1))
        finally:
            session.close()
    raise AssertionError("operation kept losing races")


def _seed(session_factory, cantidad):
    _with_retry(
        session_factory,
        lambda s: s.movements.apply_movement(
            MovementCreate(tipo="entrada", item="A", cantidad=cantidad, warehouse_to="W1")
        ),
    )


def _stock(session_factory):
    session = session_factory()
    try:
        stock = build_services(session).ledger.get("A", "W1")
        return stock.cantidad, stock.reservado
    finally:
        session.close()


def test_concurrent_reservations_never_oversubscribe(file_session_factory):
    _seed(file_session_factory, 10)
    workers = 8
    barrier = Barrier(workers)

    def reserve_two(_):
        barrier.wait()
        try:
            _with_retry(file_session_factory, lambda s: s.reservations.reserve("A", "W1", 2))
            return "ok"
        except InsufficientStockError:
            return "insufficient"

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(reserve_two, range(workers)))

    assert outcomes.count("ok") == 5
    assert outcomes.count("insufficient") == 3
    assert _stock(file_session_factory) == (10, 10)


def test_concurrent_salidas_and_reservations_keep_invariant(file_session_factory):
    _seed(file_session_factory, 12)
    workers = 6
    barrier = Barrier(workers)

    def work(i):
        barrier.wait()
        try:
            if i % 2 == 0:
                _with_retry(file_session_factory, lambda s: s.reservations.reserve("A", "W1", 3))
            else:
                _with_retry(
                    file_session_factory,
                    lambda s: s.movements.apply_movement(
                        MovementCreate(tipo="salida", item="A", cantidad=3, warehouse_from="W1")
                    ),
                )
            return 3
        except InsufficientStockError:
            return 0

    with ThreadPoolExecutor(max_workers=workers) as pool:
        taken = sum(pool.map(work, range(workers)))

    cantidad, reservado = _stock(file_session_factory)
    assert taken == 12
    assert 0 <= reservado <= cantidad
    assert (12 - cantidad) + reservado == taken


def test_concurrent_confirmations_reserve_all_or_nothing(file_session_factory):
    _seed(file_session_factory, 10)
    workers = 6
    order_ids = [
        _with_retry(
            file_session_factory,
            lambda s: s.sales_orders.create(
                SalesOrderCreate(lines=[SalesOrderLineCreate(item="A", cantidad=3)])
            ).id,
        )
        for _ in range(workers)
    ]
    barrier = Barrier(workers)

    def confirm(order_id):
        barrier.wait()
        try:
            _with_retry(file_session_factory, lambda s: s.sales_orders.confirm(order_id, "W1"))
            return "ok"
        except InsufficientStockError:
            return "insufficient"

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(confirm, order_ids))

    assert outcomes.count("ok") == 3
    assert outcomes.count("insufficient") == 3
    assert _stock(file_session_factory) == (10, 9)

    session = file_session_factory()
    try:
        services = build_services(session)
        estados = sorted(services.sales_orders.get(order_id).estado for order_id in order_ids)
        assert estados == ["borrador"] * 3 + ["confirmada"] * 3
        assert len(services.reservations.list(item="A")) == 3
    finally:
        session.close()


def test_concurrent_receipts_with_one_key_apply_once(file_session_factory):
    order_id = _with_retry(
        file_session_factory,
        lambda s: s.purchase_orders.create(
            PurchaseOrderCreate(lines=[PurchaseOrderLineCreate(item="A", cantidad=5)])
        ).id,
    )
    workers = 4
    barrier = Barrier(workers)

    def receive(_):
        barrier.wait()
        result = _with_retry(
            file_session_factory,
            lambda s: s.purchase_orders.receive(
                order_id, "W1", [ReceiveLine(item="A", cantidad=5)], idempotency_key="rcv-1"
            ),
        )
        return [m.id for m in result.movements]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        movement_ids = list(pool.map(receive, range(workers)))

    assert len(movement_ids[0]) == 1
    assert all(ids == movement_ids[0] for ids in movement_ids)
    assert _stock(file_session_factory) == (5, 0)
