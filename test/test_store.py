from conftest import run

from cardshop.models import OrderStatus
from cardshop.order_state import allow_all, forward_only, policy_for


def test_put_if_version_create_and_conflict(store):
    assert run(store.put_if_version("k", {"a": 1}, None))
    assert not run(store.put_if_version("k", {"a": 2}, None))

    entry = run(store.get("k"))
    assert entry.version == 1
    assert run(store.put_if_version("k", {"a": 2}, 1))
    assert not run(store.put_if_version("k", {"a": 3}, 1))
    assert run(store.get("k")).value == {"a": 2}


def test_returned_values_are_copies(store):
    run(store.put_if_version("k", {"items": [1]}, None))
    entry = run(store.get("k"))
    entry.value["items"].append(2)
    assert run(store.get("k")).value == {"items": [1]}


def test_ttl_expiry_uses_store_clock(store, clock):
    run(store.put_if_version("k", {"a": 1}, None, ttl_seconds=10))
    clock.advance(9)
    assert run(store.get("k")) is not None
    clock.advance(1)
    assert run(store.get("k")) is None
    # an expired key counts as absent for creation
    assert run(store.put_if_version("k", {"a": 2}, None))


def test_scan_and_incr(store):
    run(store.put_if_version("order:1", {"n": 1}, None))
    run(store.put_if_version("order:2", {"n": 2}, None))
    run(store.put_if_version("order_number:X", {"id": "1"}, None))
    assert sorted(e.key for e in run(store.scan("order:"))) == ["order:1", "order:2"]
    assert [run(store.incr("c")) for _ in range(3)] == [1, 2, 3]


def test_policies():
    assert all(allow_all(a, b) for a in OrderStatus for b in OrderStatus)
    assert forward_only(OrderStatus.PENDING, OrderStatus.CONFIRMED)
    assert forward_only(OrderStatus.SHIPPED, OrderStatus.SHIPPED)
    assert not forward_only(OrderStatus.DELIVERED, OrderStatus.PENDING)
    assert not forward_only(OrderStatus.SHIPPED, OrderStatus.CANCELLED)
    assert policy_for("permissive") is allow_all
