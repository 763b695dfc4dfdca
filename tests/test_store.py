from datetime import timedelta

import pytest

from pagbank_pix.errors import Conflict, IntentNotFound, InvalidTransition, StaleState
from pagbank_pix.models import IntentState


def new_intent(store, clock, order="O1", amount=5000, minutes=15):
    return store.create(order, amount, clock() + timedelta(minutes=minutes), idempotency_key=f"{order}-key")


def test_create_starts_in_created(store, clock):
    intent = new_intent(store, clock)

    loaded = store.get_by_id(intent.id)
    assert loaded.state is IntentState.CREATED
    assert loaded.amount == 5000
    assert loaded.currency == "BRL"
    assert loaded.provider_id is None


def test_update_state_is_compare_and_swap(store, clock):
    intent = new_intent(store, clock)
    clock.advance(seconds=5)

    updated = store.update_state(
        intent.id, IntentState.CREATED, IntentState.AWAITING_PAYMENT,
        provider_id="ORDE_1", provider_payload={"qr_text": "pix"},
    )

    assert updated.state is IntentState.AWAITING_PAYMENT
    assert updated.provider_id == "ORDE_1"
    assert updated.updated_at == clock()
    assert store.get_by_provider_id("ORDE_1").id == intent.id

    with pytest.raises(StaleState):
        store.update_state(intent.id, IntentState.CREATED, IntentState.FAILED)
    assert store.get_by_id(intent.id).state is IntentState.AWAITING_PAYMENT


def test_update_state_refuses_transitions_outside_the_table(store, clock):
    intent = new_intent(store, clock)

    with pytest.raises(InvalidTransition):
        store.update_state(intent.id, IntentState.CREATED, IntentState.REFUNDED)
    with pytest.raises(InvalidTransition):
        store.update_state(intent.id, IntentState.EXPIRED, IntentState.PAID)


def test_amount_cannot_change(store, clock):
    intent = new_intent(store, clock)

    with pytest.raises(ValueError):
        store.update_state(intent.id, IntentState.CREATED, IntentState.AWAITING_PAYMENT, amount=1)


def test_unknown_intent(store):
    with pytest.raises(IntentNotFound):
        store.update_state("missing", IntentState.CREATED, IntentState.FAILED)


def test_get_by_order_prefers_the_active_intent(store, clock):
    first = new_intent(store, clock)
    store.update_state(first.id, IntentState.CREATED, IntentState.FAILED)
    clock.advance(minutes=1)
    second = new_intent(store, clock)

    assert store.get_by_order("O1").id == second.id
    assert [i.id for i in store.list_by_order("O1")] == [second.id, first.id]

    store.update_state(second.id, IntentState.CREATED, IntentState.FAILED)
    assert store.get_by_order("O1").id == second.id
    assert store.get_by_order("O2") is None


def test_list_in_state_filters_by_expiry(store, clock):
    soon = new_intent(store, clock, order="O1", minutes=5)
    later = new_intent(store, clock, order="O2", minutes=30)
    for intent, provider_id in ((soon, "ORDE_1"), (later, "ORDE_2")):
        store.update_state(intent.id, IntentState.CREATED, IntentState.AWAITING_PAYMENT, provider_id=provider_id)

    assert [i.id for i in store.list_in_state(IntentState.AWAITING_PAYMENT)] == [soon.id, later.id]
    cutoff = clock() + timedelta(minutes=10)
    assert [i.id for i in store.list_in_state(IntentState.AWAITING_PAYMENT, expired_before=cutoff)] == [soon.id]


def test_callback_queue(store):
    callback = store.enqueue_callback("O1", "order_paid", None, "host down")

    assert [c.id for c in store.pending_callbacks()] == [callback.id]

    store.mark_callback_failed(callback.id, "still down")
    assert store.pending_callbacks()[0].attempts == 2
    assert store.pending_callbacks()[0].last_error == "still down"

    store.mark_callback_delivered(callback.id)
    assert store.pending_callbacks() == []


def test_one_active_intent_per_order(store, clock):
    first = new_intent(store, clock)
    clock.advance(seconds=1)

    again = store.create("O1", 7000, clock() + timedelta(minutes=15), idempotency_key="O1-other-key")

    assert again.id == first.id
    assert again.amount == 5000
    assert [i.id for i in store.list_by_order("O1")] == [first.id]

    store.update_state(first.id, IntentState.CREATED, IntentState.FAILED)
    replacement = store.create("O1", 7000, clock() + timedelta(minutes=15), idempotency_key="O1-other-key")
    assert replacement.id != first.id
    assert replacement.state is IntentState.CREATED


def test_provider_id_belongs_to_one_intent(store, clock):
    first = new_intent(store, clock, order="O1")
    second = new_intent(store, clock, order="O2")
    store.update_state(first.id, IntentState.CREATED, IntentState.AWAITING_PAYMENT, provider_id="ORDE_1")

    with pytest.raises(Conflict):
        store.update_state(second.id, IntentState.CREATED, IntentState.AWAITING_PAYMENT, provider_id="ORDE_1")

    assert store.get_by_id(second.id).state is IntentState.CREATED
    assert store.get_by_provider_id("ORDE_1").id == first.id


def test_list_in_state_filters_by_last_update(store, clock):
    old = new_intent(store, clock, order="O1")
    clock.advance(minutes=5)
    recent = new_intent(store, clock, order="O2")

    cutoff = clock() - timedelta(minutes=1)
    assert [i.id for i in store.list_in_state(IntentState.CREATED, updated_before=cutoff)] == [old.id]
    assert [i.id for i in store.list_in_state(IntentState.CREATED)] == [old.id, recent.id]
