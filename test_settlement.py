"""
Payment settlement: idempotent push deliveries, forced pull confirmations, signal validation
"""
import asyncio

import pytest

from conftest import CONSUMER, DISTRIBUTOR, RELAYER, RETAILER
from services.errors import SignalRejected, WriteRejected
from services.ledger import PriceRole
from services.payments import signal_from_order
from services.settlement import (
    FileSessionTracker,
    SessionState,
    SettlementReconciler,
    SettlementStatus,
    SignalSource,
    build_signal,
)


def _count(ledger, name):
    return len([w for w in ledger.writes if w[0] == name])


def test_concurrent_duplicate_webhooks_transfer_once(ledger, reconciler, register_tomatoes):
    signal = build_signal("s1", "1", "distributor", DISTRIBUTOR)

    async def scenario():
        await register_tomatoes()
        return await asyncio.gather(reconciler.settle(signal), reconciler.settle(signal))

    outcomes = asyncio.run(scenario())

    statuses = sorted(o.status.value for o in outcomes)
    assert SettlementStatus.SETTLED.value in statuses
    assert set(statuses) - {SettlementStatus.SETTLED.value} <= {
        SettlementStatus.SKIPPED.value, SettlementStatus.IN_PROGRESS.value,
    }
    assert _count(ledger, "transferOwnership") == 1
    assert ledger.batches[1].current_owner == DISTRIBUTOR
    assert ledger.batches[1].bought_by_distributor_at != 0


def test_redelivered_webhook_is_skipped(ledger, reconciler, tracker, register_tomatoes):
    signal = build_signal("s1", 1, "distributor", DISTRIBUTOR)

    async def scenario():
        await register_tomatoes()
        first = await reconciler.settle(signal)
        second = await reconciler.settle(signal)
        return first, second, await tracker.state("s1")

    first, second, state = asyncio.run(scenario())

    assert first.status is SettlementStatus.SETTLED
    assert first.transfer_tx is not None
    assert second.status is SettlementStatus.SKIPPED
    assert state is SessionState.PROCESSED
    assert _count(ledger, "transferOwnership") == 1


def test_mixed_push_and_pull_converge_on_one_transfer(ledger, reconciler, register_tomatoes):
    push = build_signal("s1", 1, "distributor", DISTRIBUTOR)
    pull = build_signal("s1", 1, "distributor", DISTRIBUTOR, source=SignalSource.PULL)

    async def scenario():
        await register_tomatoes()
        return await asyncio.gather(
            reconciler.settle(pull), reconciler.settle(push), reconciler.settle(pull)
        )

    outcomes = asyncio.run(scenario())

    assert _count(ledger, "transferOwnership") == 1
    assert ledger.batches[1].current_owner == DISTRIBUTOR
    assert sum(1 for o in outcomes if o.transfer_tx) == 1


def test_pull_is_not_gated_by_processed_marker(ledger, reconciler, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        await reconciler.settle(build_signal("s1", 1, "distributor", DISTRIBUTOR))
        return await reconciler.settle(
            build_signal("s1", 1, "retailer", RETAILER, source=SignalSource.PULL)
        )

    outcome = asyncio.run(scenario())

    assert outcome.status is SettlementStatus.SETTLED
    assert ledger.batches[1].current_owner == RETAILER


def test_matching_price_is_not_rewritten(ledger, reconciler, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        ledger.batches[1].price_by_retailer_inr = 1500
        return await reconciler.settle(build_signal("s2", 1, "retailer", None, price="1500"))

    outcome = asyncio.run(scenario())

    assert outcome.status is SettlementStatus.SETTLED
    assert outcome.price_tx is None
    assert _count(ledger, "setPrice") == 0
    assert ledger.batches[1].current_owner == RETAILER


def test_downstream_price_is_set_for_distributor(ledger, reconciler, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        return await reconciler.settle(build_signal("s3", 1, "distributor", None, price="6500"))

    outcome = asyncio.run(scenario())

    assert outcome.price_tx is not None
    assert ledger.batches[1].price_by_distributor_inr == 6500


def test_push_logs_write_failures_and_marks_processed(ledger, reconciler, tracker, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        ledger.verifiers.clear()
        outcome = await reconciler.settle(build_signal("s4", 1, "distributor", None))
        return outcome, await tracker.state("s4")

    outcome, state = asyncio.run(scenario())

    assert outcome.status is SettlementStatus.SETTLED
    assert outcome.transfer_tx is None
    assert outcome.message.startswith("transfer_failed")
    assert state is SessionState.PROCESSED
    assert ledger.batches[1].current_owner == RELAYER


def test_pull_surfaces_write_failures(ledger, reconciler, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        ledger.verifiers.clear()
        await reconciler.settle(build_signal("s5", 1, "distributor", None, source=SignalSource.PULL))

    with pytest.raises(WriteRejected):
        asyncio.run(scenario())


def test_push_with_unusable_ledger_is_deferred(ledger, reconciler, tracker, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        ledger.deployed = False
        outcome = await reconciler.settle(build_signal("s6", 1, "consumer", None))
        return outcome, await tracker.state("s6")

    outcome, state = asyncio.run(scenario())

    assert outcome.status is SettlementStatus.DEFERRED
    assert outcome.message == "not_a_contract"
    assert state is SessionState.PROCESSED
    assert ledger.batches[1].current_owner == RELAYER


def test_price_failure_does_not_undo_transfer(ledger, custody, tracker, register_tomatoes):
    async def failing_set_price(*args, **kwargs):
        raise WriteRejected("out of gas")

    reconciler = SettlementReconciler(custody, tracker)

    async def scenario():
        await register_tomatoes()
        ledger.set_price = failing_set_price
        return await reconciler.settle(
            build_signal("s7", 1, "distributor", None, price=7000, source=SignalSource.PULL)
        )

    outcome = asyncio.run(scenario())

    assert outcome.transfer_tx is not None
    assert outcome.price_tx is None
    assert ledger.batches[1].current_owner == DISTRIBUTOR


def test_build_signal_defaults_destination_by_role():
    assert build_signal("s", 1, "distributor").destination == DISTRIBUTOR
    assert build_signal("s", 1, "retailer").destination == RETAILER
    assert build_signal("s", 1, "consumer").destination == CONSUMER
    assert build_signal("s", 1, None).destination == DISTRIBUTOR


def test_build_signal_price_only_for_roles_that_set_one():
    assert build_signal("s", 1, "distributor", price="900").price == 900
    assert build_signal("s", 1, "consumer", price="900").price is None
    assert build_signal("s", 1, "retailer", price="").price is None


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"session_id": "", "batch_id": 1, "role": "distributor"}, "invalid_session"),
        ({"session_id": "s", "batch_id": "abc", "role": "distributor"}, "invalid_batch_id"),
        ({"session_id": "s", "batch_id": 1, "role": "distributor", "to_address": "0xnope"}, "invalid_to_address"),
    ],
)
def test_build_signal_rejects_malformed_input(kwargs, code):
    with pytest.raises(SignalRejected, match=code):
        build_signal(**kwargs)


@pytest.mark.parametrize("price", ["1.5k", "6500.00"])
def test_build_signal_drops_unparseable_price(price):
    signal = build_signal("s", 1, "distributor", price=price)
    assert signal.price is None
    assert signal.destination == DISTRIBUTOR


def test_paid_order_with_bad_price_note_still_transfers(ledger, reconciler, register_tomatoes):
    order = {
        "id": "order_77",
        "status": "paid",
        "notes": {"batchId": "1", "role": "distributor", "distributorPriceINR": "6500.00"},
    }

    async def scenario():
        await register_tomatoes()
        return await reconciler.settle(signal_from_order(order, SignalSource.PUSH))

    outcome = asyncio.run(scenario())

    assert outcome.status is SettlementStatus.SETTLED
    assert outcome.price_tx is None
    assert ledger.batches[1].current_owner == DISTRIBUTOR
    assert not [w for w in ledger.writes if w[0] == "setPrice" and w[2] == PriceRole.DISTRIBUTOR.value]


def test_file_tracker_survives_restart(tmp_path):
    path = tmp_path / "settlement.json"

    async def first_process():
        tracker = FileSessionTracker(str(path))
        assert await tracker.begin("order_1") is SessionState.NEW
        await tracker.finish("order_1")

    async def second_process():
        tracker = FileSessionTracker(str(path))
        return await tracker.begin("order_1"), await tracker.begin("order_2")

    asyncio.run(first_process())
    processed, fresh = asyncio.run(second_process())

    assert processed is SessionState.PROCESSED
    assert fresh is SessionState.NEW


def test_price_roles_map_to_ledger_roles(ledger, reconciler, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        await reconciler.settle(build_signal("s8", 1, "retailer", None, price=1800))

    asyncio.run(scenario())

    assert ("setPrice", 1, PriceRole.RETAILER.value, 1800) in ledger.writes
