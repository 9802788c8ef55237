"""
Custody / pricing state machine against the in-memory ledger
"""
import asyncio
from datetime import date

import pytest

from conftest import CONSUMER, DISTRIBUTOR, FARMER, RELAYER, RETAILER, STRANGER
from services.custody import (
    Caller,
    HolderRole,
    decode_inline_metadata,
    holder_role,
    next_role,
    resolve_min_price,
)
from services.errors import (
    InvalidLedgerTarget,
    LedgerReadFailed,
    NotFound,
    TransitionDenied,
    ValidationFailed,
    WriteRejected,
)
from services.ledger import Capability, PriceRole
from services.memory_ledger import InMemoryLedger
from utils import date_to_epoch


def _transfers(ledger):
    return [w for w in ledger.writes if w[0] == "transferOwnership"]


def test_register_reference_batch(custody, ledger, register_tomatoes):
    result = asyncio.run(register_tomatoes())

    assert result.batch_id == 1
    batch = ledger.batches[1]
    assert batch.current_owner == batch.farmer
    assert batch.harvest_date == date_to_epoch(date(2025, 9, 1))
    assert resolve_min_price(batch) == 5000
    assert holder_role(batch) is HolderRole.FARMER


def test_register_stores_inline_metadata_when_no_cid(ledger, register_tomatoes):
    asyncio.run(register_tomatoes(min_price_inr=4500))

    meta = decode_inline_metadata(ledger.batches[1].metadata_cid)
    assert meta["cropType"] == "Tomatoes"
    assert meta["basePriceINR"] == "5000"
    assert meta["minPriceINR"] == "4500"
    assert ledger.batches[1].min_price_inr == 4500


def test_register_for_farmer(ledger, register_tomatoes):
    result = asyncio.run(register_tomatoes(farmer=FARMER, metadata_cid="bafy-test"))

    assert result.used_fallback is False
    assert ledger.batches[1].farmer == FARMER
    assert ledger.batches[1].current_owner == FARMER
    assert ledger.batches[1].metadata_cid == "bafy-test"


def test_register_for_farmer_falls_back_on_older_deployments(register_tomatoes, custody):
    ledger = InMemoryLedger(signer=RELAYER, supports_register_for=False)
    custody.ledger = ledger

    result = asyncio.run(register_tomatoes(farmer=FARMER))

    assert result.used_fallback is True
    assert ledger.batches[1].current_owner == FARMER


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"crop_type": "  "}, "missing_crop_type"),
        ({"quantity_kg": 0}, "invalid_quantity"),
        ({"base_price_inr": -1}, "invalid_base_price"),
        ({"harvest_date": 0}, "invalid_harvest_date"),
        ({"min_price_inr": 0}, "invalid_min_price"),
        ({"farmer": "0x123"}, "invalid_farmer_address"),
    ],
)
def test_register_rejects_bad_input_before_any_write(ledger, register_tomatoes, overrides, code):
    with pytest.raises(ValidationFailed, match=code):
        asyncio.run(register_tomatoes(**overrides))
    assert ledger.writes == []


def test_register_refuses_undeployed_contract(ledger, register_tomatoes):
    ledger.deployed = False
    with pytest.raises(InvalidLedgerTarget, match="not_a_contract"):
        asyncio.run(register_tomatoes())


def test_holder_moves_batch_one_step_forward(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        return await custody.transfer(1, DISTRIBUTOR, Caller(RELAYER))

    outcome = asyncio.run(scenario())

    assert outcome.changed
    batch = ledger.batches[1]
    assert batch.current_owner == DISTRIBUTOR
    assert holder_role(batch) is HolderRole.DISTRIBUTOR
    assert batch.bought_by_distributor_at > 0


def test_holder_cannot_skip_a_role(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        await custody.transfer(1, RETAILER, Caller(RELAYER))

    with pytest.raises(TransitionDenied):
        asyncio.run(scenario())
    assert ledger.batches[1].current_owner == RELAYER


def test_transfer_by_stranger_is_denied_without_state_change(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes(farmer=FARMER)
        await custody.transfer(1, DISTRIBUTOR, Caller(STRANGER))

    with pytest.raises(TransitionDenied):
        asyncio.run(scenario())
    assert ledger.batches[1].current_owner == FARMER
    assert _transfers(ledger) == []


def test_self_capability_cannot_be_escalated(custody, register_tomatoes):
    async def scenario():
        await register_tomatoes(farmer=FARMER)
        await custody.transfer(1, CONSUMER, Caller(FARMER), Capability.PRIVILEGED_TRANSFER)

    with pytest.raises(TransitionDenied):
        asyncio.run(scenario())


def test_holder_transfer_is_relayed_for_external_wallets(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes(farmer=FARMER)
        return await custody.transfer(1, DISTRIBUTOR, Caller(FARMER))

    asyncio.run(scenario())

    assert ledger.batches[1].current_owner == DISTRIBUTOR
    assert _transfers(ledger)[-1][3] == Capability.PRIVILEGED_TRANSFER.value


def test_consumer_is_terminal_for_holders(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes(farmer=FARMER)
        await custody.transfer(1, CONSUMER, Caller.verifier(RELAYER), Capability.PRIVILEGED_TRANSFER)
        await custody.transfer(1, FARMER, Caller(CONSUMER))

    with pytest.raises(TransitionDenied, match="no forward transfer"):
        asyncio.run(scenario())
    assert ledger.batches[1].current_owner == CONSUMER


def test_transfer_to_current_owner_is_a_no_op(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        verifier = Caller.verifier(RELAYER)
        first = await custody.transfer(1, DISTRIBUTOR, verifier, Capability.PRIVILEGED_TRANSFER)
        second = await custody.transfer(1, DISTRIBUTOR, verifier, Capability.PRIVILEGED_TRANSFER)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.changed and not second.changed
    assert len(_transfers(ledger)) == 1


def test_bought_by_timestamps_are_set_once(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        verifier = Caller.verifier(RELAYER)
        await custody.transfer(1, DISTRIBUTOR, verifier, Capability.PRIVILEGED_TRANSFER)
        ledger.batches[1].bought_by_distributor_at = 1_700_000_000
        await custody.transfer(1, RETAILER, verifier, Capability.PRIVILEGED_TRANSFER)
        await custody.transfer(1, DISTRIBUTOR, verifier, Capability.PRIVILEGED_TRANSFER)

    asyncio.run(scenario())

    batch = ledger.batches[1]
    assert batch.current_owner == DISTRIBUTOR
    assert batch.bought_by_distributor_at == 1_700_000_000
    assert batch.bought_by_retailer_at > 0


def test_privileged_transfer_rejected_by_ledger_when_relayer_is_not_verifier(custody, ledger, register_tomatoes):
    ledger.verifiers.clear()

    async def scenario():
        await register_tomatoes()
        await custody.transfer(1, CONSUMER, Caller.verifier(RELAYER), Capability.PRIVILEGED_TRANSFER)

    with pytest.raises(WriteRejected):
        asyncio.run(scenario())


def test_transfer_unknown_batch(custody):
    with pytest.raises(NotFound):
        asyncio.run(custody.transfer(42, DISTRIBUTOR, Caller.verifier(RELAYER), Capability.PRIVILEGED_TRANSFER))


def test_read_failure_is_not_reported_as_missing_batch(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        ledger.unreadable.add(1)
        await custody.set_price(1, PriceRole.FLOOR, 4000, Caller.verifier(RELAYER))

    with pytest.raises(LedgerReadFailed):
        asyncio.run(scenario())
    assert not [w for w in ledger.writes if w[0] == "setPrice"]


def test_transfer_rejects_malformed_destination(custody, ledger):
    with pytest.raises(ValidationFailed, match="invalid_to_address"):
        asyncio.run(custody.transfer(1, "not-an-address", Caller(RELAYER)))
    assert ledger.writes == []


def test_role_holder_sets_own_price_once(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        first = await custody.set_price(1, PriceRole.DISTRIBUTOR, 6000, Caller(DISTRIBUTOR))
        second = await custody.set_price(1, PriceRole.DISTRIBUTOR, 6000, Caller(DISTRIBUTOR))
        return first, second

    first, second = asyncio.run(scenario())

    assert first.changed and not second.changed
    assert ledger.batches[1].price_by_distributor_inr == 6000
    assert len([w for w in ledger.writes if w[0] == "setPrice"]) == 1


def test_price_set_by_wrong_role_is_denied(custody, ledger, register_tomatoes):
    async def scenario():
        await register_tomatoes()
        await custody.set_price(1, PriceRole.RETAILER, 7000, Caller(DISTRIBUTOR))

    with pytest.raises(TransitionDenied):
        asyncio.run(scenario())
    assert ledger.batches[1].price_by_retailer_inr == 0


def test_price_must_be_positive(custody, register_tomatoes):
    with pytest.raises(ValidationFailed, match="invalid_price"):
        asyncio.run(custody.set_price(1, PriceRole.FLOOR, 0, Caller.verifier(RELAYER)))


def test_next_role_order():
    assert next_role(HolderRole.FARMER) is HolderRole.DISTRIBUTOR
    assert next_role(HolderRole.RETAILER) is HolderRole.CONSUMER
    assert next_role(HolderRole.CONSUMER) is None
    assert next_role(HolderRole.UNKNOWN) is None


def test_unknown_holder(ledger, register_tomatoes):
    asyncio.run(register_tomatoes(farmer=FARMER))
    ledger.batches[1].current_owner = STRANGER
    assert holder_role(ledger.batches[1]) is HolderRole.UNKNOWN
