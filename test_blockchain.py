"""
Web3 ledger client: tuple decoding, bytecode probe cache and function routing (no RPC needed)
"""
import asyncio
from types import SimpleNamespace

import pytest

from blockchain import BlockchainService
from conftest import DISTRIBUTOR, FARMER
from services.errors import LedgerReadFailed, RelayerNotConfigured
from services.ledger import ZERO_ADDRESS, Capability, PriceRole, batch_from_tuple

FULL_TUPLE = (
    7, FARMER, FARMER, ZERO_ADDRESS, ZERO_ADDRESS, ZERO_ADDRESS, "Tomatoes", 100, 5000,
    1756684800, "bafy", 1756700000, True, 4500, 0, 0, 0, 0, 0, 1, DISTRIBUTOR, 1756710000,
)


class _Call:
    def __init__(self, name, args, result=None, error=None):
        self.name = name
        self.args = args
        self._result = result
        self._error = error

    def call(self):
        if self._error:
            raise self._error
        return self._result


class FakeFunctions:
    def __init__(self, batches=None, error=None):
        self._batches = batches or {}
        self._error = error

    def batches(self, batch_id):
        return _Call("batches", (batch_id,), self._batches.get(batch_id), self._error)

    def __getattr__(self, name):
        return lambda *args: _Call(name, args)


class FakeEth:
    def __init__(self, code=b"\x60\x80"):
        self.code = code
        self.code_calls = 0

    def get_code(self, address):
        self.code_calls += 1
        return self.code


def test_full_tuple_maps_to_named_fields():
    record = batch_from_tuple(FULL_TUPLE)

    assert record.id == 7
    assert record.crop_type == "Tomatoes"
    assert record.exists is True
    assert record.min_price_inr == 4500
    assert record.verification_status == 1
    assert record.verification_by == DISTRIBUTOR


def test_legacy_tuple_keeps_trailing_defaults():
    record = batch_from_tuple(FULL_TUPLE[:13])

    assert record.min_price_inr == 0
    assert record.bought_by_consumer_at == 0


def test_truncated_tuple_is_rejected():
    with pytest.raises(ValueError):
        batch_from_tuple(FULL_TUPLE[:5])


def test_read_batch_wraps_contract_errors():
    service = BlockchainService()
    service.contract = SimpleNamespace(functions=FakeFunctions(error=RuntimeError("execution reverted")))

    with pytest.raises(LedgerReadFailed):
        asyncio.run(service.read_batch(1))


def test_read_batch_without_contract():
    with pytest.raises(LedgerReadFailed, match="contract not loaded"):
        asyncio.run(BlockchainService().read_batch(1))


def test_read_batch_decodes_struct():
    service = BlockchainService()
    service.contract = SimpleNamespace(functions=FakeFunctions(batches={7: FULL_TUPLE}))

    record = asyncio.run(service.read_batch(7))

    assert record.farmer == FARMER
    assert record.harvest_date == 1756684800


def test_bytecode_probe_is_cached():
    service = BlockchainService()
    eth = FakeEth()
    service.w3 = SimpleNamespace(eth=eth)
    target = "0x5fbdb2315678afecb367f032d93f642f64180aa3"

    assert asyncio.run(service.probe_deployed(target)) is True
    assert asyncio.run(service.probe_deployed(target)) is True
    assert eth.code_calls == 1


def test_probe_rejects_malformed_address():
    service = BlockchainService()
    service.w3 = SimpleNamespace(eth=FakeEth())
    assert asyncio.run(service.probe_deployed("0x1234")) is False


def test_writes_require_a_relayer():
    service = BlockchainService()
    service.contract = SimpleNamespace(functions=FakeFunctions(), address=ZERO_ADDRESS)

    with pytest.raises(RelayerNotConfigured):
        asyncio.run(service.set_price(1, PriceRole.FLOOR, 100))


@pytest.mark.parametrize(
    "call, expected",
    [
        (lambda s: s.transfer_ownership(1, DISTRIBUTOR, Capability.SELF_TRANSFER), "transferOwnership"),
        (lambda s: s.transfer_ownership(1, DISTRIBUTOR, Capability.PRIVILEGED_TRANSFER), "transferOwnershipByVerifier"),
        (lambda s: s.set_price(1, PriceRole.FLOOR, 100), "setMinPriceInr"),
        (lambda s: s.set_price(1, PriceRole.DISTRIBUTOR, 100), "setPriceByDistributorInr"),
        (lambda s: s.set_price(1, PriceRole.RETAILER, 100), "setPriceByRetailerInr"),
    ],
)
def test_writes_route_to_contract_functions(call, expected):
    service = BlockchainService()
    service.contract = SimpleNamespace(functions=FakeFunctions())
    sent = []

    async def fake_send(function_call, account=None):
        sent.append(function_call.name)
        return SimpleNamespace(transactionHash=b"\x01" * 32)

    service._send_transaction = fake_send

    tx_hash = asyncio.run(call(service))

    assert sent == [expected]
    assert tx_hash == "0x" + "01" * 32
