import json
import asyncio
from typing import Dict, List, Optional, Any
from web3 import Web3
from web3.logs import DISCARD
from eth_account import Account
import logging
import time

from config import settings
from services.errors import LedgerReadFailed, RelayerNotConfigured, WriteRejected
from services.ledger import (
    BatchRecord,
    Capability,
    PriceRole,
    RegistrationEvent,
    RegistrationReceipt,
    batch_from_tuple,
)
from utils import is_valid_address

logger = logging.getLogger(__name__)

PRICE_FUNCTIONS = {
    PriceRole.FLOOR: "setMinPriceInr",
    PriceRole.DISTRIBUTOR: "setPriceByDistributorInr",
    PriceRole.RETAILER: "setPriceByRetailerInr",
}

TRANSFER_FUNCTIONS = {
    Capability.SELF_TRANSFER: "transferOwnership",
    Capability.PRIVILEGED_TRANSFER: "transferOwnershipByVerifier",
}


def _normalize_key(key: str) -> str:
    return key if key.startswith("0x") else "0x" + key


class BlockchainService:
    """Ledger client backed by the deployed AgriTruthChain contract.

    All writes are signed by the relayer key; ``set_verifier`` is signed by the contract owner.
    """

    def __init__(self):
        self.w3: Optional[Web3] = None
        self.contract = None
        self.contract_address: str = settings.CONTRACT_ADDRESS
        self.relayer_account = None
        self.owner_account = None
        # Bytecode presence cache
        self._cache = {}
        self._cache_ttl = settings.CODE_CHECK_TTL_SECONDS
        # Serializes nonce allocation per process
        self._write_lock = asyncio.Lock()

    def _get_cached(self, key: str) -> Optional[Any]:
        """Get cached value if not expired"""
        if key in self._cache:
            value, timestamp = self._cache[key]
            if time.time() - timestamp < self._cache_ttl:
                return value
            else:
                del self._cache[key]
        return None

    def _set_cache(self, key: str, value: Any):
        """Set cache value with timestamp"""
        self._cache[key] = (value, time.time())

    @property
    def relayer_address(self) -> Optional[str]:
        return self.relayer_account.address if self.relayer_account else None

    @property
    def owner_address(self) -> Optional[str]:
        return self.owner_account.address if self.owner_account else None

    @property
    def can_write(self) -> bool:
        return self.relayer_account is not None

    async def initialize(self):
        """Initialize RPC connection, signers and contract"""
        try:
            self.w3 = Web3(Web3.HTTPProvider(settings.RPC_URL))

            if settings.RELAYER_PRIVATE_KEY:
                self.relayer_account = Account.from_key(_normalize_key(settings.RELAYER_PRIVATE_KEY))
                logger.info(f"Relayer configured: {self.relayer_account.address}")
            else:
                logger.warning("Relayer not configured. Set RELAYER_PRIVATE_KEY in .env")

            if settings.OWNER_PRIVATE_KEY:
                self.owner_account = Account.from_key(_normalize_key(settings.OWNER_PRIVATE_KEY))

            await self._load_contract()

            logger.info(f"Network: {settings.NETWORK_NAME} (chainId={settings.CHAIN_ID})")
            logger.info(f"RPC: {settings.RPC_URL}")
            if self.relayer_account and self.contract_address.lower() == self.relayer_account.address.lower():
                logger.warning(
                    "Contract address equals relayer address (EOA). "
                    "Update CONTRACT_ADDRESS to the deployed contract address."
                )

        except Exception as e:
            logger.error(f"Failed to initialize blockchain service: {e}")
            raise

    async def _load_contract(self):
        """Load smart contract ABI and create contract instance"""
        try:
            with open(settings.CONTRACT_ABI_PATH, 'r') as f:
                contract_data = json.load(f)

            if 'abi' in contract_data:
                abi = contract_data['abi']
            else:
                abi = contract_data

            if not is_valid_address(self.contract_address):
                # Keep serving diagnostics; every ledger call will fail with InvalidLedgerTarget
                logger.error(f"Invalid contract address: {self.contract_address}")
                return

            self.contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address),
                abi=abi
            )

            logger.info(f"Contract loaded at address: {self.contract_address}")

        except Exception as e:
            logger.error(f"Failed to load contract: {e}")
            raise

    async def check_connection(self) -> bool:
        """Check if RPC connection is healthy"""
        try:
            latest_block = self.w3.eth.get_block('latest')
            return latest_block is not None
        except Exception as e:
            logger.error(f"Blockchain connection check failed: {e}")
            return False

    async def block_number(self) -> Optional[int]:
        try:
            return self.w3.eth.block_number
        except Exception as e:
            logger.warning(f"Could not read block number: {e}")
            return None

    async def probe_deployed(self, address: Optional[str] = None) -> bool:
        """Return True when the address has contract bytecode (cached for the configured TTL)."""
        target = address or self.contract_address
        if not is_valid_address(target):
            return False
        cache_key = f"code:{target.lower()}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached
        try:
            code = self.w3.eth.get_code(Web3.to_checksum_address(target))
        except Exception as e:
            logger.warning(f"Bytecode probe failed for {target}: {e}")
            return False
        has_code = bool(code)
        self._set_cache(cache_key, has_code)
        return has_code

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _require_contract(self):
        if self.contract is None:
            raise LedgerReadFailed("contract not loaded")
        return self.contract

    async def read_batch(self, batch_id: int) -> BatchRecord:
        contract = self._require_contract()
        try:
            raw = contract.functions.batches(batch_id).call()
            return batch_from_tuple(raw)
        except Exception as e:
            raise LedgerReadFailed(f"batches({batch_id}) failed: {e}") from e

    async def read_all_ids(self) -> List[int]:
        contract = self._require_contract()
        try:
            return [int(batch_id) for batch_id in contract.functions.getAllBatchIds().call()]
        except Exception as e:
            raise LedgerReadFailed(f"getAllBatchIds failed: {e}") from e

    async def read_registration_events(self, batch_id: Optional[int] = None) -> List[RegistrationEvent]:
        contract = self._require_contract()
        filters = {'batchId': batch_id} if batch_id is not None else None
        try:
            # Stateless log queries avoid filter-id eviction on public RPC nodes
            logs = contract.events.BatchRegistered().get_logs(
                from_block=settings.EVENT_FROM_BLOCK,
                to_block='latest',
                argument_filters=filters,
            )
        except Exception as e:
            raise LedgerReadFailed(f"BatchRegistered log query failed: {e}") from e

        events = []
        block_times: Dict[int, int] = {}
        for log in logs:
            args = log['args']
            block_number = int(log.get('blockNumber') or 0)
            if block_number and block_number not in block_times:
                try:
                    block_times[block_number] = int(self.w3.eth.get_block(block_number)['timestamp'])
                except Exception as e:
                    logger.warning(f"Could not read block {block_number}: {e}")
                    block_times[block_number] = 0
            events.append(RegistrationEvent(
                batch_id=int(args['batchId']),
                farmer=args.get('farmer') or "",
                crop_type=args.get('cropType') or "",
                quantity_kg=int(args.get('quantityKg') or 0),
                base_price_inr=int(args.get('basePriceINR') or 0),
                harvest_date=int(args.get('harvestDate') or 0),
                metadata_cid=args.get('metadataCID') or "",
                block_number=block_number,
                timestamp=block_times.get(block_number, 0),
            ))
        return events

    async def is_verifier(self, account: str) -> bool:
        contract = self._require_contract()
        try:
            return bool(contract.functions.verifiers(Web3.to_checksum_address(account)).call())
        except Exception as e:
            raise LedgerReadFailed(f"verifiers({account}) failed: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _send_transaction_sync(self, transaction_data: Dict, account) -> Any:
        """Sign, send and wait for a transaction; returns the receipt."""
        nonce = self.w3.eth.get_transaction_count(account.address, 'pending')

        transaction = {
            'from': account.address,
            'nonce': nonce,
            'chainId': settings.CHAIN_ID,
        }
        transaction.update(transaction_data)

        try:
            estimated_gas = self.w3.eth.estimate_gas(transaction)
            gas_with_buffer = min(int(estimated_gas * settings.GAS_ESTIMATION_BUFFER), settings.GAS_LIMIT)
            transaction['gas'] = gas_with_buffer
            logger.info(f"Estimated gas: {estimated_gas}, Using: {gas_with_buffer} (buffer: {settings.GAS_ESTIMATION_BUFFER}x)")
        except Exception as gas_error:
            # A revert shows up here first; surface it instead of paying for a failing tx
            raise WriteRejected(f"gas estimation failed: {gas_error}") from gas_error

        try:
            latest_block = self.w3.eth.get_block('latest')
            base_fee = latest_block.get('baseFeePerGas', 0)
            try:
                max_priority_fee = self.w3.eth.max_priority_fee
            except Exception:
                max_priority_fee = self.w3.eth.gas_price
            transaction['maxFeePerGas'] = base_fee * 2 + max_priority_fee
            transaction['maxPriorityFeePerGas'] = max_priority_fee
        except Exception as fee_error:
            logger.warning(f"EIP-1559 not available, using legacy transaction: {fee_error}")
            for key in ['maxFeePerGas', 'maxPriorityFeePerGas']:
                transaction.pop(key, None)
            transaction['gasPrice'] = self.w3.eth.gas_price

        signed_txn = self.w3.eth.account.sign_transaction(transaction, account.key)
        tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=settings.RECEIPT_TIMEOUT_SECONDS)
        if receipt.status != 1:
            raise WriteRejected(f"Transaction reverted: {Web3.to_hex(tx_hash)}")

        logger.info(f"Transaction successful: {Web3.to_hex(tx_hash)} (gas used: {receipt.gasUsed})")
        return receipt

    async def _send_transaction(self, function_call, account=None) -> Any:
        account = account or self.relayer_account
        if account is None:
            raise RelayerNotConfigured("relayer_not_configured")
        contract = self._require_contract()
        transaction_data = {
            'to': contract.address,
            'data': function_call._encode_transaction_data(),
        }
        async with self._write_lock:
            try:
                return await asyncio.to_thread(self._send_transaction_sync, transaction_data, account)
            except WriteRejected:
                raise
            except Exception as e:
                logger.error(f"Transaction failed: {e}")
                raise WriteRejected(str(e)) from e

    def _batch_id_from_receipt(self, receipt) -> Optional[int]:
        events = self.contract.events.BatchRegistered().process_receipt(receipt, errors=DISCARD)
        for event in events:
            if event['address'].lower() != self.contract_address.lower():
                continue
            return int(event['args']['batchId'])
        return None

    async def register_batch(
        self,
        crop_type: str,
        quantity_kg: int,
        base_price_inr: int,
        harvest_date: int,
        metadata_cid: str,
        farmer: Optional[str] = None,
    ) -> RegistrationReceipt:
        """Register a batch; for an explicit farmer fall back to registerBatch + transfer on older deployments."""
        contract = self._require_contract()
        simple_args = (crop_type, quantity_kg, base_price_inr, harvest_date, metadata_cid)
        used_fallback = False

        if farmer:
            try:
                receipt = await self._send_transaction(
                    contract.functions.registerBatchFor(Web3.to_checksum_address(farmer), *simple_args)
                )
            except WriteRejected as e:
                logger.warning(f"registerBatchFor rejected, falling back to registerBatch: {e}")
                used_fallback = True
                receipt = await self._send_transaction(contract.functions.registerBatch(*simple_args))
        else:
            receipt = await self._send_transaction(contract.functions.registerBatch(*simple_args))

        batch_id = self._batch_id_from_receipt(receipt)
        tx_hash = Web3.to_hex(receipt.transactionHash)
        logger.info(f"Batch {batch_id} registered ({crop_type}, {quantity_kg} kg) tx={tx_hash}")

        if used_fallback and batch_id is not None:
            try:
                await self.transfer_ownership(batch_id, farmer, Capability.SELF_TRANSFER)
            except WriteRejected as e:
                logger.warning(f"Fallback transferOwnership to farmer failed for batch {batch_id}: {e}")

        return RegistrationReceipt(batch_id=batch_id, tx_hash=tx_hash, used_fallback=used_fallback)

    async def transfer_ownership(self, batch_id: int, to: str, capability: Capability) -> str:
        contract = self._require_contract()
        function_name = TRANSFER_FUNCTIONS[capability]
        function_call = getattr(contract.functions, function_name)(batch_id, Web3.to_checksum_address(to))
        receipt = await self._send_transaction(function_call)
        tx_hash = Web3.to_hex(receipt.transactionHash)
        logger.info(f"Batch {batch_id} transferred to {to} via {function_name} tx={tx_hash}")
        return tx_hash

    async def set_price(self, batch_id: int, role: PriceRole, amount: int) -> str:
        contract = self._require_contract()
        function_name = PRICE_FUNCTIONS[role]
        receipt = await self._send_transaction(getattr(contract.functions, function_name)(batch_id, amount))
        tx_hash = Web3.to_hex(receipt.transactionHash)
        logger.info(f"Batch {batch_id} {role.value} price set to {amount} INR tx={tx_hash}")
        return tx_hash

    async def set_verifier(self, account: str, allowed: bool) -> str:
        if self.owner_account is None:
            raise RelayerNotConfigured("owner_not_configured")
        contract = self._require_contract()
        receipt = await self._send_transaction(
            contract.functions.setVerifier(Web3.to_checksum_address(account), allowed),
            account=self.owner_account,
        )
        tx_hash = Web3.to_hex(receipt.transactionHash)
        logger.info(f"Verifier {account} set to {allowed} tx={tx_hash}")
        return tx_hash
