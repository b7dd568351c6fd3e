"""
Ledger client - the single capability interface to the EVM ledger.

Wraps web3's async JSON-RPC client: contract reads, signed transaction
submission, log retrieval and a polling subscription. Every failure is
classified as TransientRPCError (retry) or LedgerRevertError (the ledger
said no).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiohttp
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    BlockNotFound,
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)

from ..core.config import Settings
from ..core.exceptions import ConfigurationError, LedgerRevertError, TransientRPCError
from ..core.logging import get_logger
from .contracts import CONTRACT_ABIS


ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "already imported")
NONCE_TOO_LOW_MARKERS = ("nonce too low",)


@dataclass
class RawLog:
    """A log entry as returned by eth_getLogs, hex-normalised."""
    address: str
    topics: List[str]
    data: str
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    removed: bool = False

    @property
    def sort_key(self):
        return (self.block_number, self.log_index)

    @property
    def dedup_key(self):
        return (self.transaction_hash, self.log_index)


@dataclass
class LogBatch:
    """All logs of the closed block range [from_block, to_block]."""
    from_block: int
    to_block: int
    logs: List[RawLog] = field(default_factory=list)


@dataclass
class PreparedTransaction:
    """A signed transaction whose hash is known before broadcast."""
    contract: str
    method: str
    sender: str
    nonce: int
    raw_transaction: str
    tx_hash: str


class LedgerClient:
    """Async JSON-RPC adapter for the FamilyChain contracts."""

    def __init__(
        self,
        rpc_url: str,
        contracts: Dict[str, str],
        chain_id: int,
        request_timeout: float = 30.0,
        poll_interval: float = 2.0,
        confirmations: int = 0,
        max_block_range: int = 2000,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        logger=None,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.confirmations = confirmations
        self.max_block_range = max_block_range
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.logger = (logger or get_logger(__name__)).bind(service="ledger_client")

        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
            )
        )
        self.addresses = {
            name: to_checksum_address(address) for name, address in contracts.items()
        }
        self._contracts = {
            name: self.w3.eth.contract(address=address, abi=CONTRACT_ABIS[name])
            for name, address in self.addresses.items()
        }

        self._nonces: Dict[str, int] = {}
        self._nonce_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, logger=None) -> "LedgerClient":
        return cls(
            rpc_url=settings.ledger_rpc_url,
            contracts=settings.contract_addresses(),
            chain_id=settings.chain_id,
            request_timeout=settings.ledger_request_timeout,
            poll_interval=settings.poll_interval,
            confirmations=settings.confirmations,
            max_block_range=settings.max_block_range,
            retry_base_delay=settings.rpc_retry_base_delay,
            retry_max_delay=settings.rpc_retry_max_delay,
            logger=logger,
        )

    def _contract(self, name: str):
        try:
            return self._contracts[name]
        except KeyError:
            raise ConfigurationError(
                f"Contract {name} is not configured",
                {"configured": sorted(self._contracts)},
            )

    async def _guard(self, operation: str, awaitable):
        """Await an RPC call and classify its failure."""
        try:
            return await awaitable
        except ContractLogicError as e:
            raise LedgerRevertError(
                f"{operation} reverted: {e}",
                {"operation": operation, "data": getattr(e, "data", None)},
            ) from e
        except (
            Web3RPCError,
            TimeExhausted,
            BlockNotFound,
            aiohttp.ClientError,
            asyncio.TimeoutError,
            ConnectionError,
            OSError,
        ) as e:
            raise TransientRPCError(
                f"{operation} failed: {e}",
                {"operation": operation, "error_type": type(e).__name__},
            ) from e
        except Web3Exception as e:
            raise TransientRPCError(
                f"{operation} failed: {e}",
                {"operation": operation, "error_type": type(e).__name__},
            ) from e

    # Reads

    async def call(self, contract: str, method: str, args: Sequence[Any] = ()) -> Any:
        """Typed read-only contract call."""
        function = getattr(self._contract(contract).functions, method)(*args)
        return await self._guard(f"{contract}.{method}", function.call())

    async def get_chain_id(self) -> int:
        return await self._guard("eth_chainId", self.w3.eth.chain_id)

    async def get_block_number(self) -> int:
        return await self._guard("eth_blockNumber", self.w3.eth.block_number)

    async def get_block_hash(self, block_number: int) -> str:
        block = await self._guard("eth_getBlockByNumber", self.w3.eth.get_block(block_number))
        return Web3.to_hex(block["hash"])

    async def get_receipt_status(self, tx_hash: str) -> Optional[bool]:
        """True if mined successfully, False if reverted, None if unknown."""
        try:
            receipt = await self._guard(
                "eth_getTransactionReceipt",
                self.w3.eth.get_transaction_receipt(tx_hash),
            )
        except TransientRPCError as e:
            if isinstance(e.__cause__, TransactionNotFound):
                return None
            raise
        return receipt["status"] == 1

    # Logs

    async def fetch_logs(self, from_block: int, to_block: int) -> List[RawLog]:
        """Logs of all configured contracts in [from_block, to_block], ordered."""
        logs: List[RawLog] = []
        start = from_block
        while start <= to_block:
            end = min(start + self.max_block_range - 1, to_block)
            entries = await self._guard(
                "eth_getLogs",
                self.w3.eth.get_logs({
                    "fromBlock": start,
                    "toBlock": end,
                    "address": list(self.addresses.values()),
                }),
            )
            logs.extend(self._normalize_log(entry) for entry in entries)
            start = end + 1

        logs.sort(key=lambda log: log.sort_key)
        return logs

    async def subscribe(self, from_block: int) -> AsyncIterator[LogBatch]:
        """
        Yield complete, ordered block ranges from from_block onwards.

        Polls the head every poll_interval. Transient failures are retried
        with capped exponential backoff, so consumers only see progress.
        """
        next_block = from_block
        failures = 0

        while True:
            try:
                head = await self.get_block_number()
                safe_head = head - self.confirmations
                if safe_head < next_block:
                    await asyncio.sleep(self.poll_interval)
                    continue

                to_block = min(safe_head, next_block + self.max_block_range - 1)
                logs = await self.fetch_logs(next_block, to_block)

            except TransientRPCError as e:
                failures += 1
                delay = min(self.retry_base_delay * (2 ** (failures - 1)), self.retry_max_delay)
                self.logger.warning(
                    "Ledger poll failed, reconnecting",
                    error=e.message,
                    attempt=failures,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                continue

            if failures:
                self.logger.info("Ledger connection restored", after_attempts=failures)
                failures = 0

            yield LogBatch(from_block=next_block, to_block=to_block, logs=logs)
            next_block = to_block + 1

    @staticmethod
    def _normalize_log(entry) -> RawLog:
        return RawLog(
            address=to_checksum_address(entry["address"]),
            topics=[Web3.to_hex(topic) for topic in entry["topics"]],
            data=Web3.to_hex(entry["data"]),
            block_number=int(entry["blockNumber"]),
            block_hash=Web3.to_hex(entry["blockHash"]),
            transaction_hash=Web3.to_hex(entry["transactionHash"]),
            log_index=int(entry["logIndex"]),
            removed=bool(entry.get("removed", False)),
        )

    # Transactions

    async def prepare_transaction(
        self,
        contract: str,
        method: str,
        args: Sequence[Any],
        signer: LocalAccount,
    ) -> PreparedTransaction:
        """Build and sign a transaction, reserving the signer's next nonce."""
        function = getattr(self._contract(contract).functions, method)(*args)

        async with self._nonce_lock:
            nonce = await self._next_nonce(signer.address)
            tx = await self._guard(
                f"{contract}.{method}.build",
                function.build_transaction({
                    "from": signer.address,
                    "nonce": nonce,
                    "chainId": self.chain_id,
                }),
            )
            signed = signer.sign_transaction(tx)
            self._nonces[signer.address] = nonce + 1

        prepared = PreparedTransaction(
            contract=contract,
            method=method,
            sender=signer.address,
            nonce=nonce,
            raw_transaction=Web3.to_hex(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
        )
        self.logger.debug(
            "Transaction prepared",
            contract=contract,
            method=method,
            nonce=nonce,
            tx_hash=prepared.tx_hash,
        )
        return prepared

    async def broadcast(self, prepared: PreparedTransaction) -> str:
        """
        Send the signed bytes. Safe to repeat: a node that already holds
        the transaction counts as accepted.
        """
        try:
            tx_hash = await self._guard(
                "eth_sendRawTransaction",
                self.w3.eth.send_raw_transaction(prepared.raw_transaction),
            )
        except TransientRPCError as e:
            message = str(e.__cause__ or e).lower()
            if any(marker in message for marker in ALREADY_KNOWN_MARKERS):
                self.logger.info("Transaction already known to node", tx_hash=prepared.tx_hash)
                return prepared.tx_hash
            if any(marker in message for marker in NONCE_TOO_LOW_MARKERS):
                if await self.get_receipt_status(prepared.tx_hash) is not None:
                    return prepared.tx_hash
                self.reset_nonce(prepared.sender)
                raise LedgerRevertError(
                    f"Nonce {prepared.nonce} already used by another transaction",
                    {"tx_hash": prepared.tx_hash, "nonce": prepared.nonce},
                ) from e
            raise

        return Web3.to_hex(tx_hash)

    async def submit_transaction(
        self,
        contract: str,
        method: str,
        args: Sequence[Any],
        signer: LocalAccount,
    ) -> str:
        """Prepare, sign and broadcast in one step."""
        prepared = await self.prepare_transaction(contract, method, args, signer)
        return await self.broadcast(prepared)

    async def _next_nonce(self, address: str) -> int:
        if address not in self._nonces:
            self._nonces[address] = await self._guard(
                "eth_getTransactionCount",
                self.w3.eth.get_transaction_count(address, "pending"),
            )
        return self._nonces[address]

    def reset_nonce(self, address: str) -> None:
        """Forget the cached nonce so the next transaction re-reads it."""
        self._nonces.pop(address, None)

    async def close(self) -> None:
        await self.w3.provider.disconnect()
        self.logger.info("Ledger client closed")
