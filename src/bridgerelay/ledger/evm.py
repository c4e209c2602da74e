"""EVM ledger client.

Uses httpx for JSON-RPC, web3.py for hashing and ABI encoding, and
eth-account for signing. Burn events are picked up by polling
``eth_getLogs`` for the token contract's ``Bridge(address,uint256)`` topic.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from eth_account import Account
from web3 import Web3

from bridgerelay.ledger.base import (
    BRIDGE_EVENT,
    BroadcastUncertain,
    EventCallback,
    LedgerClient,
    RelayError,
    SubmissionFailure,
    SubscriptionFailure,
    TransactionHandle,
    TransactionReceipt,
)
from bridgerelay.token.events import BurnedEvent

logger = logging.getLogger(__name__)

# sequence_number = block_number * LOG_INDEX_SPAN + log_index
LOG_INDEX_SPAN = 1_000_000

BRIDGE_TOPIC = Web3.to_hex(Web3.keccak(text="Bridge(address,uint256)"))

# Function selector and argument types for each contract call
FUNCTION_SIGNATURES = {
    "mint": ("mint(address,uint256)", ["address", "uint256"]),
    "transfer": ("transfer(address,uint256)", ["address", "uint256"]),
    "bridge": ("bridge(uint256)", ["uint256"]),
    "balanceOf": ("balanceOf(address)", ["address"]),
    "totalSupply": ("totalSupply()", []),
}

DEFAULT_GAS_LIMIT = 150000


class RPCError(RelayError):
    """JSON-RPC request failed or returned an error object.

    ``transport`` is set when no JSON-RPC answer was read, so the node may
    or may not have processed the request.
    """

    def __init__(self, ledger: str, reason: str, transport: bool = False):
        super().__init__(ledger, reason)
        self.transport = transport


class EVMLedgerClient(LedgerClient):
    """Ledger client for an EVM chain hosting the bridge token contract."""

    def __init__(
        self,
        name: str,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: Optional[int] = None,
        poll_interval: float = 3.0,
        max_block_range: int = 2000,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            name: Ledger name ("A" or "B")
            rpc_url: JSON-RPC endpoint
            contract_address: Token contract address
            private_key: Relay authority key used for mint transactions
            chain_id: Chain ID for signing (queried from the node if None)
            poll_interval: Seconds between log and receipt polls
            max_block_range: Maximum blocks per eth_getLogs request
            gas_limit: Gas limit for submitted calls
            transport: Optional httpx transport (tests)
        """
        super().__init__(name)
        self.rpc_url = rpc_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.max_block_range = max_block_range
        self.gas_limit = gas_limit

        self._w3 = Web3()  # Codec only; all network access goes through httpx
        self._account = Account.from_key(private_key)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._poll_tasks: dict[EventCallback, asyncio.Task] = {}

    @property
    def signer(self) -> str:
        return self._account.address

    # ======================
    # Connection
    # ======================

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        if self.chain_id is None:
            self.chain_id = int(await self._rpc("eth_chainId", []), 16)
        logger.info(f"[{self.name}] Connected to chain {self.chain_id} as {self.signer}")

    async def close(self) -> None:
        for task in self._poll_tasks.values():
            task.cancel()
        await asyncio.gather(*self._poll_tasks.values(), return_exceptions=True)
        self._poll_tasks.clear()

        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, method: str, params: list) -> Any:
        """Send a JSON-RPC request and return its result."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0, transport=self._transport)

        self._request_id += 1
        try:
            response = await self._client.post(
                self.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "method": method,
                    "params": params,
                    "id": self._request_id,
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RPCError(self.name, f"{method} failed: {e}", transport=True) from e

        if "error" in data:
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise RPCError(self.name, f"{method} error: {message}")

        return data.get("result")

    async def _block_number(self) -> int:
        return int(await self._rpc("eth_blockNumber", []), 16)

    def _encode_call(self, function: str, args: tuple) -> str:
        """Build calldata for a contract function."""
        if function not in FUNCTION_SIGNATURES:
            raise SubmissionFailure(self.name, f"unknown function {function}")

        signature, arg_types = FUNCTION_SIGNATURES[function]
        if len(args) != len(arg_types):
            raise SubmissionFailure(
                self.name, f"{function} takes {len(arg_types)} arguments, got {len(args)}"
            )

        values = [
            Web3.to_checksum_address(value) if arg_type == "address" else value
            for arg_type, value in zip(arg_types, args)
        ]
        selector = Web3.keccak(text=signature)[:4]
        return Web3.to_hex(selector + self._w3.codec.encode(arg_types, values))

    # ======================
    # Events
    # ======================

    async def subscribe(
        self,
        event_name: str,
        callback: EventCallback,
        from_sequence: Optional[int] = None,
    ) -> None:
        if event_name != BRIDGE_EVENT:
            raise SubscriptionFailure(self.name, f"unsupported event {event_name}")

        try:
            head = await self._block_number()
        except RPCError as e:
            raise SubscriptionFailure(self.name, e.reason) from e

        if from_sequence is None:
            next_block = head + 1
            last_sequence = -1
        else:
            # Re-scan the cursor's block; logs at or before the cursor are skipped
            next_block = max(from_sequence, 0) // LOG_INDEX_SPAN
            last_sequence = from_sequence

        logger.info(f"[{self.name}] Watching {event_name} logs from block {next_block}")
        self._poll_tasks[callback] = asyncio.create_task(
            self._poll_logs(callback, next_block, last_sequence)
        )

    async def unsubscribe(self, event_name: str, callback: EventCallback) -> None:
        task = self._poll_tasks.pop(callback, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _poll_logs(
        self, callback: EventCallback, next_block: int, last_sequence: int
    ) -> None:
        """Poll new Bridge logs and deliver them in emission order.

        RPC failures keep ``next_block`` where it was, so the following poll
        covers the gap.
        """
        while True:
            try:
                head = await self._block_number()
                while next_block <= head:
                    to_block = min(head, next_block + self.max_block_range - 1)
                    logs = await self._rpc(
                        "eth_getLogs",
                        [{
                            "address": self.contract_address,
                            "topics": [BRIDGE_TOPIC],
                            "fromBlock": hex(next_block),
                            "toBlock": hex(to_block),
                        }],
                    )

                    for log in logs or []:
                        event = self.decode_bridge_log(log)
                        if event.sequence_number <= last_sequence:
                            continue
                        last_sequence = event.sequence_number
                        try:
                            await callback(event)
                        except Exception as e:
                            logger.error(
                                f"[{self.name}] Subscriber error for burn "
                                f"#{event.sequence_number}: {e}"
                            )

                    next_block = to_block + 1

            except asyncio.CancelledError:
                raise
            except RPCError as e:
                logger.warning(f"[{self.name}] Log poll failed, will retry: {e.reason}")
            except Exception:
                logger.error(f"[{self.name}] Unexpected error polling logs", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    def decode_bridge_log(self, log: dict) -> BurnedEvent:
        """Decode a raw ``Bridge(user, amount)`` log entry."""
        data = Web3.to_bytes(hexstr=log["data"])
        topics = log.get("topics", [])

        if len(topics) > 1:
            # Indexed user
            (user,) = self._w3.codec.decode(["address"], Web3.to_bytes(hexstr=topics[1]))
            (amount,) = self._w3.codec.decode(["uint256"], data)
        else:
            user, amount = self._w3.codec.decode(["address", "uint256"], data)

        block_number = int(log["blockNumber"], 16)
        log_index = int(log["logIndex"], 16)

        return BurnedEvent(
            account=Web3.to_checksum_address(user),
            amount=int(amount),
            source_ledger=self.name,
            sequence_number=block_number * LOG_INDEX_SPAN + log_index,
            tx_hash=log.get("transactionHash"),
            block_number=block_number,
        )

    # ======================
    # Transactions
    # ======================

    async def call(self, function: str, args: tuple) -> TransactionHandle:
        data = self._encode_call(function, args)

        # Nonce allocation and broadcast are serialized for this signer
        async with self._nonce_lock:
            try:
                if self.chain_id is None:
                    self.chain_id = int(await self._rpc("eth_chainId", []), 16)
                if self._next_nonce is None:
                    self._next_nonce = int(
                        await self._rpc("eth_getTransactionCount", [self.signer, "pending"]), 16
                    )
                gas_price = int(await self._rpc("eth_gasPrice", []), 16)
            except RPCError as e:
                raise SubmissionFailure(self.name, e.reason) from e

            nonce = self._next_nonce
            tx = {
                "nonce": nonce,
                "gasPrice": gas_price,
                "gas": self.gas_limit,
                "to": self.contract_address,
                "value": 0,
                "data": data,
                "chainId": self.chain_id,
            }
            signed = self._account.sign_transaction(tx)
            handle = TransactionHandle(
                ledger=self.name,
                tx_hash=Web3.to_hex(signed.hash),
                function=function,
                args=tuple(args),
                nonce=nonce,
            )

            try:
                await self._rpc("eth_sendRawTransaction", [Web3.to_hex(signed.raw_transaction)])
            except RPCError as e:
                reason = e.reason.lower()
                if e.transport:
                    # The node may hold the transaction; resync the nonce from its pool
                    self._next_nonce = None
                    raise BroadcastUncertain(self.name, e.reason, handle) from e
                if "already known" in reason or "known transaction" in reason:
                    logger.info(f"[{self.name}] {handle.tx_hash} already in the node's pool")
                else:
                    if "nonce" in reason:
                        # Resync from the node on the next submission
                        self._next_nonce = None
                    raise SubmissionFailure(self.name, e.reason) from e

            self._next_nonce = nonce + 1

        logger.info(
            f"[{self.name}] Broadcast {function}{tuple(args)} nonce={nonce}: {handle.tx_hash}"
        )
        return handle

    async def await_inclusion(
        self, handle: TransactionHandle, timeout: Optional[float] = None
    ) -> TransactionReceipt:
        return await asyncio.wait_for(self._poll_receipt(handle), timeout=timeout)

    async def _poll_receipt(self, handle: TransactionHandle) -> TransactionReceipt:
        while True:
            try:
                result = await self._rpc("eth_getTransactionReceipt", [handle.tx_hash])
            except RPCError as e:
                logger.warning(f"[{self.name}] Receipt poll failed for {handle.tx_hash}: {e.reason}")
                result = None

            if result is not None:
                status = int(result.get("status", "0x0"), 16)
                receipt = TransactionReceipt(
                    ledger=self.name,
                    tx_hash=handle.tx_hash,
                    success=status == 1,
                    block_number=int(result["blockNumber"], 16) if result.get("blockNumber") else None,
                    gas_used=int(result["gasUsed"], 16) if result.get("gasUsed") else None,
                )
                if not receipt.success:
                    raise SubmissionFailure(self.name, f"transaction {handle.tx_hash} reverted")
                return receipt

            await asyncio.sleep(self.poll_interval)

    # ======================
    # Reads
    # ======================

    async def _eth_call(self, function: str, args: tuple) -> int:
        result = await self._rpc(
            "eth_call",
            [{"to": self.contract_address, "data": self._encode_call(function, args)}, "latest"],
        )
        (value,) = self._w3.codec.decode(["uint256"], Web3.to_bytes(hexstr=result))
        return int(value)

    async def get_balance(self, account: str) -> int:
        return await self._eth_call("balanceOf", (account,))

    async def total_supply(self) -> int:
        return await self._eth_call("totalSupply", ())
