# app/services/ledger.py
"""
Ledger actuator: the on-chain action executed after a payment settles.

The gateway only depends on the LedgerActuator protocol. Web3MintActuator is
the production implementation: the minter wallet calls the NFT contract's
ownerMint(to, quantity), waits for the receipt and reports the transaction.
Failures are raised as LedgerActionError, never swallowed. Nothing here
retries: a payment has already been consumed when this runs.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from eth_account import Account
from web3 import Web3

logger = logging.getLogger(__name__)

JUSTAPES_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "quantity", "type": "uint256"},
        ],
        "name": "ownerMint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


@dataclass(frozen=True)
class MintAction:
    """Validated parameters of a mint."""
    recipient: str
    quantity: int


@dataclass(frozen=True)
class ActionResult:
    """What the ledger reported for an executed action."""
    transaction_hash: str
    status: str
    quantity: int
    recipient: str
    block_number: Optional[int] = None


class LedgerActionError(Exception):
    """The gated action failed or its outcome could not be confirmed."""

    def __init__(self, message: str, transaction_hash: Optional[str] = None):
        super().__init__(message)
        self.transaction_hash = transaction_hash


class LedgerActuator(Protocol):
    """Executes the gated action."""

    @property
    def address(self) -> Optional[str]:
        ...

    async def execute(self, action: MintAction) -> ActionResult:
        ...


class Web3MintActuator:
    """
    Mints tokens through a web3 JSON-RPC provider.

    Web3 calls are blocking; execute() runs them in a worker thread so the
    event loop keeps serving other requests.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        gas_limit: int = 300_000,
        confirmation_timeout: float = 120,
    ):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self.account = Account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=JUSTAPES_ABI,
        )
        self.gas_limit = gas_limit
        self.confirmation_timeout = confirmation_timeout

    @property
    def address(self) -> str:
        return self.account.address

    async def execute(self, action: MintAction) -> ActionResult:
        return await asyncio.to_thread(self._mint, action)

    def _mint(self, action: MintAction) -> ActionResult:
        recipient = Web3.to_checksum_address(action.recipient)
        logger.info(f"Minting {action.quantity} token(s) to {recipient}")

        tx_hash = None
        try:
            tx = self.contract.functions.ownerMint(recipient, action.quantity).build_transaction({
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                "gas": self.gas_limit,
                "gasPrice": self.w3.eth.gas_price,
                "chainId": self.w3.eth.chain_id,
            })

            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout
            )
        except Exception as e:
            hash_hex = Web3.to_hex(tx_hash) if tx_hash is not None else None
            logger.error(f"Mint transaction failed (tx={hash_hex}): {e}", exc_info=True)
            raise LedgerActionError(f"Mint transaction failed: {e}", transaction_hash=hash_hex) from e

        hash_hex = Web3.to_hex(tx_hash)
        if receipt["status"] != 1:
            logger.error(f"Mint transaction reverted: {hash_hex}")
            raise LedgerActionError("Mint transaction reverted", transaction_hash=hash_hex)

        logger.info(f"Token(s) minted, txHash: {hash_hex}")
        return ActionResult(
            transaction_hash=hash_hex,
            status="confirmed",
            quantity=action.quantity,
            recipient=recipient,
            block_number=receipt["blockNumber"],
        )
