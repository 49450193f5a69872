"""Yield token contract access: read scalingFactor, submit signed rebases"""
import logging
from decimal import Decimal
from typing import Optional

from web3 import Web3
from web3.exceptions import TimeExhausted

from kubi_pipeline.abis import TOKEN_YIELD_ABI
from kubi_pipeline.config import Settings
from kubi_pipeline.errors import TransactionFailed

logger = logging.getLogger(__name__)

DEFAULT_GAS_PRICE_GWEI = 5


class YieldTokenClient:
    """
    Owner-side client for yield tokens on one chain.

    Transactions are sent one at a time and awaited to a receipt, so the
    nonce of the signing account only moves forward after confirmation.
    """

    def __init__(self, rpc_url: str, private_key: str, chain_id: int, gas_limit: int = 300000,
                 gas_price_gwei: Optional[str] = None, receipt_timeout: float = 120.0,
                 request_timeout: float = 30.0, w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': request_timeout}))
        self.account = self.w3.eth.account.from_key(private_key)
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.gas_price_gwei = gas_price_gwei
        self.receipt_timeout = receipt_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> 'YieldTokenClient':
        settings.require_rebase()
        return cls(
            rpc_url=settings.RPC_URL,
            private_key=settings.PRIVATE_KEY,
            chain_id=settings.CHAIN_ID,
            gas_limit=settings.GAS_LIMIT,
            gas_price_gwei=settings.GAS_PRICE_GWEI,
            receipt_timeout=settings.REBASE_RECEIPT_TIMEOUT,
            request_timeout=settings.RPC_TIMEOUT,
        )

    @property
    def owner(self) -> str:
        return self.account.address

    def _contract(self, address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=TOKEN_YIELD_ABI)

    def scaling_factor(self, address: str) -> int:
        return int(self._contract(address).functions.scalingFactor().call())

    def gas_price(self) -> int:
        """Configured gas price, else the node's suggestion, else 5 gwei"""
        if self.gas_price_gwei:
            price = Web3.to_wei(Decimal(self.gas_price_gwei), 'gwei')
        else:
            price = self.w3.eth.gas_price
        if not price or price <= 0:
            price = Web3.to_wei(DEFAULT_GAS_PRICE_GWEI, 'gwei')
        return int(price)

    def rebase(self, address: str, new_factor: int) -> str:
        """
        Submit rebase(new_factor) and wait for it to be mined.

        Returns:
            Transaction hash

        Raises:
            TransactionFailed: If the transaction reverted or no receipt arrived in time
        """
        tx = self._contract(address).functions.rebase(new_factor).build_transaction({
            'from': self.account.address,
            'chainId': self.chain_id,
            'gas': self.gas_limit,
            'gasPrice': self.gas_price(),
            'nonce': self.w3.eth.get_transaction_count(self.account.address, 'pending'),
        })
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"Rebase tx sent to {address}: {tx_hex} newFactor={new_factor}")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise TransactionFailed(f"no receipt for {tx_hex} after {self.receipt_timeout:.0f}s") from e

        if receipt.get('status') != 1:
            raise TransactionFailed(f"rebase {tx_hex} reverted in block {receipt.get('blockNumber')}")
        return tx_hex
