"""
trader/services/approvals.py
On-chain trading preconditions: USDC.e ERC-20 allowance and ConditionalTokens
ERC-1155 operator approval for the exchange contract an order will settle on.

Neg-risk markets settle through the NegRisk Exchange and also need the
NegRisk Adapter approved. Each contract is checked once per process; failures
are logged, not raised, and the order attempt proceeds.
"""

import asyncio
import logging
from typing import Any

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.middleware import ExtraDataToPOAMiddleware

from core.config import Settings, get_settings
from core.constants import (
    CONDITIONAL_TOKENS,
    CTF_EXCHANGE,
    MAX_UINT256,
    NEG_RISK_ADAPTER,
    NEG_RISK_CTF_EXCHANGE,
    POLYGON_CHAIN_ID,
    SUFFICIENT_ALLOWANCE,
    USDC_E,
)

logger = logging.getLogger(__name__)

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ERC1155_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "operator", "type": "address"}],
        "name": "isApprovedForAll",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "operator", "type": "address"}, {"name": "approved", "type": "bool"}],
        "name": "setApprovalForAll",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def approval_targets(neg_risk: bool) -> list[tuple[str, str]]:
    """(address, label) pairs that must be approved before trading a market."""
    if neg_risk:
        return [(NEG_RISK_CTF_EXCHANGE, "NegRisk Exchange"), (NEG_RISK_ADAPTER, "NegRisk Adapter")]
    return [(CTF_EXCHANGE, "CTF Exchange")]


class AllowanceManager:
    """Checks and grants exchange approvals, memoized per contract for the process."""

    def __init__(
        self,
        account: LocalAccount | None,
        w3: AsyncWeb3 | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._account = account
        self._settings = settings or get_settings()
        self._w3 = w3
        self._usdc_approved: set[str] = set()
        self._ct_approved: set[str] = set()
        self._lock = asyncio.Lock()

    def _web3(self) -> AsyncWeb3:
        if self._w3 is None:
            self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self._settings.POLYGON_RPC_URL))
            self._w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return self._w3

    def is_approved(self, address: str) -> bool:
        return address in self._usdc_approved and address in self._ct_approved

    async def _send(self, fn: Any, label: str) -> None:
        w3 = self._web3()
        owner = self._account.address
        tx = await fn.build_transaction({
            "from": owner,
            "nonce": await w3.eth.get_transaction_count(owner),
            "chainId": POLYGON_CHAIN_ID,
        })
        signed = self._account.sign_transaction(tx)
        tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info("%s tx %s sent; waiting for receipt", label, Web3.to_hex(tx_hash))
        receipt = await w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._settings.APPROVAL_RECEIPT_TIMEOUT_SECONDS
        )
        if receipt.get("status") != 1:
            raise RuntimeError(f"{label} transaction reverted: {Web3.to_hex(tx_hash)}")

    async def ensure_allowances(self, neg_risk: bool) -> None:
        """Approve USDC.e spend and CT operator rights on every target not yet confirmed."""
        targets = approval_targets(neg_risk)
        if all(self.is_approved(addr) for addr, _ in targets):
            return
        if self._account is None:
            logger.warning("No wallet configured; skipping approval checks")
            return

        async with self._lock:
            try:
                w3 = self._web3()
                owner = self._account.address
                erc20 = w3.eth.contract(address=Web3.to_checksum_address(USDC_E), abi=ERC20_ABI)
                ct = w3.eth.contract(address=Web3.to_checksum_address(CONDITIONAL_TOKENS), abi=ERC1155_ABI)

                for address, label in targets:
                    spender = Web3.to_checksum_address(address)

                    if address not in self._usdc_approved:
                        current = await erc20.functions.allowance(owner, spender).call()
                        if current > SUFFICIENT_ALLOWANCE:
                            logger.debug("%s already has sufficient USDC.e allowance", label)
                        else:
                            logger.info("Approving USDC.e for %s (%s)", label, address)
                            await self._send(erc20.functions.approve(spender, MAX_UINT256), f"USDC.e approve {label}")
                        self._usdc_approved.add(address)

                    if address not in self._ct_approved:
                        approved = await ct.functions.isApprovedForAll(owner, spender).call()
                        if approved:
                            logger.debug("%s already has ConditionalTokens approval", label)
                        else:
                            logger.info("Setting ConditionalTokens approval for %s (%s)", label, address)
                            await self._send(ct.functions.setApprovalForAll(spender, True), f"CT approval {label}")
                        self._ct_approved.add(address)
            except Exception as exc:
                logger.warning("Failed to ensure approvals for %s: %s", targets[0][1], exc)
