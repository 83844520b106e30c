"""
Identity Verifier - ERC-8004 agent ownership

Confirms that a claimed wallet currently owns the agent token `agentId` in the
ERC-8004 identity registry on Ethereum mainnet.

Design principles:
- Fail-closed: any RPC failure -> not verified. Never trust an unverified agent.
- Read-only: a single ownerOf() view call, no state touched.
- Not cached: ownership can change between requests.
- No retries: a revert is authoritative ("does not exist"), not transient.
- Owner disclosure on mismatch is intentional (lets callers self-diagnose).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError

from .chain import connect, run_sync, same_address
from .settings import ERC721_ABI, IDENTITY_REGISTRY, NULL_ADDRESS

logger = logging.getLogger("storefront.identity")

_NOT_FOUND_MARKERS = ("erc721", "nonexistent token", "invalid token id")


@dataclass
class IdentityResult:
    """Result of an ownership check."""
    verified: bool
    agent_id: str = ""
    owner_address: str = ""
    error: str = ""
    not_found: bool = False     # True = agent does not exist; False + error = lookup failed


class IdentityVerifier:
    """
    Usage:
        verifier = IdentityVerifier(rpc_url, timeout=15)
        result = await verifier.verify_ownership("24212", "0xWallet")
        if result.verified:
            # allow purchase
    """

    def __init__(
        self,
        rpc_url: str = "",
        timeout: float = 15.0,
        registry_address: str = IDENTITY_REGISTRY,
        w3=None,
    ):
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._registry_address = registry_address
        self._w3 = w3
        self._registry = None

    def _get_registry(self):
        if self._registry is None:
            if self._w3 is None:
                self._w3 = connect(self._rpc_url, timeout=self._timeout)
            self._registry = self._w3.eth.contract(
                address=Web3.to_checksum_address(self._registry_address),
                abi=ERC721_ABI,
            )
        return self._registry

    async def verify_ownership(self, agent_id: str, claimed_wallet: str) -> IdentityResult:
        """Never raises: always returns an IdentityResult."""
        agent_id = str(agent_id).strip()
        try:
            token_id = int(agent_id)
            if token_id < 0:
                raise ValueError(agent_id)
        except ValueError:
            return IdentityResult(
                verified=False,
                agent_id=agent_id,
                error=f"Agent #{agent_id} does not exist in ERC-8004 registry",
                not_found=True,
            )

        try:
            registry = self._get_registry()
            owner = await run_sync(
                registry.functions.ownerOf(token_id).call, self._timeout
            )
        except ContractLogicError as e:
            logger.info(f"Agent #{agent_id} lookup reverted: {e}")
            return self._not_found(agent_id)
        except asyncio.TimeoutError:
            logger.warning(f"Agent #{agent_id} lookup timed out after {self._timeout}s")
            return IdentityResult(
                verified=False,
                agent_id=agent_id,
                error=f"Verification failed: registry lookup timed out after {self._timeout:.0f}s",
            )
        except Exception as e:
            if any(marker in str(e).lower() for marker in _NOT_FOUND_MARKERS):
                return self._not_found(agent_id)
            logger.error(f"Agent verification error: {type(e).__name__}: {e}")
            return IdentityResult(
                verified=False, agent_id=agent_id, error=f"Verification failed: {e}"
            )

        if not owner or same_address(owner, NULL_ADDRESS):
            return self._not_found(agent_id)

        if not same_address(owner, claimed_wallet):
            return IdentityResult(
                verified=False,
                agent_id=agent_id,
                owner_address=owner,
                error=(
                    f"Wallet {claimed_wallet} does not own agent #{agent_id}. "
                    f"Owner is {owner}."
                ),
            )

        logger.info(f"Agent #{agent_id} verified (owner: {owner[:10]}...)")
        return IdentityResult(verified=True, agent_id=agent_id, owner_address=owner)

    async def has_registered_agent(self, wallet: str) -> tuple[bool, int]:
        """Diagnostics: does this wallet hold any ERC-8004 agent? (has_agent, count)"""
        try:
            registry = self._get_registry()
            balance = await run_sync(
                registry.functions.balanceOf(Web3.to_checksum_address(wallet)).call,
                self._timeout,
            )
        except Exception as e:
            logger.warning(f"Agent balance check error: {e}")
            return False, 0
        return balance > 0, int(balance)

    @staticmethod
    def _not_found(agent_id: str) -> IdentityResult:
        return IdentityResult(
            verified=False,
            agent_id=agent_id,
            error=f"Agent #{agent_id} does not exist in ERC-8004 registry",
            not_found=True,
        )
