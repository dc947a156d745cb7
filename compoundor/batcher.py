"""
Batched on-chain reads for a cycle

Every read for a cycle goes through one Multicall3 request per phase, pinned to
the cycle's block, so bounty, earned reward, wrapper restriction and previews
describe the same chain state.
"""

import logging
from typing import Dict, List, Sequence, Tuple

from compoundor.config import ZERO_ADDRESS
from compoundor.models import VaultRecord, WrapperPreview
from compoundor.rpc import encode_call, safe_decode_address, safe_decode_uint

logger = logging.getLogger(__name__)

FETCH_FAILED = "fetch failed"

BOUNTY = encode_call("bounty()")
EARNED = encode_call("earned()")
ONLY_ALLOWED_WRAPPER = encode_call("onlyAllowedBgtWrapper()")


def preview_call(wrapper: str) -> bytes:
    return encode_call("previewClaimBgtWrapper(address)", ["address"], [wrapper])


class OnchainDataBatcher:

    def __init__(self, chain):
        self.chain = chain

    def fetch_all(self, vaults: List[VaultRecord], block_number: int) -> List[VaultRecord]:
        """Fill bounty, earned and wrapper restriction for each vault at block_number"""
        calls = []
        for vault in vaults:
            calls.append((vault.vault_address, BOUNTY))
            calls.append((vault.vault_address, EARNED))
            calls.append((vault.vault_address, ONLY_ALLOWED_WRAPPER))

        results = self.chain.multicall(calls, block_number)

        for i, vault in enumerate(vaults):
            vault.block_number = block_number
            (ok_bounty, raw_bounty), (ok_earned, raw_earned), (ok_wrapper, raw_wrapper) = results[i * 3:i * 3 + 3]

            bounty = safe_decode_uint(raw_bounty) if ok_bounty else None
            earned = safe_decode_uint(raw_earned) if ok_earned else None
            wrapper = safe_decode_address(raw_wrapper) if ok_wrapper else None

            if bounty is None or earned is None or wrapper is None:
                vault.error = FETCH_FAILED
                logger.warning(f"On-chain read failed for {vault.symbol} ({vault.vault_address})")
                continue

            vault.bounty = bounty
            vault.earned_reward = earned
            vault.wrapper_restriction = None if wrapper == ZERO_ADDRESS else wrapper

        return vaults

    def fetch_wrapper_previews(self, inputs: Sequence[Tuple[str, Sequence[str]]],
                               block_number: int) -> Dict[str, WrapperPreview]:
        """Preview every candidate wrapper plus earned() for each (vault, wrappers) pair"""
        if not inputs:
            return {}

        calls = []
        for vault, wrappers in inputs:
            calls.extend((vault, preview_call(w)) for w in wrappers)
            calls.append((vault, EARNED))

        results = self.chain.multicall(calls, block_number)

        previews = {}
        offset = 0
        for vault, wrappers in inputs:
            chunk = results[offset:offset + len(wrappers) + 1]
            offset += len(wrappers) + 1

            has_any_failure = False
            amounts = []
            for ok, raw in chunk[:-1]:
                amount = safe_decode_uint(raw) if ok else None
                if amount is None:
                    has_any_failure = True
                    amount = 0
                amounts.append(amount)

            ok_earned, raw_earned = chunk[-1]
            earned = safe_decode_uint(raw_earned) if ok_earned else None
            if earned is None:
                has_any_failure = True
                earned = 0

            previews[vault.lower()] = WrapperPreview(
                wrapper_mint_amounts=amounts,
                earned=earned,
                has_any_failure=has_any_failure,
            )

        return previews
