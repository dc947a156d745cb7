import dataclasses
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Tuple

from compoundor.errors import QuoteError
from compoundor.models import EligibleVault, IneligibleVault, VaultRecord

logger = logging.getLogger(__name__)

QUOTE_WORKERS = 8


def passes_value_gate(vault: VaultRecord) -> bool:
    """Estimated value within 99% of the bounty, with something to claim"""
    return (vault.wrapper_value_in_staking_token >= vault.bounty * 99 // 100
            and vault.wrapper_mint_amount > 0)


class EligibilityFilter:
    """Two-stage profitability check: price estimate, then a live quote"""

    def __init__(self, quoter, slippage_bps: int, max_workers: int = QUOTE_WORKERS):
        self.quoter = quoter
        self.slippage_bps = slippage_bps
        self.max_workers = max_workers

    def filter(self, vaults: List[VaultRecord]) -> Tuple[List[EligibleVault], List[IneligibleVault]]:
        ineligible = []
        survivors = []
        for vault in vaults:
            if vault.error:
                ineligible.append(IneligibleVault(vault=vault, reason=vault.error))
            elif passes_value_gate(vault):
                survivors.append(vault)
            else:
                shortfall = max(vault.bounty - vault.wrapper_value_in_staking_token, 0)
                ineligible.append(IneligibleVault(vault=vault, reason="value below bounty", shortfall=shortfall))

        if not survivors:
            return [], ineligible

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(survivors))) as pool:
            quotes = list(pool.map(self._quote, survivors))

        eligible = []
        for vault, (quote, error) in zip(survivors, quotes):
            if error is not None:
                ineligible.append(IneligibleVault(vault=vault, reason=f"quote failed: {error}"))
            elif quote.amount_out >= vault.bounty:
                confirmed = dataclasses.replace(vault, wrapper_value_in_staking_token=quote.amount_out)
                eligible.append(EligibleVault(vault=confirmed, quote=quote))
            else:
                ineligible.append(IneligibleVault(
                    vault=vault,
                    reason="quote below bounty",
                    shortfall=vault.bounty - quote.amount_out,
                ))

        logger.info(f"Eligibility: {len(eligible)} eligible, {len(ineligible)} ineligible")
        return eligible, ineligible

    def _quote(self, vault: VaultRecord):
        try:
            quote = self.quoter.quote(vault.selected_wrapper, vault.staking_token,
                                      vault.wrapper_mint_amount, self.slippage_bps)
            return quote, None
        except QuoteError as e:
            logger.warning(f"Quote failed for {vault.symbol}: {e}")
            return None, str(e)
