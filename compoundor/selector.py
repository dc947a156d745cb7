import logging
from typing import Dict, Optional, Sequence

from compoundor.config import DEFAULT_WRAPPER_INDEX, WBERA
from compoundor.errors import CompoundorError, ConfigError
from compoundor.models import Selection, VaultRecord, WrapperPreview

logger = logging.getLogger(__name__)


class WrapperSelector:
    """Pick the wrapper, or the native asset, worth most in staking token"""

    def __init__(self, oracle):
        self.oracle = oracle

    def select_best(self, vault: VaultRecord, candidates: Sequence[str],
                    previews: Dict[str, WrapperPreview]) -> Optional[Selection]:
        if not candidates:
            return None

        preview = previews.get(vault.vault_address.lower())
        if preview is None:
            logger.warning(f"No wrapper preview for {vault.symbol}")
            return None
        if preview.has_any_failure:
            logger.warning(f"Wrapper preview failed for {vault.symbol}")
            return None
        if vault.earned_reward > 0 and preview.earned == 0:
            logger.warning(f"Inconsistent snapshot for {vault.symbol}: earned {vault.earned_reward} but preview earned 0")
            return None

        try:
            values = [
                self.oracle.value_of(wrapper, amount, vault.staking_token)
                for wrapper, amount in zip(candidates, preview.wrapper_mint_amounts)
            ]
            native_value = self.oracle.value_of(WBERA, preview.earned, vault.staking_token, apply_slippage=False)
        except ConfigError:
            raise
        except CompoundorError as e:
            logger.warning(f"Valuation failed for {vault.symbol}: {e}")
            return None

        best_index = DEFAULT_WRAPPER_INDEX if DEFAULT_WRAPPER_INDEX < len(candidates) else 0
        max_value = 0
        for i, value in enumerate(values):
            if value > max_value:
                max_value = value
                best_index = i

        if native_value > max_value:
            return Selection(wrapper=WBERA, mint_amount=preview.earned, value_in_staking_token=native_value)

        return Selection(
            wrapper=candidates[best_index],
            mint_amount=preview.wrapper_mint_amounts[best_index],
            value_in_staking_token=max_value,
        )
