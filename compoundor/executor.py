"""
Compound execution with retry

Each eligible vault goes through ATTEMPT -> SUCCESS | SKIPPED | FAILED. A
failed attempt is retried with a fresh, wider-slippage quote until the
configured retry limit, after checking that nobody claimed in between.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from compoundor.config import compound_slippage_for_attempt
from compoundor.errors import QuoteError, SimulationError, TransactionError
from compoundor.logging_config import get_logger
from compoundor.models import (
    STATUS_FAILED, STATUS_SKIPPED, STATUS_SUCCESS,
    CompoundOutcome, EligibleVault, RetryBook, VaultRecord,
)
from compoundor.schemas import Quote
from compoundor.tx import is_nonce_error

logger = get_logger(__name__)



class AttemptFailed(Exception):
    """Retryable failure inside one attempt; tx_hash is set once a transaction was broadcast"""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class CompoundExecutor:

    def __init__(self, config: Dict[str, Any], chain, tx_builder, quoter,
                 retry_book: RetryBook, beneficiary: str, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.chain = chain
        self.tx_builder = tx_builder
        self.quoter = quoter
        self.retry_book = retry_book
        self.beneficiary = beneficiary
        self.sleep = sleep

    def execute_all(self, eligible: List[EligibleVault],
                    can_continue: Optional[Callable[[], Optional[str]]] = None) -> List[CompoundOutcome]:
        """Process vaults in order; can_continue returns a reason to skip the rest"""
        outcomes = []
        stop_reason = None
        for item in eligible:
            if stop_reason is None and can_continue is not None:
                try:
                    stop_reason = can_continue()
                except Exception as e:
                    logger.error(f"Pre-compound check failed: {e}", error_type=type(e).__name__)
                    stop_reason = f"pre-compound check failed: {e}"
            if stop_reason is not None:
                outcomes.append(CompoundOutcome(vault=item.vault, status=STATUS_SKIPPED, error=stop_reason))
                continue
            outcomes.append(self.compound(item))
        return outcomes

    def compound(self, item: EligibleVault) -> CompoundOutcome:
        vault = item.vault
        record = self.retry_book.get(vault.vault_address)
        attempt = record.attempt_count if record else 0
        baseline = record.baseline_earned if record else vault.earned_reward
        quote = item.quote
        last_tx_hash = None

        while True:
            try:
                outcome = self._attempt(vault, attempt, baseline, quote if attempt == 0 else None)
            except AttemptFailed as e:
                error = str(e)
                last_tx_hash = e.tx_hash or last_tx_hash
            except Exception as e:
                logger.error(f"Unexpected error compounding {vault.symbol}: {e}", exc_info=True,
                             vault=vault.vault_address, error_type=type(e).__name__)
                error = f"unexpected error: {e}"
            else:
                self.retry_book.clear(vault.vault_address)
                outcome.retry_count = attempt
                return outcome

            if attempt < self.config['maxRetries']:
                attempt += 1
                self.retry_book.record_failure(vault.vault_address, attempt, baseline)
                logger.warning(f"Retrying {vault.symbol} (attempt {attempt}): {error}",
                               vault=vault.vault_address, retry_count=attempt)
                self.sleep(self.config['retryIntervalSec'])
                continue

            self.retry_book.clear(vault.vault_address)
            logger.error(f"Compound failed for {vault.symbol} after {attempt} retries: {error}",
                         vault=vault.vault_address, status=STATUS_FAILED, retry_count=attempt)
            return CompoundOutcome(vault=vault, status=STATUS_FAILED, retry_count=attempt,
                                   tx_hash=last_tx_hash, error=error)

    def _attempt(self, vault: VaultRecord, attempt: int, baseline: int, quote: Optional[Quote]) -> CompoundOutcome:
        if attempt > 0:
            if self._claimed_elsewhere(vault, baseline):
                return self._skip(vault, "already compounded by another actor")
            slippage = compound_slippage_for_attempt(self.config, attempt)
            try:
                quote = self.quoter.quote(vault.selected_wrapper, vault.staking_token,
                                          vault.wrapper_mint_amount, slippage)
            except QuoteError as e:
                return self._skip(vault, f"quote failed: {e}")

        if quote.amount_out < vault.bounty:
            return self._skip(vault, "quote now below bounty")

        try:
            balance_before = self.chain.token_balance(vault.staking_token, self.beneficiary)
        except Exception as e:
            raise AttemptFailed(f"balance read failed: {e}") from e

        try:
            call = self.tx_builder.claim_call(vault.vault_address, vault.selected_wrapper, quote,
                                              vault.wrapper_mint_amount, self.beneficiary)
        except TransactionError as e:
            raise AttemptFailed(str(e)) from e

        try:
            gas_limit = self.tx_builder.simulate(call)
        except SimulationError as e:
            raise AttemptFailed(f"simulation failed: {e}") from e

        if not self.config['execute']:
            logger.info(f"Simulation passed for {vault.symbol}, not sending", vault=vault.vault_address)
            return self._skip(vault, "execute mode disabled")

        try:
            transaction = self.tx_builder.build_transaction(call, gas_limit)
            tx_hash = self.tx_builder.send(transaction)
        except TransactionError as e:
            if is_nonce_error(str(e)):
                return self._skip(vault, f"nonce conflict: {e}")
            raise AttemptFailed(f"send failed: {e}") from e

        try:
            self.tx_builder.wait_for_receipt(tx_hash, timeout=self.config['receiptTimeoutSec'])
        except TransactionError as e:
            raise AttemptFailed(str(e), tx_hash=tx_hash) from e

        try:
            surplus = self.chain.token_balance(vault.staking_token, self.beneficiary) - balance_before
        except Exception as e:
            logger.warning(f"Could not read surplus for {vault.symbol}: {e}", vault=vault.vault_address)
            surplus = None
        logger.info(f"Compounded {vault.symbol}: {tx_hash}", vault=vault.vault_address,
                    tx_hash=tx_hash, status=STATUS_SUCCESS)
        return CompoundOutcome(vault=vault, status=STATUS_SUCCESS, tx_hash=tx_hash, surplus=surplus)

    def _claimed_elsewhere(self, vault: VaultRecord, baseline: int) -> bool:
        try:
            current = self.chain.read_uint(vault.vault_address, "earned()")
        except Exception as e:
            logger.warning(f"Error checking earned for {vault.symbol}: {e}", vault=vault.vault_address)
            return False
        return current < baseline

    def _skip(self, vault: VaultRecord, reason: str) -> CompoundOutcome:
        logger.info(f"Skipping {vault.symbol}: {reason}", vault=vault.vault_address, status=STATUS_SKIPPED)
        return CompoundOutcome(vault=vault, status=STATUS_SKIPPED, error=reason)
