#!/usr/bin/env python3
"""
Polling loop for the bault compoundor

Each cycle fetches the vault list, prices and the latest block, reads vault
state at that block, selects a wrapper per vault, confirms profitability with a
live quote and compounds the eligible vaults one after another.
"""

import argparse
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from web3 import Web3

from compoundor import backend
from compoundor.batcher import OnchainDataBatcher
from compoundor.config import (
    CHAIN_ID, TOKEN_DECIMALS, WBERA, WRAPPERS,
    beneficiary_for, candidate_wrappers, load_config,
)
from compoundor.eligibility import EligibilityFilter
from compoundor.errors import ConfigError
from compoundor.executor import CompoundExecutor
from compoundor.logging_config import compoundor_logger, get_logger, setup_logging
from compoundor.metrics import start_metrics_server
from compoundor.models import STATUS_SUCCESS, CycleReport, RetryBook, VaultRecord
from compoundor.prices import PriceOracle, SubgraphPriceIndex
from compoundor.quoter import EnsoQuoter
from compoundor.report import render_report
from compoundor.rpc import ChainClient, RPCManager
from compoundor.selector import WrapperSelector
from compoundor.storage import Database
from compoundor.tx import TransactionBuilder

logger = get_logger(__name__)

PRICED_TOKENS = WRAPPERS + [WBERA]
INSUFFICIENT_NATIVE_BALANCE = "insufficient native balance"
SELECTION_FAILED = "wrapper selection failed"


class PollingScheduler:
    """Runs compound cycles one at a time until stopped"""

    def __init__(self, config: Dict[str, Any], chain, tx_builder, quoter, price_index,
                 db: Optional[Database] = None,
                 fetch_vaults: Callable[[Dict[str, Any]], List[VaultRecord]] = backend.fetch_vaults,
                 retry_sleep: Callable[[float], None] = time.sleep,
                 render: Callable[[CycleReport], None] = render_report):
        self.config = config
        self.chain = chain
        self.tx_builder = tx_builder
        self.db = db
        self.fetch_vaults = fetch_vaults
        self.render = render

        self.oracle = PriceOracle(price_index, quoter,
                                  wrapper_slippage_bps=config['wrapperSlippageBps'],
                                  quote_slippage_bps=config['compoundSlippageBps'])
        self.batcher = OnchainDataBatcher(chain)
        self.selector = WrapperSelector(self.oracle)
        self.eligibility = EligibilityFilter(quoter, config['compoundSlippageBps'])
        self.retry_book = RetryBook()
        self.beneficiary = beneficiary_for(config, tx_builder.address)
        self.executor = CompoundExecutor(config, chain, tx_builder, quoter, self.retry_book,
                                         self.beneficiary, sleep=retry_sleep)

        self.consecutive_failures = 0
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PollingScheduler":
        w3 = RPCManager().get_w3("berachain", config['rpc'])
        return cls(
            config,
            chain=ChainClient(w3),
            tx_builder=TransactionBuilder(
                w3, config['privateKey'], CHAIN_ID,
                max_fee_multiplier=config['maxFeeMultiplier'],
                priority_fee_gwei=config['priorityFeeGwei'],
            ),
            quoter=EnsoQuoter(config['ensoApiKey']),
            price_index=SubgraphPriceIndex(),
            db=Database(config['dbPath']),
        )

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self):
        self._stop.set()

    def shutdown_handler(self, signum, frame):
        logger.info("Shutdown signal received", status=signum)
        self.stop()

    def candidates_for(self, vault: VaultRecord) -> Optional[List[str]]:
        """Wrappers to compare for a vault; None marks it incompatible"""
        restriction = vault.wrapper_restriction
        if restriction is None:
            return candidate_wrappers(self.config)
        if self.config['onlyAllowDefaultWrapper'] and restriction.lower() != self.config['defaultWrapper'].lower():
            vault.error = (f"wrapper incompatibility: {vault.symbol} requires {restriction}, "
                           f"compoundor only allows {self.config['defaultWrapper']}")
            return None
        return [restriction]

    def native_balance_check(self) -> Optional[str]:
        try:
            balance = self.chain.native_balance(self.tx_builder.address)
        except Exception as e:
            logger.error(f"Native balance check failed: {e}", error_type=type(e).__name__)
            return f"native balance check failed: {e}"
        minimum = Web3.to_wei(self.config['minNativeBalance'], 'ether')
        if balance < minimum:
            logger.warning(f"Native balance {balance} below minimum {minimum}", status=INSUFFICIENT_NATIVE_BALANCE)
            return INSUFFICIENT_NATIVE_BALANCE
        return None

    def run_cycle(self) -> CycleReport:
        started = time.time()
        report = CycleReport(started_at=started)
        self.chain.reset_stats()

        with ThreadPoolExecutor(max_workers=3) as pool:
            vaults_future = pool.submit(self.fetch_vaults, self.config)
            prices_future = pool.submit(self.oracle.refresh, PRICED_TOKENS)
            block_future = pool.submit(self.chain.block_number)
            vaults = vaults_future.result()
            prices_future.result()
            block_number = block_future.result()

        report.block_number = block_number
        for vault in vaults:
            self.oracle.set_price(vault.staking_token, vault.staking_token_price)

        self.batcher.fetch_all(vaults, block_number)

        min_earned = int(self.config['minEarningsBgt'] * 10 ** TOKEN_DECIMALS)
        candidates = {}
        for vault in vaults:
            if vault.error:
                continue
            if vault.earned_reward <= min_earned:
                vault.error = f"insufficient reward (<= {self.config['minEarningsBgt']:g} BGT)"
                continue
            wrappers = self.candidates_for(vault)
            if wrappers is not None:
                candidates[vault.vault_address] = wrappers

        previews = self.batcher.fetch_wrapper_previews(list(candidates.items()), block_number)

        for vault in vaults:
            if vault.vault_address not in candidates:
                continue
            selection = self.selector.select_best(vault, candidates[vault.vault_address], previews)
            if selection is None:
                vault.error = SELECTION_FAILED
                continue
            vault.selected_wrapper = selection.wrapper
            vault.wrapper_mint_amount = selection.mint_amount
            vault.wrapper_value_in_staking_token = selection.value_in_staking_token

        report.eligible, report.ineligible = self.eligibility.filter(vaults)
        report.fetch_seconds = time.time() - started

        tx_started = time.time()
        report.outcomes = self.executor.execute_all(report.eligible, can_continue=self.native_balance_check)
        report.tx_seconds = time.time() - tx_started
        report.total_seconds = time.time() - started
        report.rpc_stats = self.chain.reset_stats()

        self._persist(report)
        self.render(report)
        compoundor_logger.log_performance('cycle', report.total_seconds * 1000, not report.failed, {
            'block_number': block_number,
            'vaults': len(vaults),
            'eligible': len(report.eligible),
            **report.rpc_stats,
        })
        logger.info(f"RPC stats: {report.rpc_stats}")
        return report

    def _persist(self, report: CycleReport):
        for outcome in report.outcomes:
            if outcome.status == STATUS_SUCCESS:
                compoundor_logger.log_transaction(
                    outcome.vault.vault_address, outcome.vault.symbol, outcome.tx_hash,
                    outcome.retry_count, outcome.surplus, outcome.status,
                )
            if self.db is not None:
                self.db.log_outcome(outcome, block_number=report.block_number)

    def run(self, once: bool = False) -> int:
        """Loop until stopped; returns the process exit status"""
        logger.info(f"Starting compoundor loop (execute={self.config['execute']})",
                    status='starting')

        while self.running:
            try:
                failed = self.run_cycle().failed
            except ConfigError as e:
                logger.critical(f"Configuration error: {e}", error_type='config')
                return 1
            except Exception as e:
                logger.error(f"Cycle error: {e}", exc_info=True, error_type='cycle')
                failed = True

            if failed:
                self.consecutive_failures += 1
                logger.warning(f"Cycle failed ({self.consecutive_failures}/{self.config['maxConsecutiveFailures']})",
                               error_type='cycle')
                if self.consecutive_failures >= self.config['maxConsecutiveFailures']:
                    logger.critical("Too many consecutive failed cycles, exiting", error_type='cycle')
                    return 1
            else:
                self.consecutive_failures = 0

            if once:
                break
            self._stop.wait(self.config['loopIntervalSec'])

        logger.info("Compoundor loop stopped")
        return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Kodiak bault BGT compoundor')
    parser.add_argument('--no-execute', action='store_true',
                        help='Simulate compounds without sending transactions')
    parser.add_argument('--once', action='store_true', help='Run a single cycle and exit')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser.parse_args(argv)


def main(argv=None):
    """Entry point"""
    args = parse_args(argv)
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.no_execute:
        config['execute'] = False
    if args.verbose:
        config['logLevel'] = 'DEBUG'

    setup_logging(config)
    scheduler = PollingScheduler.from_config(config)

    signal.signal(signal.SIGINT, scheduler.shutdown_handler)
    signal.signal(signal.SIGTERM, scheduler.shutdown_handler)

    if config['metricsPort'] > 0:
        start_metrics_server(scheduler.db, port=config['metricsPort'])

    sys.exit(scheduler.run(once=args.once))


if __name__ == "__main__":
    main()
