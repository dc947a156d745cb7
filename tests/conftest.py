from typing import Dict, List, Optional

import pytest
from eth_abi import encode

from compoundor.batcher import BOUNTY, EARNED, ONLY_ALLOWED_WRAPPER, preview_call
from compoundor.config import IBGT, ZERO_ADDRESS
from compoundor.errors import BatchFetchError, PriceIndexError, QuoteError, SimulationError, TransactionError
from compoundor.models import VaultRecord
from compoundor.schemas import Quote, QuoteTx

VAULT_A = "0x1111111111111111111111111111111111111111"
VAULT_B = "0x2222222222222222222222222222222222222222"
VAULT_C = "0x3333333333333333333333333333333333333333"
ISLAND_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
ISLAND_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
ISLAND_C = "0xcccccccccccccccccccccccccccccccccccccccc"
SIGNER = "0x9999999999999999999999999999999999999999"

ONE = 10 ** 18


def make_config(**overrides) -> Dict:
    config = {
        'chainId': 80094,
        'rpc': ["http://localhost:8545"],
        'privateKey': "0x" + "11" * 32,
        'ensoApiKey': "test-key",
        'beneficiary': '',
        'loopIntervalSec': 0,
        'retryIntervalSec': 10,
        'maxRetries': 2,
        'compoundSlippageBps': 20,
        'maxCompoundSlippageBps': 100,
        'slippageIncrementBps': 15,
        'wrapperSlippageBps': 100,
        'minEarningsBgt': 1,
        'minNativeBalance': 0.1,
        'onlyAllowDefaultWrapper': False,
        'defaultWrapper': IBGT,
        'onlyBaults': [],
        'onlyStakingTokens': [],
        'execute': True,
        'receiptTimeoutSec': 10,
        'maxFeeMultiplier': 10,
        'priorityFeeGwei': 0.1,
        'maxConsecutiveFailures': 3,
        'logLevel': 'INFO',
        'metricsPort': 0,
        'dbPath': ':memory:',
    }
    config.update(overrides)
    return config


def make_quote(amount_out: int) -> Quote:
    return Quote(amount_out=amount_out, tx=QuoteTx(to="0x5555555555555555555555555555555555555555", data="0xdeadbeef"))


def make_vault(address=VAULT_A, island=ISLAND_A, symbol="KODI-A", **fields) -> VaultRecord:
    return VaultRecord(vault_address=address, staking_token=island, symbol=symbol, **fields)


def uint(value: int) -> bytes:
    return encode(['uint256'], [value])


def address_word(value: str) -> bytes:
    return encode(['address'], [value])


class FakeChain:
    """Answers multicall batches from per-vault state"""

    def __init__(self, block: int = 1000):
        self.block = block
        self.state: Dict[str, Dict] = {}
        self.multicall_batches: List = []
        self.fail_multicall = False
        self.earned_now: Dict[str, int] = {}
        self.earned_read_error = False
        self.balances: List[int] = [0, 0]
        self.native = 10 * ONE
        self.native_error = False

    def add_vault(self, address: str, bounty: int = 0, earned: int = 0, wrapper: str = ZERO_ADDRESS,
                  previews: Optional[Dict[str, int]] = None, preview_earned: Optional[int] = None,
                  failing: tuple = ()):
        self.state[address.lower()] = {
            'bounty': bounty,
            'earned': earned,
            'wrapper': wrapper,
            'previews': {k.lower(): v for k, v in (previews or {}).items()},
            'preview_earned': earned if preview_earned is None else preview_earned,
            'failing': set(failing),
        }

    def _answer(self, target: str, data: bytes, in_preview_batch: bool):
        vault = self.state.get(target.lower())
        if vault is None:
            return False, b""
        if data == BOUNTY:
            name, value = 'bounty', uint(vault['bounty'])
        elif data == EARNED:
            earned = vault['preview_earned'] if in_preview_batch else vault['earned']
            name, value = 'earned', uint(earned)
        elif data == ONLY_ALLOWED_WRAPPER:
            name, value = 'wrapper', address_word(vault['wrapper'])
        else:
            for wrapper, amount in vault['previews'].items():
                if data == preview_call(wrapper):
                    if f"preview:{wrapper}" in vault['failing']:
                        return False, b""
                    return True, uint(amount)
            name, value = 'preview', uint(0)
        if name in vault['failing']:
            return False, b""
        return True, value

    def multicall(self, calls, block_number):
        if self.fail_multicall:
            raise BatchFetchError("rpc down")
        if not calls:
            return []
        in_preview_batch = any(data not in (BOUNTY, EARNED, ONLY_ALLOWED_WRAPPER) for _, data in calls)
        self.multicall_batches.append((list(calls), block_number))
        return [self._answer(target, data, in_preview_batch) for target, data in calls]

    def block_number(self):
        return self.block

    def read_uint(self, target, signature, block_identifier='latest'):
        if self.earned_read_error:
            raise ConnectionError("read failed")
        return self.earned_now.get(target.lower(), self.state.get(target.lower(), {}).get('earned', 0))

    def token_balance(self, token, owner):
        return self.balances.pop(0) if self.balances else 0

    def native_balance(self, address):
        if self.native_error:
            raise ConnectionError("eth_getBalance failed")
        return self.native

    def reset_stats(self):
        return {'multicall': len(self.multicall_batches), 'requests': 0}


class FakeQuoter:
    """Returns amount_out from a callable or fixed value; records every request"""

    def __init__(self, amount_out=None, error: Optional[str] = None):
        self.amount_out = amount_out
        self.error = error
        self.calls = []

    def quote(self, token_in, token_out, amount, slippage_bps):
        self.calls.append((token_in, token_out, amount, slippage_bps))
        if self.error:
            raise QuoteError(self.error)
        value = self.amount_out(token_in, token_out, amount) if callable(self.amount_out) else self.amount_out
        if isinstance(value, Exception):
            raise value
        return make_quote(value)


class FakePriceIndex:

    def __init__(self, prices: Optional[Dict[str, float]] = None, base_price: float = 0.5, fail: bool = False):
        self.prices = {k.lower(): v for k, v in (prices or {}).items()}
        self.base_price = base_price
        self.fail = fail
        self.base_calls = 0

    def fetch_base_price(self):
        self.base_calls += 1
        if self.fail:
            raise PriceIndexError("subgraph down")
        return self.base_price

    def fetch_prices(self, tokens, base_price=None):
        if base_price is None:
            self.fetch_base_price()
        return {t.lower(): self.prices[t.lower()] for t in tokens if t.lower() in self.prices}


class FakeTxBuilder:
    """Scripted attempts: ok, revert, timeout, simulate, nonce, send, build"""

    address = SIGNER

    def __init__(self, script: Optional[List[str]] = None):
        self.script = list(script or [])
        self.simulated = 0
        self.sent = []
        self._current = None

    def claim_call(self, vault, wrapper, quote, min_amount_out, beneficiary):
        self._current = self.script.pop(0) if self.script else "ok"
        return {'vault': vault, 'wrapper': wrapper, 'min_amount_out': min_amount_out, 'beneficiary': beneficiary}

    def simulate(self, call):
        self.simulated += 1
        if self._current == "simulate":
            raise SimulationError("execution reverted")
        return 300000

    def build_transaction(self, call, gas_limit):
        if self._current == "build":
            raise ConnectionError("rpc down while reading baseFee")
        return dict(call, gas=gas_limit)

    def send(self, transaction):
        if self._current == "nonce":
            raise TransactionError("nonce too low")
        if self._current == "send":
            raise TransactionError("connection reset")
        self.sent.append(transaction)
        return f"0x{len(self.sent):064x}"

    def wait_for_receipt(self, tx_hash, timeout):
        if self._current == "revert":
            raise TransactionError(f"Transaction reverted: {tx_hash}")
        if self._current == "timeout":
            raise TransactionError(f"Receipt not received within {timeout}s")
        return {'status': 1, 'transactionHash': tx_hash}


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def chain():
    return FakeChain()
