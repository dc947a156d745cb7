from compoundor.config import IBGT
from compoundor.executor import CompoundExecutor
from compoundor.models import STATUS_FAILED, STATUS_SKIPPED, STATUS_SUCCESS, EligibleVault, RetryBook

from conftest import ISLAND_B, ONE, SIGNER, VAULT_A, VAULT_B, FakeQuoter, FakeTxBuilder, make_config, make_quote, make_vault


def setup(chain, script=None, quote_amount=10 * ONE, quoter=None, **config):
    sleeps = []
    book = RetryBook()
    tx = FakeTxBuilder(script)
    quoter = quoter or FakeQuoter(amount_out=quote_amount)
    executor = CompoundExecutor(make_config(**config), chain, tx, quoter, book, SIGNER, sleep=sleeps.append)
    return executor, tx, quoter, book, sleeps


def eligible(bounty=5 * ONE, earned=20 * ONE, quote_amount=10 * ONE):
    vault = make_vault(bounty=bounty, earned_reward=earned, selected_wrapper=IBGT, wrapper_mint_amount=8 * ONE)
    return EligibleVault(vault=vault, quote=make_quote(quote_amount))


def test_success_reports_surplus(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    chain.balances = [100, 175]
    executor, tx, quoter, book, sleeps = setup(chain)

    outcome = executor.compound(eligible())

    assert outcome.status == STATUS_SUCCESS
    assert outcome.retry_count == 0
    assert outcome.surplus == 75
    assert outcome.tx_hash
    assert quoter.calls == []
    assert len(book) == 0 and sleeps == []


def test_revert_then_success(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["revert", "ok"])

    outcome = executor.compound(eligible())

    assert outcome.status == STATUS_SUCCESS
    assert outcome.retry_count == 1
    assert VAULT_A not in book
    assert sleeps == [10]
    assert quoter.calls == [(IBGT, eligible().vault.staking_token, 8 * ONE, 35)]


def test_exhausted_retries_fail(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["revert"] * 5)
    recorded = []
    original = book.record_failure
    book.record_failure = lambda *args: recorded.append(args[1]) or original(*args)

    outcome = executor.compound(eligible())

    assert outcome.status == STATUS_FAILED
    assert outcome.retry_count == 2
    assert recorded == [1, 2]
    assert len(tx.sent) == 3
    assert len(sleeps) == 2
    assert len(book) == 0
    assert [call[3] for call in quoter.calls] == [35, 50]


def test_slippage_capped_at_max(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["revert"] * 5, maxRetries=4,
                                               maxCompoundSlippageBps=60)
    executor.compound(eligible())
    assert [call[3] for call in quoter.calls] == [35, 50, 60, 60]


def test_claimed_by_another_actor(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    chain.earned_now[VAULT_A.lower()] = ONE
    executor, tx, quoter, book, sleeps = setup(chain, script=["revert", "ok"])

    outcome = executor.compound(eligible())

    assert outcome.status == STATUS_SKIPPED
    assert outcome.error == "already compounded by another actor"
    assert len(tx.sent) == 1
    assert len(book) == 0


def test_earned_read_error_continues(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    chain.earned_read_error = True
    executor, tx, quoter, book, sleeps = setup(chain, script=["revert", "ok"])
    assert executor.compound(eligible()).status == STATUS_SUCCESS


def test_retry_quote_error_skips(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["simulate"], quoter=FakeQuoter(error="HTTP 500"))

    outcome = executor.compound(eligible())

    assert outcome.status == STATUS_SKIPPED
    assert outcome.error == "quote failed: HTTP 500"
    assert outcome.retry_count == 1


def test_retry_quote_below_bounty_skips(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["revert"], quote_amount=ONE)
    outcome = executor.compound(eligible())
    assert outcome.status == STATUS_SKIPPED
    assert outcome.error == "quote now below bounty"


def test_execute_disabled_simulates_only(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, execute=False)

    outcome = executor.compound(eligible())

    assert outcome.status == STATUS_SKIPPED
    assert outcome.error == "execute mode disabled"
    assert tx.simulated == 1
    assert tx.sent == []


def test_nonce_conflict_skips_without_retry(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["nonce"])
    outcome = executor.compound(eligible())
    assert outcome.status == STATUS_SKIPPED
    assert outcome.error.startswith("nonce conflict")
    assert sleeps == []


def test_timeout_is_retryable(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["timeout", "send", "ok"])
    outcome = executor.compound(eligible())
    assert outcome.status == STATUS_SUCCESS
    assert outcome.retry_count == 2


def test_stop_reason_skips_remaining(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain)
    reasons = iter([None, "insufficient native balance"])

    outcomes = executor.execute_all([eligible(), eligible(), eligible()], can_continue=lambda: next(reasons))

    assert [o.status for o in outcomes] == [STATUS_SUCCESS, STATUS_SKIPPED, STATUS_SKIPPED]
    assert outcomes[2].error == "insufficient native balance"
    assert len(tx.sent) == 1


def test_unexpected_error_fails_only_that_vault(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    chain.add_vault(VAULT_B, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["build"] * 3 + ["ok"])
    other = make_vault(VAULT_B, ISLAND_B, "KODI-B", bounty=5 * ONE, earned_reward=20 * ONE,
                       selected_wrapper=IBGT, wrapper_mint_amount=8 * ONE)

    outcomes = executor.execute_all([eligible(), EligibleVault(vault=other, quote=make_quote(10 * ONE))])

    assert [o.status for o in outcomes] == [STATUS_FAILED, STATUS_SUCCESS]
    assert outcomes[0].retry_count == 2
    assert "rpc down while reading baseFee" in outcomes[0].error
    assert len(tx.sent) == 1
    assert len(book) == 0


def test_failed_outcome_keeps_broadcast_tx_hash(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain, script=["timeout"] * 3)

    outcome = executor.compound(eligible())

    assert outcome.status == STATUS_FAILED
    assert outcome.tx_hash == f"0x{3:064x}"


def test_raising_pre_compound_check_skips_remaining(chain):
    chain.add_vault(VAULT_A, earned=20 * ONE)
    executor, tx, quoter, book, sleeps = setup(chain)

    def check():
        raise ConnectionError("eth_getBalance failed")

    outcomes = executor.execute_all([eligible(), eligible()], can_continue=check)

    assert [o.status for o in outcomes] == [STATUS_SKIPPED, STATUS_SKIPPED]
    assert all("eth_getBalance failed" in o.error for o in outcomes)
    assert tx.sent == []
