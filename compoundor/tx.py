import logging
from typing import Dict, Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted

from compoundor.config import BOUNTY_HELPER_ADDRESS
from compoundor.errors import SimulationError, TransactionError
from compoundor.rpc import load_contract
from compoundor.schemas import Quote

logger = logging.getLogger(__name__)

NONCE_ERROR_MARKERS = ('nonce', 'already known', 'replacement transaction underpriced')
GAS_LIMIT_BUFFER = 1.2


def is_nonce_error(message: str) -> bool:
    """Nonce-class send errors mean another transaction from this signer is in flight"""
    message = message.lower()
    return any(marker in message for marker in NONCE_ERROR_MARKERS)


class NonceManager:
    """Local nonce tracking so back-to-back sends do not reuse a nonce"""

    def __init__(self):
        self.nonces: Dict[str, int] = {}

    def get_nonce(self, w3: Web3, address: str) -> int:
        """Next nonce: the chain's pending count or one past the last broadcast"""
        address = Web3.to_checksum_address(address)
        chain_nonce = w3.eth.get_transaction_count(address, 'pending')
        if address in self.nonces:
            return max(chain_nonce, self.nonces[address] + 1)
        return chain_nonce

    def mark_sent(self, address: str, nonce: int):
        """Only nonces the node accepted are remembered"""
        address = Web3.to_checksum_address(address)
        self.nonces[address] = max(nonce, self.nonces.get(address, -1))

    def reset(self, address: str):
        address = Web3.to_checksum_address(address)
        self.nonces.pop(address, None)
        logger.info(f"Reset nonce tracking for {address}")


class TransactionBuilder:
    """Simulate, build and send BountyHelper claims as EIP-1559 transactions"""

    def __init__(self, w3: Web3, private_key: str, chain_id: int,
                 max_fee_multiplier: int = 10, priority_fee_gwei: float = 0.1):
        self.w3 = w3
        self.account: LocalAccount = Account.from_key(private_key)
        self.chain_id = chain_id
        self.max_fee_multiplier = max_fee_multiplier
        self.priority_fee_gwei = priority_fee_gwei
        self.nonce_manager = NonceManager()
        self.bounty_helper = load_contract(w3, BOUNTY_HELPER_ADDRESS, "bounty_helper")

    @property
    def address(self) -> str:
        return self.account.address

    def claim_call(self, vault: str, wrapper: str, quote: Quote, min_amount_out: int, beneficiary: str):
        try:
            route_data = bytes.fromhex(quote.tx.data.removeprefix('0x'))
        except ValueError as e:
            raise TransactionError(f"Malformed route calldata: {e}") from e
        return self.bounty_helper.functions.claimBgtWrapper(
            Web3.to_checksum_address(vault),
            Web3.to_checksum_address(wrapper),
            Web3.to_checksum_address(quote.tx.to),
            route_data,
            min_amount_out,
            Web3.to_checksum_address(beneficiary),
        )

    def simulate(self, call) -> int:
        """eth_call then estimate gas; returns the buffered gas limit"""
        try:
            call.call({'from': self.address})
            estimate = call.estimate_gas({'from': self.address})
        except Exception as e:
            raise SimulationError(str(e)) from e
        return int(estimate * GAS_LIMIT_BUFFER)

    def fee_params(self) -> Dict[str, int]:
        base_fee = self.w3.eth.get_block('latest')['baseFeePerGas']
        priority = Web3.to_wei(self.priority_fee_gwei, 'gwei')
        return {
            'maxFeePerGas': base_fee * self.max_fee_multiplier + priority,
            'maxPriorityFeePerGas': priority,
        }

    def build_transaction(self, call, gas_limit: int) -> Dict[str, Any]:
        try:
            params = {
                'from': self.address,
                'gas': gas_limit,
                'nonce': self.nonce_manager.get_nonce(self.w3, self.address),
                'chainId': self.chain_id,
                'value': 0,
            }
            params.update(self.fee_params())
            return call.build_transaction(params)
        except Exception as e:
            raise TransactionError(f"Could not build transaction: {e}") from e

    def send(self, transaction: Dict[str, Any]) -> str:
        """Sign and broadcast; the nonce is committed only once the node accepts it"""
        try:
            signed_tx = self.account.sign_transaction(transaction)
            raw_tx = getattr(signed_tx, 'raw_transaction', None) or getattr(signed_tx, 'rawTransaction', None)
            if not raw_tx:
                raise TransactionError("Cannot find raw transaction attribute in SignedTransaction object")
            tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
        except Exception as e:
            if is_nonce_error(str(e)):
                logger.warning(f"Nonce error detected, resetting nonce for {self.address}")
                self.nonce_manager.reset(self.address)
            if isinstance(e, TransactionError):
                raise
            raise TransactionError(str(e)) from e

        self.nonce_manager.mark_sent(self.address, transaction['nonce'])
        tx_hash = Web3.to_hex(tx_hash)
        logger.info(f"Transaction sent: {tx_hash}")
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        """Receipt of a mined transaction; raises TransactionError on timeout, lookup failure or revert"""
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise TransactionError(f"Receipt not received within {timeout}s") from e
        except Exception as e:
            raise TransactionError(f"Receipt lookup failed for {tx_hash}: {e}") from e

        if receipt['status'] != 1:
            logger.error(f"Transaction reverted: {tx_hash}")
            raise TransactionError(f"Transaction reverted: {tx_hash}")

        logger.info(f"Transaction confirmed: {tx_hash}")
        return receipt
