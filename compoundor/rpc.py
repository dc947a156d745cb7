import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak
from web3 import Web3
from web3.providers import HTTPProvider
from tenacity import retry, stop_after_attempt, wait_exponential

from compoundor.config import MULTICALL3_ADDRESS
from compoundor.errors import BatchFetchError

logger = logging.getLogger(__name__)

ABI_DIR = Path(__file__).parent / "abis"

# (target, calldata)
Call = Tuple[str, bytes]


class RPCManager:
    """Manage Web3 connections with fallback support"""

    def __init__(self):
        self.connections: Dict[str, Web3] = {}

    def get_w3(self, chain_name: str, rpc_urls: List[str]) -> Web3:
        """Get Web3 instance, trying each endpoint in order"""
        if chain_name in self.connections and self.connections[chain_name].is_connected():
            return self.connections[chain_name]

        for i, url in enumerate(rpc_urls):
            try:
                w3 = Web3(HTTPProvider(url, request_kwargs={'timeout': 20}))
                if w3.is_connected():
                    self.connections[chain_name] = w3
                    logger.info(f"Connected to {chain_name} via RPC #{i}")
                    return w3
            except Exception as e:
                logger.warning(f"Failed to connect to {chain_name} RPC #{i}: {e}")
                continue

        raise RuntimeError(f"No healthy RPC for {chain_name}")


def selector(signature: str) -> bytes:
    """4-byte selector for a full signature like 'earned()'"""
    return keccak(text=signature)[:4]


def encode_call(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> bytes:
    return selector(signature) + (encode(list(arg_types), list(args)) if arg_types else b"")


def decode_uint(data: bytes) -> int:
    """Decode a single uint256 return value; raises DecodingError on short data"""
    return decode(['uint256'], data)[0]


def decode_address(data: bytes) -> str:
    return Web3.to_checksum_address(decode(['address'], data)[0])


def load_contract(w3: Web3, address: str, abi_name: str):
    """Load contract instance from abis/<abi_name>.json"""
    with open(ABI_DIR / f"{abi_name}.json", 'r') as f:
        abi = json.load(f)
    return w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)


class ChainClient:
    """Chain reads used by the compoundor, counted per cycle"""

    def __init__(self, w3: Web3, multicall_address: str = MULTICALL3_ADDRESS):
        self.w3 = w3
        self.multicall_contract = load_contract(w3, multicall_address, "multicall3")
        self.stats = {'multicall': 0, 'requests': 0}

    def reset_stats(self) -> Dict[str, int]:
        """Return the counters collected since the last reset and zero them"""
        stats = dict(self.stats)
        self.stats = {'multicall': 0, 'requests': 0}
        return stats

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    def block_number(self) -> int:
        self.stats['requests'] += 1
        return self.w3.eth.block_number

    def multicall(self, calls: List[Call], block_number: int) -> List[Tuple[bool, bytes]]:
        """aggregate3 with allowFailure on every call, pinned to block_number"""
        if not calls:
            return []
        self.stats['multicall'] += 1
        payload = [(Web3.to_checksum_address(target), True, data) for target, data in calls]
        try:
            results = self.multicall_contract.functions.aggregate3(payload).call(block_identifier=block_number)
        except Exception as e:
            raise BatchFetchError(f"Multicall of {len(calls)} calls failed at block {block_number}: {e}") from e
        if len(results) != len(calls):
            raise BatchFetchError(f"Multicall returned {len(results)} results for {len(calls)} calls")
        return [(bool(success), bytes(data)) for success, data in results]

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    def read_uint(self, target: str, signature: str, block_identifier='latest') -> int:
        """eth_call a zero-argument uint256 getter"""
        self.stats['requests'] += 1
        data = self.w3.eth.call(
            {'to': Web3.to_checksum_address(target), 'data': selector(signature)},
            block_identifier=block_identifier,
        )
        return decode_uint(data)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    def token_balance(self, token: str, owner: str) -> int:
        self.stats['requests'] += 1
        erc20 = load_contract(self.w3, token, "erc20")
        return erc20.functions.balanceOf(Web3.to_checksum_address(owner)).call()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    def native_balance(self, address: str) -> int:
        """Native balance in wei"""
        self.stats['requests'] += 1
        return self.w3.eth.get_balance(Web3.to_checksum_address(address))


def safe_decode_uint(data: bytes):
    """uint256 or None when the return data is undecodable"""
    try:
        return decode_uint(data)
    except DecodingError:
        return None


def safe_decode_address(data: bytes):
    try:
        return decode_address(data)
    except (DecodingError, ValueError):
        return None
