import os
from typing import Dict, Any, List, Optional
from dotenv import load_dotenv
from web3 import Web3

from compoundor.errors import ConfigError

load_dotenv()

# Network
CHAIN_ID = 80094
EXPLORER_TX_URL = "https://berascan.com/tx"

# External endpoints
KODIAK_VAULTS_API_URL = "https://backend.kodiak.finance/vaults?withBaults=true"
PRICE_SUBGRAPH_URL = (
    "https://api.goldsky.com/api/public/project_clpx84oel0al201r78jsl0r3i"
    "/subgraphs/kodiak-v3-berachain-mainnet/latest/gn"
)
ENSO_ROUTE_URL = "https://api.enso.finance/api/v1/shortcuts/route"

# Contracts
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"
BOUNTY_HELPER_ADDRESS = "0x4a19d3107F81aAa55202264f2c246aA75734eDb6"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# BGT wrappers and the native asset
YBGT = "0x7e768f47dfDD5DAe874Aac233f1Bc5817137E453"
LBGT = "0xBaadCC2962417C01Af99fb2B7C75706B9bd6Babe"
IBGT = "0xac03CABA51e17c86c921E1f6CBFBdC91F8BB2E6b"
MBGT = "0x927439eEf2e2520aFa78D8742cAe7Be3e3e90B11"
WBERA = "0x6969696969696969696969696969696969696969"

# Order matters: index 2 (iBGT) is reported when every wrapper values at zero
WRAPPERS = [YBGT, LBGT, IBGT, MBGT]
DEFAULT_WRAPPER_INDEX = 2

BPS_DENOMINATOR = 10_000
TOKEN_DECIMALS = 18


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_number(name: str, default: float, cast=float):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return cast(default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _split_addresses(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def load_config(require_credentials: bool = True) -> Dict[str, Any]:
    """Load and validate configuration from environment variables"""
    rpc_urls = [url.strip() for url in os.getenv('RPC_URL', '').split(',') if url.strip()]

    config = {
        'chainId': CHAIN_ID,
        'rpc': rpc_urls,
        'privateKey': os.getenv('PRIVATE_KEY'),
        'ensoApiKey': os.getenv('ENSO_API_KEY'),
        'beneficiary': os.getenv('BENEFICIARY_ADDRESS', '').strip(),
        'loopIntervalSec': _get_number('LOOP_INTERVAL_SEC', 20),
        'retryIntervalSec': _get_number('RETRY_INTERVAL_SEC', 10),
        'maxRetries': _get_number('MAX_RETRIES', 2, int),
        'compoundSlippageBps': _get_number('COMPOUND_SLIPPAGE_BPS', 20, int),
        'maxCompoundSlippageBps': _get_number('MAX_COMPOUND_SLIPPAGE_BPS', 100, int),
        'slippageIncrementBps': _get_number('SLIPPAGE_INCREMENT_BPS', 15, int),
        'wrapperSlippageBps': _get_number('WRAPPER_SLIPPAGE_BPS', 100, int),
        'minEarningsBgt': _get_number('MIN_EARNINGS_BGT', 1),
        'minNativeBalance': _get_number('MIN_NATIVE_BALANCE', 0.1),
        'onlyAllowDefaultWrapper': _get_bool('ONLY_ALLOW_DEFAULT_WRAPPER', False),
        'defaultWrapper': os.getenv('DEFAULT_BGT_WRAPPER', IBGT).strip(),
        'onlyBaults': _split_addresses('ONLY_BAULT_ADDRESSES'),
        'onlyStakingTokens': _split_addresses('ONLY_STAKING_TOKEN_ADDRESSES'),
        'execute': _get_bool('EXECUTE', True),
        'receiptTimeoutSec': _get_number('RECEIPT_TIMEOUT_SEC', 10),
        'maxFeeMultiplier': _get_number('MAX_FEE_MULTIPLIER', 10, int),
        'priorityFeeGwei': _get_number('PRIORITY_FEE_GWEI', 0.1),
        'maxConsecutiveFailures': _get_number('MAX_CONSECUTIVE_FAILURES', 5, int),
        'logLevel': os.getenv('LOG_LEVEL', 'INFO').upper(),
        'metricsPort': _get_number('METRICS_PORT', 0, int),
        'dbPath': os.getenv('DB_PATH', 'data/compoundor.db'),
    }

    validate_config(config, require_credentials=require_credentials)
    return config


def validate_config(config: Dict[str, Any], require_credentials: bool = True) -> None:
    """Raise ConfigError when the configuration cannot be run"""
    if require_credentials:
        if not config.get('privateKey'):
            raise ConfigError("Missing PRIVATE_KEY")
        if not config.get('ensoApiKey'):
            raise ConfigError("Missing ENSO_API_KEY")
        if not config.get('rpc'):
            raise ConfigError("Missing RPC_URL")

    check_wrapper_slippage(config['wrapperSlippageBps'])

    for key in ('compoundSlippageBps', 'maxCompoundSlippageBps', 'slippageIncrementBps'):
        if config[key] < 0:
            raise ConfigError(f"{key} must be >= 0")
    if config['compoundSlippageBps'] > config['maxCompoundSlippageBps']:
        raise ConfigError("compoundSlippageBps must not exceed maxCompoundSlippageBps")
    if config['maxCompoundSlippageBps'] >= BPS_DENOMINATOR:
        raise ConfigError("maxCompoundSlippageBps must be below 10000")

    if config['maxRetries'] < 0:
        raise ConfigError("maxRetries must be >= 0")
    for key in ('loopIntervalSec', 'retryIntervalSec', 'receiptTimeoutSec'):
        if config[key] <= 0:
            raise ConfigError(f"{key} must be > 0")
    if config['maxConsecutiveFailures'] < 1:
        raise ConfigError("maxConsecutiveFailures must be >= 1")

    for key in ('beneficiary', 'defaultWrapper'):
        value = config.get(key)
        if value and not Web3.is_address(value):
            raise ConfigError(f"{key} is not a valid address: {value}")


def check_wrapper_slippage(bps: int) -> None:
    """Wrapper valuation slippage must leave something to value"""
    if bps < 0 or bps >= BPS_DENOMINATOR:
        raise ConfigError(f"WRAPPER_SLIPPAGE_BPS must be in [0, 10000), got {bps}")


def candidate_wrappers(config: Dict[str, Any]) -> List[str]:
    """Wrappers compared for a vault without an on-chain restriction"""
    if config.get('onlyAllowDefaultWrapper'):
        return [Web3.to_checksum_address(config['defaultWrapper'])]
    return list(WRAPPERS)


def compound_slippage_for_attempt(config: Dict[str, Any], attempt: int) -> int:
    """Slippage in bps for a given retry attempt, capped at the configured max"""
    widened = config['compoundSlippageBps'] + config['slippageIncrementBps'] * attempt
    return min(widened, config['maxCompoundSlippageBps'])


def beneficiary_for(config: Dict[str, Any], signer: Optional[str]) -> str:
    """Configured beneficiary or the signer address"""
    if config.get('beneficiary'):
        return Web3.to_checksum_address(config['beneficiary'])
    if not signer:
        raise ConfigError("No beneficiary configured and no signer available")
    return Web3.to_checksum_address(signer)
