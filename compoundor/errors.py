class CompoundorError(Exception):
    """Base class for compoundor errors"""


class ConfigError(CompoundorError, ValueError):
    """Invalid or missing configuration"""


class BackendError(CompoundorError):
    """Vault list could not be fetched or parsed"""


class PriceIndexError(CompoundorError):
    """Price subgraph returned no usable data"""


class QuoteError(CompoundorError):
    """Swap quote request failed or returned no usable amountOut"""


class BatchFetchError(CompoundorError):
    """A whole multicall batch failed"""


class SimulationError(CompoundorError):
    """Transaction simulation reverted"""


class TransactionError(CompoundorError):
    """Sending or confirming a transaction failed"""
