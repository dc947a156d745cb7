"""
Logging configuration for the bault compoundor

The terminal gets short colored lines. data/logs keeps a detailed text log,
a JSON-lines copy, an errors-only file, one line per confirmed compound
transaction and per-cycle timings.
"""

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

# Keyword context recognised on records, in display order
CONTEXT_FIELDS = ('vault', 'symbol', 'wrapper', 'tx_hash', 'retry_count', 'status', 'error_type')

MB = 1024 * 1024


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'ts': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        entry.update(_context(record))
        for key in ('operation', 'duration_ms', 'success', 'block_number', 'vaults', 'eligible', 'multicall', 'requests'):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class DetailedFormatter(logging.Formatter):

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        level = f"{record.levelname:<8}"
        color = self.LEVEL_COLORS.get(record.levelno)
        if self.use_color and color:
            level = f"{color}{level}{self.RESET}"

        line = f"[{when}] {level} {record.name}: {record.getMessage()}"

        context = _context(record)
        if isinstance(context.get('tx_hash'), str):
            context['tx_hash'] = context['tx_hash'][:10] + "..."
        if context:
            line += "  (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"

        if record.levelno >= logging.WARNING:
            line += f"\n    at {record.filename}:{record.lineno} {record.funcName}()"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _file_handler(path: Path, level: int, formatter: logging.Formatter,
                  max_mb: int = 10, backups: int = 5) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_mb * MB, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _side_logger(name: str, handler: logging.Handler) -> logging.Logger:
    side = logging.getLogger(name)
    side.setLevel(logging.DEBUG)
    side.handlers.clear()
    side.addHandler(handler)
    side.propagate = False
    return side


class CompoundorLogger:
    """Wraps a stdlib logger so context can be passed as keyword arguments"""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.tx_logger: Optional[logging.Logger] = None
        self.perf_logger: Optional[logging.Logger] = None
        self._configured = False

    def setup(self, config: Dict[str, Any], log_dir: str = "data/logs"):
        if self._configured:
            return

        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        level = getattr(logging, str(config.get('logLevel', 'INFO')).upper(), logging.INFO)

        self.logger.setLevel(logging.DEBUG)
        self.logger.handlers.clear()

        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(DetailedFormatter(use_color=True))
        self.logger.addHandler(console)

        plain = DetailedFormatter(use_color=False)
        self.logger.addHandler(_file_handler(log_path / "compoundor.log", logging.DEBUG, plain))
        self.logger.addHandler(_file_handler(log_path / "compoundor.jsonl", logging.DEBUG, StructuredFormatter()))
        self.logger.addHandler(_file_handler(log_path / "errors.log", logging.ERROR, plain, max_mb=5))

        tx_format = logging.Formatter('%(asctime)s %(message)s', datefmt='%Y-%m-%dT%H:%M:%S')
        self.tx_logger = _side_logger(
            f"{self.logger.name}.tx",
            _file_handler(log_path / "transactions.log", logging.INFO, tx_format, backups=20),
        )
        self.perf_logger = _side_logger(
            f"{self.logger.name}.perf",
            _file_handler(log_path / "cycles.jsonl", logging.DEBUG, StructuredFormatter(), max_mb=5, backups=3),
        )

        self._configured = True
        self.logger.debug(f"Logging to {log_path.resolve()}")

    def log_transaction(self, vault: str, symbol: str, tx_hash: str,
                        retry_count: int, surplus: Optional[int], status: str):
        """One line per compound transaction that reached the chain"""
        if self.tx_logger:
            self.tx_logger.info(
                f"{status} {symbol} vault={vault} tx={tx_hash} retries={retry_count} surplus={surplus}"
            )
        self.logger.info(f"Compounded {symbol}", extra={
            'vault': vault, 'symbol': symbol, 'tx_hash': tx_hash,
            'retry_count': retry_count, 'status': status,
        })

    def log_performance(self, operation: str, duration_ms: float,
                        success: bool, details: Optional[Dict[str, Any]] = None):
        extra = {'operation': operation, 'duration_ms': round(duration_ms, 1), 'success': success}
        extra.update(details or {})
        target = self.perf_logger or self.logger
        target.debug(f"{operation} took {duration_ms:.0f}ms", extra=extra)

    def debug(self, msg: str, **kwargs):
        self.logger.debug(msg, extra=kwargs)

    def info(self, msg: str, **kwargs):
        self.logger.info(msg, extra=kwargs)

    def warning(self, msg: str, **kwargs):
        self.logger.warning(msg, extra=kwargs)

    def error(self, msg: str, exc_info: bool = False, **kwargs):
        self.logger.error(msg, exc_info=exc_info, extra=kwargs)

    def critical(self, msg: str, **kwargs):
        self.logger.critical(msg, extra=kwargs)


compoundor_logger = CompoundorLogger("compoundor")


def setup_logging(config: Dict[str, Any], log_dir: str = "data/logs"):
    """Configure the package root logger; module loggers propagate to it"""
    compoundor_logger.setup(config, log_dir=log_dir)


def get_logger(name: str) -> CompoundorLogger:
    return CompoundorLogger(name)
