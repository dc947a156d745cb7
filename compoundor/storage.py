import sqlite3
import logging
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, List, Dict, Any
from contextlib import contextmanager

from compoundor.models import STATUS_FAILED, STATUS_SKIPPED, STATUS_SUCCESS, CompoundOutcome

logger = logging.getLogger(__name__)

# surplus is TEXT since 18-decimal amounts overflow sqlite INTEGER
SCHEMA = '''
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    block_number INTEGER,
    vault TEXT NOT NULL,
    symbol TEXT,
    wrapper TEXT,
    status TEXT NOT NULL,
    tx_hash TEXT,
    retry_count INTEGER DEFAULT 0,
    surplus TEXT,
    error TEXT
);
CREATE TABLE IF NOT EXISTS vault_state (
    vault TEXT PRIMARY KEY,
    last_success_ts INTEGER,
    last_tx_hash TEXT,
    failure_streak INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_runs_ts ON runs(timestamp);
CREATE INDEX IF NOT EXISTS idx_runs_vault_status ON runs(vault, status);
'''

RUN_COLUMNS = ('vault', 'symbol', 'wrapper', 'status', 'tx_hash', 'retry_count', 'surplus', 'error', 'block_number')


class Database:
    """SQLite history of compound outcomes"""

    def __init__(self, db_path: str = "data/compoundor.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with self.get_conn() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def log_outcome(self, outcome: CompoundOutcome, block_number: Optional[int] = None):
        """Append one executor outcome; vault_state is keyed by lowercase address"""
        vault = outcome.vault
        now = int(time.time())
        surplus = None if outcome.surplus is None else str(outcome.surplus)

        with self.get_conn() as conn:
            conn.execute(
                'INSERT INTO runs (timestamp, block_number, vault, symbol, wrapper, status, '
                'tx_hash, retry_count, surplus, error) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
                (now, block_number, vault.vault_address, vault.symbol, vault.selected_wrapper,
                 outcome.status, outcome.tx_hash, outcome.retry_count, surplus, outcome.error),
            )

            if outcome.status == STATUS_SUCCESS:
                conn.execute(
                    'INSERT INTO vault_state (vault, last_success_ts, last_tx_hash, failure_streak) '
                    'VALUES (?, ?, ?, 0) ON CONFLICT(vault) DO UPDATE SET '
                    'last_success_ts = excluded.last_success_ts, '
                    'last_tx_hash = excluded.last_tx_hash, failure_streak = 0',
                    (vault.vault_address.lower(), now, outcome.tx_hash),
                )
            elif outcome.status == STATUS_FAILED:
                conn.execute(
                    'INSERT INTO vault_state (vault, failure_streak) VALUES (?, 1) '
                    'ON CONFLICT(vault) DO UPDATE SET failure_streak = failure_streak + 1',
                    (vault.vault_address.lower(),),
                )

        if outcome.status == STATUS_FAILED:
            logger.debug(f"Recorded failure for {vault.symbol}: {outcome.error}")

    def get_consecutive_failures(self, vault: str) -> int:
        with self.get_conn() as conn:
            row = conn.execute('SELECT failure_streak FROM vault_state WHERE vault = ?', (vault.lower(),)).fetchone()
        return row['failure_streak'] if row else 0

    def get_daily_summary(self, date: Optional[datetime] = None) -> Dict[str, Any]:
        """Outcome counts for one local day, plus successful compounds per vault"""
        day = (date or datetime.now()).replace(hour=0, minute=0, second=0, microsecond=0)
        start = int(day.timestamp())
        end = int((day + timedelta(days=1)).timestamp())

        with self.get_conn() as conn:
            by_status = conn.execute(
                'SELECT status, COUNT(*) AS n FROM runs WHERE timestamp >= ? AND timestamp < ? GROUP BY status',
                (start, end),
            ).fetchall()
            vaults = conn.execute(
                'SELECT vault, symbol, COUNT(*) AS compounds FROM runs '
                'WHERE timestamp >= ? AND timestamp < ? AND status = ? GROUP BY vault ORDER BY compounds DESC',
                (start, end, STATUS_SUCCESS),
            ).fetchall()

        counts = {r['status']: r['n'] for r in by_status}
        return {
            'date': day.strftime('%Y-%m-%d'),
            'total_runs': sum(counts.values()),
            'success': counts.get(STATUS_SUCCESS, 0),
            'skipped': counts.get(STATUS_SKIPPED, 0),
            'failed': counts.get(STATUS_FAILED, 0),
            'vaults': [dict(r) for r in vaults],
        }

    def recent_runs(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.get_conn() as conn:
            rows = conn.execute('SELECT * FROM runs ORDER BY id DESC LIMIT ?', (limit,)).fetchall()

        runs = []
        for row in rows:
            run = {key: row[key] for key in RUN_COLUMNS}
            run['timestamp'] = datetime.fromtimestamp(row['timestamp']).isoformat()
            runs.append(run)
        return runs
