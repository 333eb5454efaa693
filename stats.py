from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Iterable

import redis

from constants import REDIS_URL, STATS_BACKEND
from logging_config import get_logger
from redis_keys import REDIS_STATS_KEY
from roles import RoundOutcome

logger = get_logger(__name__)


class StatsRecorder(ABC):
    """Per-account games/wins/losses counters kept outside the room store."""

    @abstractmethod
    def record(self, account_ref: str, won: bool, role: str): ...

    def record_round(self, outcomes: Iterable[RoundOutcome]):
        # Runs after the response has been sent, so failures are logged, not raised
        for outcome in outcomes:
            if not outcome.account_ref:
                continue
            try:
                self.record(outcome.account_ref, outcome.won, outcome.role.value)
            except Exception as e:
                logger.error(f"Failed to record stats for account {outcome.account_ref}: {e}", exc_info=True)


class NullStatsRecorder(StatsRecorder):
    def record(self, account_ref: str, won: bool, role: str):
        logger.debug(f"Stats disabled, dropping result for {account_ref}")


class MemoryStatsRecorder(StatsRecorder):
    def __init__(self):
        self.counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def record(self, account_ref: str, won: bool, role: str):
        counters = self.counters[account_ref]
        counters["games"] += 1
        counters["wins" if won else "losses"] += 1
        counters[role] += 1


class RedisStatsRecorder(StatsRecorder):
    def __init__(self, redis_client: redis.Redis = None):
        self.redis_client = redis_client or redis.Redis.from_url(REDIS_URL, decode_responses=True)

    def record(self, account_ref: str, won: bool, role: str):
        key = REDIS_STATS_KEY.format(account_ref=account_ref)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hincrby(key, "games", 1)
        pipe.hincrby(key, "wins", 1 if won else 0)
        pipe.hincrby(key, "losses", 0 if won else 1)
        pipe.hincrby(key, role, 1)
        pipe.execute()
        logger.debug(f"Recorded {'win' if won else 'loss'} as {role} for account {account_ref}")

    def get(self, account_ref: str) -> Dict[str, int]:
        raw = self.redis_client.hgetall(REDIS_STATS_KEY.format(account_ref=account_ref))
        return {k: int(v) for k, v in raw.items()}


def build_stats_recorder(kind: str = STATS_BACKEND) -> StatsRecorder:
    if kind == "redis":
        return RedisStatsRecorder()
    if kind == "memory":
        return MemoryStatsRecorder()
    if kind == "none":
        return NullStatsRecorder()
    raise ValueError(f"Unknown stats backend: {kind}")
