import asyncio

import fakeredis

from backend import RedisBackend
from models import Player


class FakeClock:
    """Monotonic clock the memory backend reads expiry deadlines from."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_redis_backend(server=None, ttl: int = 60) -> RedisBackend:
    server = server or fakeredis.FakeServer()
    return RedisBackend(
        redis_client=fakeredis.FakeRedis(server=server, decode_responses=True),
        pubsub_client=fakeredis.FakeRedis(server=server, decode_responses=True),
        ttl=ttl,
    )


def make_players(count: int, **fields):
    return [Player(name=f"player-{i}", **fields) for i in range(count)]


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_text(self, data: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


async def wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)
