import sys, os
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from utils import redis_wrapper
from utils.redis_wrapper import RedisHandle, RedisOpFailed, RedisUnavailable, redis_op


class Flaky:
    def __init__(self, fail_first=1):
        self._fail_first = fail_first
        self.closed = False

    async def incr(self, key):
        if self._fail_first > 0:
            self._fail_first -= 1
            raise Exception('boom')
        return 1

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class Unreachable:
    async def ping(self):
        raise ConnectionError('refused')

    async def aclose(self):
        pass


class FakeModule:
    def __init__(self, factory):
        self.factory = factory
        self.urls = []

    def from_url(self, url):
        self.urls.append(url)
        return self.factory()


@pytest.fixture
def quick_reconnect(fast_settings, monkeypatch):
    monkeypatch.setattr(fast_settings, "REDIS_RECONNECT_BASE_DELAY", 0.001)
    monkeypatch.setattr(fast_settings, "REDIS_RECONNECT_JITTER_MS", 0)
    monkeypatch.setattr(fast_settings, "REDIS_RECONNECT_MAX_ATTEMPTS", 2)
    return fast_settings


@pytest.mark.asyncio
async def test_redis_op_retries(monkeypatch, quick_reconnect):
    flaky = Flaky()
    monkeypatch.setattr(redis_wrapper, "aioredis", FakeModule(lambda: flaky))
    handle = RedisHandle(url="redis://example:6379/0")

    # call redis_op which should attempt, fail once, then reconnect and retry
    res = await redis_op(handle, lambda r, k: r.incr(k), 'k')
    assert res.get('ok') is True
    assert res.get('value') == 1
    assert await handle.op(lambda r, k: r.incr(k), 'k') == 1


@pytest.mark.asyncio
async def test_persistent_failure_opens_circuit(monkeypatch, quick_reconnect):
    module = FakeModule(Unreachable)
    monkeypatch.setattr(redis_wrapper, "aioredis", module)
    handle = RedisHandle(url="redis://example:6379/0")

    with pytest.raises(RedisUnavailable):
        await handle.op(lambda r: r.ping())
    assert len(module.urls) == 2

    # circuit is open: no further connection attempts
    with pytest.raises(RedisUnavailable):
        await handle.op(lambda r: r.ping())
    assert len(module.urls) == 2


@pytest.mark.asyncio
async def test_injected_client_failure_is_reported():
    handle = RedisHandle(client=Flaky(fail_first=5))
    with pytest.raises(RedisOpFailed):
        await handle.op(lambda r, k: r.incr(k), 'k')
