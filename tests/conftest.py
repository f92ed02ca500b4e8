import fnmatch
from collections import deque

import pytest

from broadcasts.config import WorkerSettings
from broadcasts.models import DeliveryResult
from broadcasts.runtime import build_services


def _score_bound(raw):
    raw = str(raw)
    if raw in {"-inf", "+inf", "inf"}:
        return float(raw), False
    if raw.startswith("("):
        return float(raw[1:]), True
    return float(raw), False


class InMemoryRedis:
    """Just enough of the redis-py client (decode_responses=True) for the broadcast store."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    # strings
    def set(self, name, value, ex=None, nx=False):
        if nx and name in self.data:
            return None
        self.data[name] = str(value)
        if ex is not None:
            self.ttls[name] = ex
        return True

    def get(self, name):
        return self.data.get(name)

    def delete(self, *names):
        removed = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                removed += 1
            self.ttls.pop(name, None)
        return removed

    # lists
    def lpush(self, name, *values):
        items = self.data.setdefault(name, deque())
        for value in values:
            items.appendleft(str(value))
        return len(items)

    def rpop(self, name):
        items = self.data.get(name)
        if not items:
            return None
        value = items.pop()
        if not items:
            del self.data[name]
        return value

    def llen(self, name):
        return len(self.data.get(name, ()))

    def lrange(self, name, start, end):
        items = list(self.data.get(name, ()))
        end = len(items) if end == -1 else end + 1
        return items[start:end]

    # sets
    def sadd(self, name, *values):
        members = self.data.setdefault(name, set())
        before = len(members)
        members.update(str(v) for v in values)
        return len(members) - before

    def srem(self, name, *values):
        members = self.data.get(name, set())
        removed = sum(1 for v in values if str(v) in members)
        members.difference_update(str(v) for v in values)
        return removed

    def sismember(self, name, value):
        return int(str(value) in self.data.get(name, set()))

    def smembers(self, name):
        return set(self.data.get(name, set()))

    # hashes
    def hset(self, name, key=None, value=None, mapping=None):
        fields = self.data.setdefault(name, {})
        updates = dict(mapping or {})
        if key is not None:
            updates[key] = value
        added = sum(1 for k in updates if str(k) not in fields)
        for k, v in updates.items():
            fields[str(k)] = str(v)
        return added

    def hget(self, name, key):
        return self.data.get(name, {}).get(str(key))

    def hgetall(self, name):
        return dict(self.data.get(name, {}))

    def hincrby(self, name, key, amount=1):
        fields = self.data.setdefault(name, {})
        fields[str(key)] = str(int(fields.get(str(key), "0")) + amount)
        return int(fields[str(key)])

    def hdel(self, name, *keys):
        fields = self.data.get(name, {})
        return sum(1 for key in keys if fields.pop(str(key), None) is not None)

    # sorted sets
    def zadd(self, name, mapping):
        members = self.data.setdefault(name, {})
        added = sum(1 for m in mapping if str(m) not in members)
        for member, score in mapping.items():
            members[str(member)] = float(score)
        return added

    def zrem(self, name, *values):
        members = self.data.get(name, {})
        removed = 0
        for value in values:
            if members.pop(str(value), None) is not None:
                removed += 1
        return removed

    def zcard(self, name):
        return len(self.data.get(name, {}))

    def zrangebyscore(self, name, min, max):
        low, low_open = _score_bound(min)
        high, high_open = _score_bound(max)
        members = sorted(self.data.get(name, {}).items(), key=lambda item: (item[1], item[0]))
        result = []
        for member, score in members:
            if score < low or (low_open and score == low):
                continue
            if score > high or (high_open and score == high):
                continue
            result.append(member)
        return result

    # keyspace
    def ttl(self, name):
        if name not in self.data:
            return -2
        return self.ttls.get(name, -1)

    def scan_iter(self, match=None, count=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def ping(self):
        return True


class ScriptedTransport:
    """Transport double returning canned results per FID."""

    def __init__(self, outcomes=None, default=None):
        self.outcomes = {fid: list(results) for fid, results in (outcomes or {}).items()}
        self.default = default or DeliveryResult.success(status_code=200)
        self.calls = []

    def send(self, fid, title, body, target_url):
        self.calls.append((fid, title, body, target_url))
        queued = self.outcomes.get(fid)
        result = queued.pop(0) if queued else self.default
        if isinstance(result, Exception):
            raise result
        return DeliveryResult(ok=result.ok, error=result.error, status_code=result.status_code)


class FakeClock:
    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def services(fake_redis, transport, clock, sleeps):
    return build_services(
        fake_redis,
        transport,
        settings=WorkerSettings(rate_per_second=4, max_attempts=3, backoff_seconds=1.0),
        clock=clock,
        sleep=sleeps.append,
    )

