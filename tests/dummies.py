"""In-memory stand-ins for Redis, the Telegram client and the clock."""
import asyncio
import fnmatch

from redis.exceptions import ConnectionError as RedisConnectionError


class DummyRedis:
    def __init__(self):
        self.values = {}
        self.sets = {}
        self.fail = False
        self.commands = []

    async def _op(self, name, *args):
        self.commands.append((name,) + args)
        await asyncio.sleep(0)
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def ping(self):
        await self._op('ping')
        return True

    async def get(self, key):
        await self._op('get', key)
        return self.values.get(key)

    async def set(self, key, value):
        await self._op('set', key, value)
        self.values[key] = value
        return True

    async def sadd(self, key, *members):
        await self._op('sadd', key, *members)
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key, *members):
        await self._op('srem', key, *members)
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        if not bucket:
            self.sets.pop(key, None)
        return removed

    async def smembers(self, key):
        await self._op('smembers', key)
        return set(self.sets.get(key, set()))

    async def scard(self, key):
        await self._op('scard', key)
        return len(self.sets.get(key, set()))

    async def keys(self, pattern):
        await self._op('keys', pattern)
        names = list(self.values) + list(self.sets)
        return [name for name in names if fnmatch.fnmatchcase(name, pattern)]

    async def aclose(self):
        self.commands.append(('aclose',))

    def writes(self):
        return [cmd for cmd in self.commands if cmd[0] in ('set', 'sadd', 'srem')]


class RecordingSender:
    """Records sends; ``responses`` holds exceptions (or None) consumed one per call."""

    enabled = True

    def __init__(self, responses=None, clock=None):
        self.responses = list(responses or [])
        self.clock = clock
        self.attempts = []
        self.sent = []
        self.closed = False

    def _record(self, entry):
        stamp = self.clock() if self.clock else None
        self.attempts.append(entry + (stamp,))
        outcome = self.responses.pop(0) if self.responses else None
        if isinstance(outcome, BaseException):
            raise outcome
        self.sent.append(entry + (stamp,))

    async def send_message(self, chat_id, text):
        await asyncio.sleep(0)
        self._record(('text', chat_id, text))

    async def send_photo(self, chat_id, image, caption=None):
        await asyncio.sleep(0)
        self._record(('photo', chat_id, caption))

    async def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class StubRenderer:
    def __init__(self, image=None, error=None):
        self.image = image
        self.error = error
        self.calls = []

    async def render(self, ticker, context):
        self.calls.append((ticker, context))
        if self.error is not None:
            raise self.error
        return self.image


class StubForwarder:
    enabled = True

    def __init__(self):
        self.forwarded = []

    async def forward(self, payload):
        self.forwarded.append(payload)
        return True


class StubExecutor:
    enabled = True

    def __init__(self, signal_id='SIG-1'):
        self.signal_id = signal_id
        self.created = []
        self.results = []

    async def create_signal(self, alert):
        self.created.append(alert)
        return self.signal_id

    async def send_result(self, signal_id, outcome):
        self.results.append((signal_id, outcome))
        return True
