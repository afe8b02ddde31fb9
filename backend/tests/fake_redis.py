"""In-process stand-in for redis.asyncio.Redis used by storage and cache tests.

Implements only the commands the relay issues, including WATCH/MULTI/EXEC
semantics: a pipeline executes commands immediately while watching, buffers
them after multi() (or when nothing is watched), and execute() raises
WatchError if any watched key changed in between.
"""
import fnmatch

from redis.exceptions import WatchError


class FakeAsyncRedis:

    def __init__(self):
        self._strings: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._sets: dict[str, set[str]] = {}
        self._versions: dict[str, int] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    def _bump(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    def version(self, key: str) -> int:
        return self._versions.get(key, 0)

    def keys_matching(self, pattern: str) -> list[str]:
        all_keys = set(self._strings) | set(self._hashes) | set(self._sets)
        return sorted(k for k in all_keys if fnmatch.fnmatch(k, pattern))

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True

    # strings
    async def get(self, key):
        return self._strings.get(key)

    async def set(self, key, value, ex=None):
        self._strings[key] = str(value)
        if ex is not None:
            self.expiry[key] = ex
        self._bump(key)
        return True

    async def incr(self, key):
        value = int(self._strings.get(key, "0")) + 1
        self._strings[key] = str(value)
        self._bump(key)
        return value

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            found = False
            for store in (self._strings, self._hashes, self._sets):
                if store.pop(key, None) is not None:
                    found = True
            if found:
                removed += 1
                self._bump(key)
        return removed

    async def expire(self, key, seconds):
        if key not in self._strings and key not in self._hashes and key not in self._sets:
            return False
        self.expiry[key] = seconds
        return True

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self._strings or k in self._hashes or k in self._sets)

    # hashes
    async def hset(self, name, key=None, value=None, mapping=None):
        fields = dict(mapping or {})
        if key is not None:
            fields[key] = value
        target = self._hashes.setdefault(name, {})
        added = sum(1 for f in fields if f not in target)
        target.update({f: str(v) for f, v in fields.items()})
        self._bump(name)
        return added

    async def hgetall(self, name):
        return dict(self._hashes.get(name, {}))

    async def hkeys(self, name):
        return list(self._hashes.get(name, {}))

    async def hlen(self, name):
        return len(self._hashes.get(name, {}))

    async def hdel(self, name, *fields):
        target = self._hashes.get(name, {})
        removed = sum(1 for f in fields if target.pop(f, None) is not None)
        if name in self._hashes and not target:
            del self._hashes[name]
        if removed:
            self._bump(name)
        return removed

    # sets
    async def sadd(self, name, *members):
        target = self._sets.setdefault(name, set())
        added = len(set(members) - target)
        target.update(members)
        self._bump(name)
        return added

    async def srem(self, name, *members):
        target = self._sets.get(name, set())
        removed = len(target & set(members))
        target.difference_update(members)
        if name in self._sets and not target:
            del self._sets[name]
        if removed:
            self._bump(name)
        return removed

    async def smembers(self, name):
        return set(self._sets.get(name, set()))

    async def scard(self, name):
        return len(self._sets.get(name, set()))

    async def scan_iter(self, match=None):
        for key in self.keys_matching(match or "*"):
            yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:

    def __init__(self, client: FakeAsyncRedis):
        self._client = client
        self.reset()

    def reset(self):
        self._watched: dict[str, int] = {}
        self._immediate = False
        self._queue: list = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.reset()

    async def watch(self, *keys):
        for key in keys:
            self._watched[key] = self._client.version(key)
        self._immediate = True

    def multi(self):
        self._immediate = False
        self._queue = []

    def __getattr__(self, name):
        command = getattr(self._client, name)
        if self._immediate:
            return command

        def buffered(*args, **kwargs):
            self._queue.append((command, args, kwargs))
            return self
        return buffered

    async def execute(self):
        try:
            for key, version in self._watched.items():
                if self._client.version(key) != version:
                    raise WatchError("Watched variable changed.")
            return [await command(*args, **kwargs) for command, args, kwargs in self._queue]
        finally:
            self.reset()
