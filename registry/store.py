"""
Service registry for Harbormaster.

Thin semantic wrapper over a Redis key/value-and-set store. Owns the sets of
apps, hosts, per-app environment variables, per-app instances and the per-app
deployment history, and publishes a change notification on the router
channel whenever an instance set changes.

Persisted layout:
    apps                  set of app names
    hosts                 set of host addresses
    {app}:envs            set of KEY=VALUE strings
    {app}:instances       set of host:port strings
    deployments:{app}     list of JSON deployment records, newest last
"""

import json
import time
import logging
from typing import Dict, List, Any, Tuple
from dataclasses import dataclass, asdict
from contextlib import contextmanager

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

APPS_KEY = "apps"
HOSTS_KEY = "hosts"
DEFAULT_UPDATES_CHANNEL = "updates"
DEFAULT_HISTORY_LIMIT = 100


class StoreUnavailable(Exception):
    """The backing store could not be reached."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Registry store unavailable during {operation}: {cause}")


@dataclass
class DeploymentRecord:
    """Append-only deployment history entry."""
    timestamp: int
    app: str
    image: str
    count: int

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "DeploymentRecord":
        data = json.loads(raw)
        return cls(
            timestamp=int(data["timestamp"]),
            app=data["app"],
            image=data["image"],
            count=int(data["count"]),
        )


def format_instance(host: str, port: int) -> str:
    return f"{host}:{port}"


def parse_instance(instance: str) -> Tuple[str, int]:
    """Split a host:port instance string."""
    host, _, port = instance.rpartition(":")
    if not host or not port.isdigit():
        raise ValueError(f"Malformed instance '{instance}', expected host:port")
    return host, int(port)


def env_key(env: str) -> str:
    """Return the KEY part of a KEY=VALUE environment entry."""
    return env.split("=", 1)[0]


class Registry:
    """
    Registry of apps, hosts, environments, instances and deployment history.

    Every call is a single store round trip except the multi-valued env removal;
    the store gives per-key atomicity only, so callers must not assume that a
    sequence of registry calls is applied as a unit.
    """

    def __init__(self, redis: Redis, updates_channel: str = DEFAULT_UPDATES_CHANNEL):
        self.redis = redis
        self.updates_channel = updates_channel

    @classmethod
    def from_url(cls, url: str, updates_channel: str = DEFAULT_UPDATES_CHANNEL,
                 socket_timeout: int = 5) -> "Registry":
        redis = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(redis, updates_channel)

    @contextmanager
    def _store_call(self, operation: str):
        try:
            yield
        except RedisError as e:
            logger.error(f"Registry operation {operation} failed: {e}")
            raise StoreUnavailable(operation, e) from e

    @staticmethod
    def _envs_key(app: str) -> str:
        return f"{app}:envs"

    @staticmethod
    def _instances_key(app: str) -> str:
        return f"{app}:instances"

    @staticmethod
    def _deployments_key(app: str) -> str:
        return f"deployments:{app}"

    async def _members(self, key: str) -> List[str]:
        with self._store_call(f"smembers {key}"):
            members = await self.redis.smembers(key)
        return sorted(members)

    async def _add(self, key: str, member: str) -> bool:
        with self._store_call(f"sadd {key}"):
            return bool(await self.redis.sadd(key, member))

    async def _remove(self, key: str, member: str) -> bool:
        with self._store_call(f"srem {key}"):
            return bool(await self.redis.srem(key, member))

    async def ping(self) -> bool:
        with self._store_call("ping"):
            return bool(await self.redis.ping())

    async def close(self):
        await self.redis.aclose()

    # ------------------------- Apps -------------------------
    async def list_apps(self) -> List[str]:
        return await self._members(APPS_KEY)

    async def add_app(self, app: str) -> bool:
        added = await self._add(APPS_KEY, app)
        if added:
            logger.info(f"Added app {app}")
        return added

    async def remove_app(self, app: str) -> bool:
        removed = await self._remove(APPS_KEY, app)
        if removed:
            logger.info(f"Removed app {app}")
        return removed

    # ------------------------- Hosts -------------------------
    async def list_hosts(self) -> List[str]:
        return await self._members(HOSTS_KEY)

    async def add_host(self, host: str) -> bool:
        added = await self._add(HOSTS_KEY, host)
        if added:
            logger.info(f"Added host {host} to the scheduling pool")
        return added

    async def remove_host(self, host: str) -> bool:
        removed = await self._remove(HOSTS_KEY, host)
        if removed:
            logger.info(f"Removed host {host} from the scheduling pool")
        return removed

    # ------------------------- Environment -------------------------
    async def list_envs(self, app: str) -> List[str]:
        return await self._members(self._envs_key(app))

    async def add_env(self, app: str, env: str) -> bool:
        return await self._add(self._envs_key(app), env)

    async def remove_env(self, app: str, key: str) -> List[str]:
        """Remove every stored variable whose KEY part equals `key`.

        A variable may have been stored under several values over time, so all
        of them go. Returns the removed entries.
        """
        key = env_key(key)
        matches = [env for env in await self.list_envs(app) if env_key(env) == key]
        removed = []
        for env in matches:
            if await self._remove(self._envs_key(app), env):
                removed.append(env)
        if removed:
            logger.info(f"Removed {len(removed)} env entries for {app} matching {key}")
        return removed

    # ------------------------- Instances -------------------------
    async def list_instances(self, app: str) -> List[str]:
        return await self._members(self._instances_key(app))

    async def add_instance(self, app: str, instance: str) -> bool:
        added = await self._add(self._instances_key(app), instance)
        await self.notify_routers()
        return added

    async def remove_instance(self, app: str, instance: str) -> bool:
        removed = await self._remove(self._instances_key(app), instance)
        await self.notify_routers()
        return removed

    async def notify_routers(self) -> bool:
        """Publish the current timestamp on the updates channel.

        Best effort: a failed publish is logged and reported as False, the
        instance change that triggered it stands.
        """
        try:
            await self.redis.publish(self.updates_channel, str(int(time.time() * 1000)))
            return True
        except RedisError as e:
            logger.error(f"Failed to notify routers on {self.updates_channel}: {e}")
            return False

    # ------------------------- Deployment history -------------------------
    async def append_deployment(self, app: str, image: str, count: int) -> DeploymentRecord:
        record = DeploymentRecord(
            timestamp=int(time.time()),
            app=app,
            image=image,
            count=count,
        )
        with self._store_call(f"rpush {self._deployments_key(app)}"):
            await self.redis.rpush(self._deployments_key(app), record.to_json())
        return record

    async def list_deployments(self, app: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[DeploymentRecord]:
        """Return the most recent `limit` records, oldest first and newest last."""
        if limit <= 0:
            return []
        with self._store_call(f"lrange {self._deployments_key(app)}"):
            raw = await self.redis.lrange(self._deployments_key(app), -limit, -1)
        records = []
        for item in raw:
            try:
                records.append(DeploymentRecord.from_json(item))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable deployment record for {app}: {e}")
        return records

    async def snapshot(self, app: str) -> Dict[str, Any]:
        """Instances and envs of one app, read back to back."""
        return {
            "instances": await self.list_instances(app),
            "envs": await self.list_envs(app),
        }
