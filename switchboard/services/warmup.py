"""
Warmup scheduler - low-volume activity on selected connections to build
sending reputation before bulk use.

    IDLE --start--> RUNNING --pause--> PAUSED --resume/start--> RUNNING

The scheduler state is an explicit object owned by the application (created
IDLE in the lifespan, never autostarted unless configured). A cycle visits
every selected connection once, paced like a campaign, and each connection
fails on its own. Pausing never interrupts a cycle in flight; it only keeps
the next one from starting.

Each connection may carry a warmup profile that sets its daily limit and the
minimum time between two warmup sends. A connection is skipped, with the
reason recorded, when its quota is spent, when it ran too recently or when it
has nobody to talk to.
"""
import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from switchboard.services.delivery import DeliveryChannel, build_delivery_channel
from switchboard.utils.errors import InvalidRequest, InvalidState

logger = logging.getLogger(__name__)

QUOTA_KEY_PREFIX = "switchboard:warmup:quota"
LAST_RUN_KEY_PREFIX = "switchboard:warmup:last-run"
LAST_RUN_TTL_SECONDS = 7 * 24 * 3600

SKIP_DAILY_QUOTA = "daily_quota"
SKIP_MIN_INTERVAL = "min_interval"
SKIP_NO_PEER = "no_peer"

WARMUP_PHRASES = (
    "Hola! como va todo?",
    "Buen dia, te escribo para saludar",
    "Todo bien por aca, y vos?",
    "Gracias por la respuesta!",
    "Perfecto, hablamos mas tarde",
    "Que tal el fin de semana?",
)


class WarmupProfile:
    """Pace for one connection: sends per day and minimum gap between sends."""

    def __init__(self, key: str, daily_limit: int, min_interval_seconds: int):
        self.key = key
        self.daily_limit = daily_limit
        self.min_interval_seconds = min_interval_seconds

    def __repr__(self) -> str:
        return f"<WarmupProfile {self.key} ({self.daily_limit}/day, {self.min_interval_seconds}s)>"


# nuevo: fresh number, recuperacion: number coming back from a block
WARMUP_PROFILES = {
    "nuevo": WarmupProfile("nuevo", daily_limit=12, min_interval_seconds=30 * 60),
    "tibio": WarmupProfile("tibio", daily_limit=18, min_interval_seconds=20 * 60),
    "estable": WarmupProfile("estable", daily_limit=30, min_interval_seconds=10 * 60),
    "recuperacion": WarmupProfile("recuperacion", daily_limit=8, min_interval_seconds=45 * 60),
}


def resolve_profile(key: Optional[str]) -> Optional[WarmupProfile]:
    """Profile for a key (case-insensitive). None for no key; InvalidRequest for an unknown one."""
    if not key:
        return None
    profile = WARMUP_PROFILES.get(key.strip().lower())
    if profile is None:
        raise InvalidRequest(
            f"Unknown warmup profile: {key} (expected one of {', '.join(sorted(WARMUP_PROFILES))})"
        )
    return profile


class WarmupRunState:
    """Warmup run-state constants."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class WarmupState:
    """In-memory warmup state. Always starts IDLE; RUNNING needs an explicit start."""

    def __init__(self, selected_connection_ids: Iterable[str] = ()):
        self.run_state = WarmupRunState.IDLE
        self.selected_connection_ids = frozenset(selected_connection_ids)
        self.last_cycle_at: Optional[datetime] = None
        self.cycles_completed = 0
        self.profiles: dict[str, str] = {}
        self.skip_counts: dict[str, int] = {}

    def record_skip(self, reason: str) -> None:
        self.skip_counts[reason] = self.skip_counts.get(reason, 0) + 1

    def snapshot(self) -> dict:
        return {
            "run_state": self.run_state,
            "selected_connection_ids": sorted(self.selected_connection_ids),
            "last_cycle_at": self.last_cycle_at,
            "cycles_completed": self.cycles_completed,
            "profiles": dict(sorted(self.profiles.items())),
            "skip_counts": dict(sorted(self.skip_counts.items())),
        }


def _quota_key(connection_id: str, now: datetime) -> str:
    return f"{QUOTA_KEY_PREFIX}:{connection_id}:{now.strftime('%Y-%m-%d')}"


def _last_run_key(connection_id: str) -> str:
    return f"{LAST_RUN_KEY_PREFIX}:{connection_id}"


def _seconds_until_midnight(now: datetime) -> int:
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(60, int((tomorrow - now).total_seconds()))


def pick_peer(connection_id: str, selection: Iterable[str], fallback_contact: str = "") -> Optional[str]:
    """Next connection in sorted order (wrapping), or the fallback contact when alone."""
    ordered = sorted(selection)
    if len(ordered) < 2:
        return fallback_contact or None
    index = ordered.index(connection_id)
    return ordered[(index + 1) % len(ordered)]


class _RedisBacked:
    """
    Redis is preferred so warmup limits hold across processes; an in-memory
    copy keeps warmup working when Redis is down.
    """

    def __init__(self, redis_getter=None):
        self._redis_getter = redis_getter

    async def _redis(self):
        if self._redis_getter is None:
            return None
        try:
            return await self._redis_getter()
        except Exception as e:
            logger.warning("Warmup %s falling back to memory: %s", type(self).__name__, str(e))
            return None


class DailyQuota(_RedisBacked):
    """Per-connection daily send counter, reset at midnight UTC."""

    def __init__(self, limit: int, redis_getter=None):
        super().__init__(redis_getter)
        self.limit = limit
        self._local: dict[str, int] = {}

    async def used(self, connection_id: str) -> int:
        now = datetime.now(timezone.utc)
        key = _quota_key(connection_id, now)
        redis = await self._redis()
        if redis is not None:
            try:
                raw = await redis.get(key)
                return int(raw or 0)
            except Exception as e:
                logger.warning("Warmup quota read failed for %s: %s", connection_id, str(e),
                               extra={"connection_id": connection_id})
        return self._local.get(key, 0)

    async def increment(self, connection_id: str) -> None:
        now = datetime.now(timezone.utc)
        key = _quota_key(connection_id, now)
        redis = await self._redis()
        if redis is not None:
            try:
                pipe = redis.pipeline()
                pipe.incr(key)
                pipe.expire(key, _seconds_until_midnight(now))
                await pipe.execute()
                return
            except Exception as e:
                logger.warning("Warmup quota write failed for %s: %s", connection_id, str(e),
                               extra={"connection_id": connection_id})
        self._local[key] = self._local.get(key, 0) + 1


class LastRunClock(_RedisBacked):
    """When each connection last sent a warmup message (epoch seconds in Redis, kept a week)."""

    def __init__(self, redis_getter=None):
        super().__init__(redis_getter)
        self._local: dict[str, datetime] = {}

    async def get(self, connection_id: str) -> Optional[datetime]:
        redis = await self._redis()
        if redis is not None:
            try:
                raw = await redis.get(_last_run_key(connection_id))
                if raw is None:
                    return None
                return datetime.fromtimestamp(float(raw), tz=timezone.utc)
            except Exception as e:
                logger.warning("Warmup last-run read failed for %s: %s", connection_id, str(e),
                               extra={"connection_id": connection_id})
        return self._local.get(connection_id)

    async def mark(self, connection_id: str, when: Optional[datetime] = None) -> None:
        when = when or datetime.now(timezone.utc)
        redis = await self._redis()
        if redis is not None:
            try:
                await redis.set(
                    _last_run_key(connection_id), str(when.timestamp()), ex=LAST_RUN_TTL_SECONDS,
                )
                return
            except Exception as e:
                logger.warning("Warmup last-run write failed for %s: %s", connection_id, str(e),
                               extra={"connection_id": connection_id})
        self._local[connection_id] = when


class WarmupScheduler:
    """Hosts the warmup cycle timer for one WarmupState."""

    def __init__(
        self,
        state: Optional[WarmupState] = None,
        channel: Optional[DeliveryChannel] = None,
        settings=None,
        quota: Optional[DailyQuota] = None,
        rng: Optional[random.Random] = None,
        last_run: Optional[LastRunClock] = None,
    ):
        if settings is None:
            from switchboard.config import get_settings
            settings = get_settings()
        self.settings = settings
        self.state = state or WarmupState()
        self.channel = channel or build_delivery_channel(settings)
        from switchboard.utils.redis import get_redis
        self.quota = quota or DailyQuota(settings.warmup_daily_limit_per_connection, redis_getter=get_redis)
        self.last_run = last_run or LastRunClock(redis_getter=get_redis)
        self._rng = rng or random.Random()
        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._phrase_index = 0

    # === RUN STATE ===

    def status(self) -> dict:
        return self.state.snapshot()

    def start(self) -> dict:
        """IDLE/PAUSED -> RUNNING. The first cycle starts right away."""
        if self.state.run_state == WarmupRunState.RUNNING:
            raise InvalidState("Warmup is already running")
        self.state.run_state = WarmupRunState.RUNNING
        # A loop still finishing its last cycle picks the RUNNING state back up
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="warmup-loop")
        logger.info("Warmup started (%d connections)", len(self.state.selected_connection_ids))
        return self.status()

    def pause(self) -> dict:
        """RUNNING -> PAUSED. A cycle in flight runs to completion."""
        if self.state.run_state != WarmupRunState.RUNNING:
            raise InvalidState(f"Warmup is not running (state={self.state.run_state})")
        self.state.run_state = WarmupRunState.PAUSED
        self._wake.set()
        logger.info("Warmup paused")
        return self.status()

    def resume(self) -> dict:
        if self.state.run_state != WarmupRunState.PAUSED:
            raise InvalidState(f"Warmup is not paused (state={self.state.run_state})")
        return self.start()

    def set_selection(self, connection_ids: Iterable[str]) -> dict:
        """Replace the selection. A cycle in flight keeps the set it started with."""
        self.state.selected_connection_ids = frozenset(c for c in connection_ids if c)
        logger.info("Warmup selection set: %d connections", len(self.state.selected_connection_ids))
        return self.status()

    def set_profile(self, connection_id: str, profile_key: Optional[str]) -> dict:
        """Assign a warmup profile to a connection; None goes back to the configured defaults."""
        if not connection_id:
            raise InvalidRequest("connection_id is required")
        profile = resolve_profile(profile_key)
        if profile is None:
            self.state.profiles.pop(connection_id, None)
        else:
            self.state.profiles[connection_id] = profile.key
        logger.info("Warmup profile for %s: %s", connection_id, profile.key if profile else "default",
                    extra={"connection_id": connection_id})
        return self.status()

    def _limits_for(self, connection_id: str) -> tuple[int, int]:
        """(daily limit, min interval seconds) for a connection."""
        profile = WARMUP_PROFILES.get(self.state.profiles.get(connection_id, ""))
        if profile is None:
            return self.quota.limit, self.settings.warmup_min_interval_seconds
        return profile.daily_limit, profile.min_interval_seconds

    async def stop(self, timeout: float = 10.0) -> None:
        """Teardown: stop the timer and let an in-flight cycle finish within timeout."""
        if self.state.run_state == WarmupRunState.RUNNING:
            self.state.run_state = WarmupRunState.PAUSED
        self._wake.set()
        task = self._task
        if task is not None and not task.done():
            _, pending = await asyncio.wait({task}, timeout=timeout)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await self.channel.aclose()

    async def wait_idle(self) -> None:
        """Wait until the timer loop has exited."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _loop(self) -> None:
        interval = self.settings.warmup_cycle_interval_seconds
        while self.state.run_state == WarmupRunState.RUNNING:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("Warmup cycle error: %s", str(e), exc_info=True)

            if self.state.run_state != WarmupRunState.RUNNING:
                break
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Warmup loop exited (state=%s)", self.state.run_state)

    # === CYCLES ===

    async def simulate(self) -> dict:
        """One cycle in dry-run, regardless of run state."""
        return await self.run_cycle(dry_run=True)

    async def run_cycle(self, dry_run: Optional[bool] = None) -> dict:
        """
        Execute exactly one cycle over the current selection. Does not change
        the run state. Cycles are serialized; each one snapshots the selection.
        """
        if dry_run is None:
            dry_run = self.settings.warmup_dry_run

        async with self._cycle_lock:
            selection = self.state.selected_connection_ids
            results = []
            first = True
            for connection_id in sorted(selection):
                if not first:
                    delay_ms = self._rng.randint(
                        self.settings.warmup_delay_min_ms, self.settings.warmup_delay_max_ms,
                    )
                    await asyncio.sleep(delay_ms / 1000)
                first = False
                try:
                    results.append(await self._warm_connection(connection_id, selection, dry_run))
                except Exception as e:
                    logger.warning(
                        "Warmup failed for %s: %s", connection_id, str(e),
                        extra={"connection_id": connection_id},
                    )
                    results.append({"connection_id": connection_id, "status": "failed", "error": str(e)})

            self.state.cycles_completed += 1
            self.state.last_cycle_at = datetime.now(timezone.utc)

        report = {
            "dry_run": dry_run,
            "cycle": self.state.cycles_completed,
            "connections": len(selection),
            "results": results,
        }
        logger.info(
            "Warmup cycle %d done: %d connections, dry_run=%s",
            report["cycle"], report["connections"], dry_run,
        )
        return report

    def _next_phrase(self) -> str:
        phrase = WARMUP_PHRASES[self._phrase_index % len(WARMUP_PHRASES)]
        self._phrase_index += 1
        return phrase

    def _skip(self, connection_id: str, reason: str, **details) -> dict:
        self.state.record_skip(reason)
        logger.info("Warmup skipped %s: %s", connection_id, reason, extra={"connection_id": connection_id})
        return {"connection_id": connection_id, "status": "skipped", "reason": reason, **details}

    async def _warm_connection(self, connection_id: str, selection: frozenset, dry_run: bool) -> dict:
        limit, min_interval = self._limits_for(connection_id)

        used = await self.quota.used(connection_id)
        if used >= limit:
            return self._skip(connection_id, SKIP_DAILY_QUOTA, used=used, limit=limit)

        last_run = await self.last_run.get(connection_id)
        if last_run is not None and min_interval > 0:
            elapsed = (datetime.now(timezone.utc) - last_run).total_seconds()
            if elapsed < min_interval:
                return self._skip(
                    connection_id, SKIP_MIN_INTERVAL, retry_in_seconds=int(min_interval - elapsed),
                )

        peer = pick_peer(connection_id, selection, self.settings.warmup_fallback_contact)
        if not peer:
            return self._skip(connection_id, SKIP_NO_PEER)

        phrase = self._next_phrase()
        if dry_run:
            logger.info(
                "Warmup dry-run %s -> %s: %s", connection_id, peer, phrase,
                extra={"connection_id": connection_id},
            )
            return {"connection_id": connection_id, "peer": peer, "status": "simulated"}

        message_id = await asyncio.wait_for(
            self.channel.send(connection_id, peer, phrase),
            timeout=self.settings.delivery_timeout_seconds,
        )
        await self.quota.increment(connection_id)
        await self.last_run.mark(connection_id)
        return {"connection_id": connection_id, "peer": peer, "status": "sent", "message_id": message_id}
