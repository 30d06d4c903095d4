"""Redis token buckets keyed by caller and by tenant.

Every authenticated request draws from two buckets for its route class: one
for the calling client (see ``client_identifier``) and one shared by the whole
tenant. The request is admitted only when both buckets can pay; a refusal
names the bucket that recovers last.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import math
import random
import time
from typing import Any, Callable, Protocol

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.core.config import get_settings
from tenantadmin.services.audit import client_identifier, get_request_context, record_event


logger = logging.getLogger(__name__)

ROUTE_CLASS_READ = "read"
ROUTE_CLASS_MUTATION = "mutation"
ROUTE_CLASS_REPORT = "report"

SCOPES = ("client", "tenant")

_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_DEGRADED_AUDIT_SAMPLE = 0.05


class PrincipalLike(Protocol):
    subject_id: str
    tenant_id: str
    role: str


@dataclass(frozen=True)
class Bucket:
    rps: float
    burst: int

    def refill(self, tokens: float | None, last_ms: int | None, now_ms: int) -> float:
        # Same arithmetic as the Lua script; a clock that moved backwards adds nothing.
        if tokens is None:
            return float(self.burst)
        elapsed_ms = max(0, now_ms - (last_ms if last_ms is not None else now_ms))
        return min(float(self.burst), tokens + elapsed_ms / 1000.0 * self.rps)

    def retry_after_ms(self, tokens: float, cost: int) -> int:
        if tokens >= cost:
            return 0
        if self.rps <= 0:
            return 1000
        return int(math.ceil((cost - tokens) / self.rps * 1000))

    @property
    def ttl_seconds(self) -> int:
        # Idle buckets expire after twice the time a full refill takes.
        if self.rps <= 0:
            return max(1, self.burst)
        return max(1, int(math.ceil(self.burst / self.rps * 2)))


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    scope: str | None
    retry_after_ms: int
    remaining: dict[str, float] = field(default_factory=dict)


# KEYS are the buckets in SCOPES order; ARGV is now_ms then (rate, burst, cost, ttl)
# per bucket. Nothing is debited unless every bucket can pay.
_DEBIT_BUCKETS_LUA = r"""
local now_ms = tonumber(ARGV[1])
local state = {}
local admitted = true
for i, key in ipairs(KEYS) do
  local base = 2 + (i - 1) * 4
  local rate = tonumber(ARGV[base])
  local burst = tonumber(ARGV[base + 1])
  local cost = tonumber(ARGV[base + 2])
  local stored = redis.call("HMGET", key, "tokens", "ts")
  local tokens = tonumber(stored[1])
  local last = tonumber(stored[2]) or now_ms
  if tokens == nil then
    tokens = burst
  else
    tokens = math.min(burst, tokens + math.max(0, now_ms - last) / 1000.0 * rate)
  end
  local ok = tokens >= cost
  local wait = 0
  if not ok then
    if rate > 0 then
      wait = math.ceil((cost - tokens) / rate * 1000)
    else
      wait = 1000
    end
    admitted = false
  end
  state[i] = {tokens, cost, ok, wait, tonumber(ARGV[base + 3])}
end
local reply = {admitted and 1 or 0}
for i, key in ipairs(KEYS) do
  local tokens, cost, ok, wait, ttl = unpack(state[i])
  if admitted then
    tokens = tokens - cost
  end
  redis.call("HSET", key, "tokens", tokens, "ts", now_ms)
  redis.call("EXPIRE", key, ttl)
  table.insert(reply, ok and 1 or 0)
  table.insert(reply, tostring(tokens))
  table.insert(reply, wait)
end
return reply
"""


def route_class_for_path(path: str, method: str) -> tuple[str, int]:
    # Report generation gets its own budget; each request costs one token.
    if path.rstrip("/").endswith("/generate"):
        return ROUTE_CLASS_REPORT, 1
    if method.upper() in _MUTATING_METHODS:
        return ROUTE_CLASS_MUTATION, 1
    return ROUTE_CLASS_READ, 1


def route_class_for_request(request: Request) -> tuple[str, int]:
    return route_class_for_path(request.url.path, request.method)


def buckets_for_route(route_class: str) -> dict[str, Bucket]:
    settings = get_settings()
    return {
        scope: Bucket(
            rps=getattr(settings, f"rl_{scope}_{route_class}_rps"),
            burst=getattr(settings, f"rl_{scope}_{route_class}_burst"),
        )
        for scope in SCOPES
    }


def slowest_denied_scope(outcomes: dict[str, tuple[bool, int]]) -> tuple[str, int]:
    # outcomes maps scope -> (allowed, retry_after_ms); ties go to the earlier scope.
    denied = [(scope, retry) for scope, (allowed, retry) in outcomes.items() if not allowed]
    if not denied:
        return SCOPES[0], 0
    return max(denied, key=lambda item: item[1])


class _RedisHolder:
    # One client per event loop; test runners open a fresh loop per test.
    def __init__(self) -> None:
        self._client: Redis | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def get(self) -> Redis:
        loop = asyncio.get_running_loop()
        if self._client is None or self._loop is not loop:
            self._client = Redis.from_url(get_settings().redis_url, decode_responses=True)
            self._loop = loop
        return self._client

    def reset(self) -> None:
        self._client = None
        self._loop = None


_redis = _RedisHolder()


class RateLimiter:
    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time

    async def check(
        self,
        *,
        client_id: str,
        tenant_id: str,
        route_class: str,
        cost: int,
        buckets: dict[str, Bucket],
    ) -> RateLimitDecision:
        prefix = get_settings().rl_redis_prefix
        owners = {"client": client_id, "tenant": tenant_id}
        keys = [f"{prefix}:{scope}:{owners[scope]}:{route_class}" for scope in SCOPES]
        args: list[Any] = [int(self._clock() * 1000)]
        for scope in SCOPES:
            bucket = buckets[scope]
            args.extend([bucket.rps, bucket.burst, cost, bucket.ttl_seconds])

        reply = await _redis.get().eval(_DEBIT_BUCKETS_LUA, len(keys), *keys, *args)

        outcomes: dict[str, tuple[bool, int]] = {}
        remaining: dict[str, float] = {}
        for index, scope in enumerate(SCOPES):
            ok, tokens, wait = reply[1 + index * 3 : 4 + index * 3]
            outcomes[scope] = (int(ok) == 1, int(float(wait)))
            remaining[scope] = float(tokens)
        if int(reply[0]) == 1:
            return RateLimitDecision(
                allowed=True, route_class=route_class, scope=None, retry_after_ms=0, remaining=remaining
            )
        scope, retry_after_ms = slowest_denied_scope(outcomes)
        return RateLimitDecision(
            allowed=False,
            route_class=route_class,
            scope=scope,
            retry_after_ms=retry_after_ms,
            remaining=remaining,
        )


_rate_limiter: RateLimiter | None = None


def _get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    global _rate_limiter
    _rate_limiter = None
    _redis.reset()


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    scope = decision.scope or "unknown"
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "scope": scope,
            "route_class": decision.route_class,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers={
            "Retry-After": str(max(1, math.ceil(decision.retry_after_ms / 1000))),
            "X-RateLimit-Scope": scope,
            "X-RateLimit-Route-Class": decision.route_class,
            "X-RateLimit-Retry-After-Ms": str(decision.retry_after_ms),
        },
    )


async def _audit(
    *,
    db: AsyncSession,
    request: Request,
    principal: PrincipalLike,
    event_type: str,
    system: bool,
    metadata: dict[str, Any],
    error_code: str | None = None,
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_type="system" if system else "user",
        actor_id="rate_limit" if system else principal.subject_id,
        actor_role=None if system else principal.role,
        event_type=event_type,
        outcome="failure",
        resource_type="rate_limit",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={**metadata, "path": request.url.path},
        error_code=error_code,
        commit=True,
        best_effort=True,
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    principal: PrincipalLike,
    db: AsyncSession,
) -> None:
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    route_class, cost = route_class_for_request(request)
    try:
        decision = await _get_rate_limiter().check(
            client_id=client_identifier(request),
            tenant_id=principal.tenant_id,
            route_class=route_class,
            cost=cost,
            buckets=buckets_for_route(route_class),
        )
    except Exception as exc:  # noqa: BLE001 - any limiter backend failure follows rl_fail_mode
        if settings.rl_fail_mode.lower() == "closed":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
            ) from exc
        logger.warning("rate_limit_degraded path=%s error=%s", request.url.path, type(exc).__name__)
        response.headers["X-RateLimit-Status"] = "degraded"
        if random.random() < _DEGRADED_AUDIT_SAMPLE:
            await _audit(
                db=db,
                request=request,
                principal=principal,
                event_type="system.rate_limit.degraded",
                system=True,
                metadata={"route_class": route_class, "fail_mode": settings.rl_fail_mode},
                error_code="RATE_LIMIT_UNAVAILABLE",
            )
        return

    if decision.allowed:
        return
    await _audit(
        db=db,
        request=request,
        principal=principal,
        event_type="security.rate_limited",
        error_code="RATE_LIMITED",
        system=False,
        metadata={
            "scope": decision.scope,
            "route_class": decision.route_class,
            "retry_after_ms": decision.retry_after_ms,
        },
    )
    raise _throttle_exception(decision=decision)
