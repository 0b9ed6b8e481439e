"""
Task Manager state layer service.

Exposes health and metrics for the shared-state layer and enforces the
request guard (token cache, then rate limit) that the task handlers sit
behind. Task routes themselves live with the handlers, outside this
package.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared.config import ServiceConfig, get_config
from shared.errors import (
    AccessLayerException,
    AuthenticationError,
    CircuitOpenError,
    RateLimitError,
    RetryExhaustedError,
    StoreError,
)
from shared.logging import clear_context, configure_logging, get_logger, set_request_id, set_tenant_context
from .caching.token_cache import claim_timestamp, hash_token, tenant_from_claims
from .domain.models import RateLimitDecision, ValidatedToken
from .ratelimit.tiers import classify_endpoint, get_tier, is_valid_tier
from .state import StateLayer, build_state_layer

# Verifies a raw bearer token; returns its claims (with ``exp``) or None when invalid
TokenVerifier = Callable[[str], Awaitable[Optional[Mapping[str, Any]]]]


@dataclass
class RequestContext:
    """What the guard learned about a request that passed it."""

    tenant_id: str
    token: ValidatedToken
    decision: RateLimitDecision
    token_cache_hit: bool
    tier: str


class TaskManagerStateService:
    """Task Manager state layer service implementation."""

    def __init__(self,
                 state: Optional[StateLayer] = None,
                 config: Optional[ServiceConfig] = None,
                 token_verifier: Optional[TokenVerifier] = None):
        self.config = config or (state.config if state else get_config("task_manager", 8000))
        configure_logging("task_manager", self.config.log_level)
        self.logger = get_logger("task_manager.api")

        self.state = state or build_state_layer(self.config)
        self.token_verifier = token_verifier
        self._start_time = time.time()

        self.app = FastAPI(
            title="Task Manager State Layer",
            description="Tenant cache, token cache and rate limiting for the Task Manager API",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

        self._setup_middleware()
        self._setup_routes()
        self._setup_error_handlers()

    @property
    def metrics(self):
        return self.state.observability.metrics

    async def guard_request(self, request: Request) -> RequestContext:
        """Token cache lookup, then rate limit. Raises on a failed check."""
        authorization = request.headers.get("authorization")
        if not authorization:
            raise AuthenticationError("Missing bearer token")

        token_hash = hash_token(authorization)
        token = await self.state.token_cache.lookup(token_hash)
        cache_hit = token is not None
        if token is None:
            token = await self._verify_token(authorization, token_hash)

        set_tenant_context(tenant_id=token.tenant_id)

        tier_name = await self._resolve_tier(token)
        if not is_valid_tier(tier_name):
            self.logger.warning("Unknown tier, using default", tier=tier_name, tenant_id=token.tenant_id)
        operation_class = classify_endpoint(request.url.path, request.method)
        set_tenant_context(operation_class=operation_class.value)

        decision = await self.state.rate_limiter.check_and_consume(
            token.tenant_id, operation_class, get_tier(tier_name)
        )
        now = self.state.rate_limiter.clock()
        request.state.rate_limit_headers = decision.to_headers(now)

        if not decision.allowed:
            retry_after = decision.retry_after(now)
            raise RateLimitError(
                f"Too many {decision.operation_class} requests. "
                f"Limit: {decision.limit} per {get_tier(tier_name).window_seconds} seconds",
                details={
                    "operation_class": decision.operation_class,
                    "limit": decision.limit,
                    "remaining": 0,
                    "reset_at": decision.reset_at,
                    "retry_after": retry_after,
                    "tier": decision.tier,
                },
                headers=decision.to_headers(now),
            )

        return RequestContext(
            tenant_id=token.tenant_id,
            token=token,
            decision=decision,
            token_cache_hit=cache_hit,
            tier=tier_name,
        )

    async def _resolve_tier(self, token: ValidatedToken) -> str:
        """Tier claim, else the cached user record's tier, else the default."""
        tier = token.raw_claims.get("tier")
        if not tier:
            user = await self.state.user_cache.get_user(token.tenant_id)
            tier = user.tier if user else None
        return str(tier or self.config.rate_limit_default_tier)

    async def _verify_token(self, authorization: str, token_hash: str) -> ValidatedToken:
        if self.token_verifier is None:
            raise AuthenticationError("Token could not be validated")

        raw_token = authorization.split(" ", 1)[-1].strip()
        claims = await self.token_verifier(raw_token)
        if not claims:
            raise AuthenticationError("Invalid token")

        expires_at = claim_timestamp(claims, "exp")
        if expires_at is None:
            raise AuthenticationError("Token has no valid expiry")
        tenant_id = tenant_from_claims(claims)
        if tenant_id is None:
            raise AuthenticationError("Token carries no tenant")

        now = self.state.token_cache.clock()
        issued_at = claim_timestamp(claims, "iat")
        token = ValidatedToken(
            tenant_id=tenant_id,
            issued_at=int(now) if issued_at is None else issued_at,
            expires_at=expires_at,
            raw_claims=dict(claims),
        )
        if token.is_expired(now):
            raise AuthenticationError("Token expired")

        await self.state.token_cache.store(token_hash, claims, expires_at, tenant_id=tenant_id)
        return token

    def _setup_routes(self):
        """Set up routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                state_health = await self.state.health()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={"service": "task_manager", "status": "error", "error": str(e)}
                )

            status = "ok" if state_health["cache_available"] else "degraded"
            self.metrics.record_health_check(status)
            return {
                "service": "task_manager",
                "status": status,
                "uptime_seconds": round(time.time() - self._start_time, 3),
                "dependencies": state_health,
                "version": "1.0.0",
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.get("/rate-limit/status")
        async def rate_limit_status(context: RequestContext = Depends(self.guard_request)):
            """Current window usage for the calling tenant."""
            tier = get_tier(context.tier)
            status = await self.state.rate_limiter.status(context.tenant_id, tier)
            status["recommended_retry_delay"] = await self.state.rate_limiter.recommended_retry_delay(
                context.tenant_id, tier
            )
            return status

        @self.app.get("/cache/info")
        async def cache_info(context: RequestContext = Depends(self.guard_request)):
            """Cached collections of the calling tenant, plus cache counters."""
            info = await self.state.entity_cache.tenant_cache_info(context.tenant_id)
            info["metrics"] = await self.state.entity_cache.metrics()
            info["tokens"] = await self.state.token_cache.stats()
            return info

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            start_time = time.perf_counter()
            request_id = set_request_id(request.headers.get("x-request-id"))

            try:
                response = await call_next(request)
                duration = time.perf_counter() - start_time

                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=response.status_code,
                    duration=duration
                )
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )

                for name, value in getattr(request.state, "rate_limit_headers", {}).items():
                    response.headers.setdefault(name, value)
                response.headers["X-Request-Id"] = request_id
                response.headers["X-Process-Time"] = f"{duration:.6f}"
                return response
            finally:
                clear_context()

    def _setup_error_handlers(self):
        """Set up error handlers."""

        @self.app.exception_handler(RateLimitError)
        async def rate_limit_exception_handler(request: Request, exc: RateLimitError):
            """Translate a rejected rate limit decision into a 429."""
            return JSONResponse(
                status_code=429,
                content=exc.to_response(request.headers.get("x-request-id")).model_dump(),
                headers=exc.headers
            )

        @self.app.exception_handler(AuthenticationError)
        async def authentication_exception_handler(request: Request, exc: AuthenticationError):
            return JSONResponse(
                status_code=401,
                content=exc.to_response(request.headers.get("x-request-id")).model_dump(),
                headers={"WWW-Authenticate": "Bearer"}
            )

        async def unavailable_exception_handler(request: Request, exc: AccessLayerException):
            """Store or breaker trouble the handler could not absorb: 503."""
            self.logger.error(
                "State layer unavailable",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            headers = {}
            if isinstance(exc, CircuitOpenError):
                headers["Retry-After"] = str(max(1, math.ceil(exc.retry_in_seconds)))
            return JSONResponse(
                status_code=503,
                content=exc.to_response(request.headers.get("x-request-id")).model_dump(),
                headers=headers
            )

        for exc_class in (StoreError, CircuitOpenError, RetryExhaustedError):
            self.app.add_exception_handler(exc_class, unavailable_exception_handler)

        @self.app.exception_handler(AccessLayerException)
        async def access_layer_exception_handler(request: Request, exc: AccessLayerException):
            """Handle AccessLayerException."""
            self.logger.error(
                "Access layer error",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            return JSONResponse(
                status_code=400,
                content=exc.to_response(request.headers.get("x-request-id")).model_dump()
            )

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=getattr(self.config, "host", "0.0.0.0"),
            port=getattr(self.config, "port", 8000),
            log_level=self.config.log_level.lower()
        )


def create_app(state: Optional[StateLayer] = None,
               token_verifier: Optional[TokenVerifier] = None) -> FastAPI:
    """Create FastAPI application."""
    service = TaskManagerStateService(state=state, token_verifier=token_verifier)
    return service.app


if __name__ == "__main__":
    service = TaskManagerStateService()
    service.run()
