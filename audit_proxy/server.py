import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from audit_proxy import config
from audit_proxy.classifier import ClassifierClient
from audit_proxy.config import SiteConfig
from audit_proxy.core import (
    Block,
    Degraded,
    DirectOrigin,
    InvalidTarget,
    block_message,
    decide_outcome,
    extract_audit_text,
    extract_credential,
    format_transcript,
    is_probe_request,
    parse_proxy_path,
    probe_completion,
    probe_stream_events,
    should_audit,
)
from audit_proxy.errors import (
    AuditBlocked,
    Banned,
    InternalError,
    InvalidRoute,
    ProxyError,
    RateLimited,
    RouteNotFound,
    error_response,
)
from audit_proxy.events import EventLog, fingerprint
from audit_proxy.forwarder import forward_request, raw_request_path
from audit_proxy.notify import Notifier
from audit_proxy.store import BanTracker, RateLimiter

logger = logging.getLogger(__name__)

LIVENESS_MESSAGE = "Openai-compatible Message Audit API Running..."


class ProxyState:
    """Everything the request pipeline shares across requests."""

    def __init__(
        self,
        sites: List[SiteConfig],
        client: httpx.AsyncClient,
        classifier_base: str,
        notifier: Notifier,
        events: EventLog,
        prefix: str = "/proxy",
        clock=time.time,
    ):
        self.sites = config.site_table(sites)
        self.client = client
        self.classifier = ClassifierClient(client, classifier_base)
        self.notifier = notifier
        self.events = events
        self.prefix = prefix
        self.rate_limiter = RateLimiter(clock=clock)
        self.bans = BanTracker(clock=clock)

    def resolve(self, path: str):
        """Returns (site, sub_path) for a proxied path, or None if not proxied."""
        target = parse_proxy_path(path, self.prefix)
        if target is None:
            return None
        if isinstance(target, InvalidTarget):
            raise InvalidRoute(target.reason)
        if isinstance(target, DirectOrigin):
            return SiteConfig.for_origin(target.origin), target.sub_path

        site = self.sites.get(target.site_id)
        if site is None:
            raise RouteNotFound(f"API site '{target.site_id}' not found")
        return site, target.sub_path

    def admit(self, site: SiteConfig) -> bool:
        try:
            return self.rate_limiter.try_admit(site.base_origin, site.rate_limit)
        except Exception:
            logger.exception("rate limiter failed for %s, allowing request", site.base_origin)
            return True

    def check_ban(self, site: SiteConfig, credential: str):
        try:
            return self.bans.check_ban(site.base_origin, credential, site)
        except Exception:
            logger.exception("ban check failed for %s, allowing request", site.base_origin)
            return False, 0

    def record_violation(self, site: SiteConfig, credential: str):
        try:
            return self.bans.record_violation(site.base_origin, credential, site)
        except Exception:
            logger.exception("recording violation failed for %s", site.base_origin)
            return False, None


async def sweep_forever(state: ProxyState, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            counters = state.rate_limiter.purge_expired()
            records = state.bans.sweep()
            if counters or records:
                logger.debug("sweep purged %d rate-limit counters, %d ban records", counters, records)
        except Exception:
            logger.exception("state sweep failed")


def _event(request_id: str, request: Request, site: SiteConfig, sub_path: str, action: str, **extra) -> dict:
    return {
        "timestamp": time.time(),
        "request_id": request_id,
        "client_ip": request.client.host if request.client else "unknown",
        "method": request.method,
        "origin": site.base_origin,
        "path": sub_path,
        "action": action,
        **extra,
    }


async def handle_audited(state: ProxyState, request: Request, site: SiteConfig, sub_path: str,
                         credential: str, request_id: str) -> Response:
    target_url = site.base_origin + sub_path
    body_bytes = await request.body()
    try:
        body = json.loads(body_bytes) if body_bytes else {}
    except ValueError as e:
        logger.error("audited request to %s has a malformed body: %s", target_url, e)
        raise InternalError("Internal server error") from e

    if is_probe_request(body, site.audit_parameter):
        logger.info("probe request for %s answered locally", target_url)
        if body.get("stream") is True:
            return StreamingResponse(iter(probe_stream_events(body)), media_type="text/event-stream")
        return JSONResponse(probe_completion(body))

    text = extract_audit_text(body, site.audit_parameter)
    if text:
        verdict = await state.classifier.classify(text)
        outcome = decide_outcome(verdict)

        if isinstance(outcome, Degraded):
            logger.warning("audit degraded for %s (%s), allowing request", target_url, outcome.cause)
        elif isinstance(outcome, Block):
            v = outcome.verdict
            banned, count = state.record_violation(site, credential)
            logger.info(
                "blocked %s: rule=%s verdict=%s violations=%s banned=%s",
                target_url, v.rule_id, v.verdict, count, banned,
            )
            state.events.log_event(_event(
                request_id, request, site, sub_path, "BLOCK",
                rule_id=v.rule_id,
                verdict=v.verdict,
                match_string=v.match_string,
                credential=fingerprint(credential),
                violation_count=count,
                banned=banned,
            ))
            await state.notifier.notify_violation(
                target=target_url,
                credential=credential,
                model=body.get("model") if isinstance(body, dict) else None,
                verdict=v,
                transcript=format_transcript(body, site.audit_parameter),
                violation_count=count,
                banned=banned,
            )
            raise AuditBlocked(
                block_message(v, count, site.max_violations, banned),
                verdict=v.verdict,
                param=v.match_string,
                code=v.rule_id,
            )

    return await forward_request(state.client, request, target_url, body=body_bytes)


async def handle_proxy(state: ProxyState, request: Request) -> Response:
    resolved = state.resolve(raw_request_path(request))
    if resolved is None:
        return error_response(404, "Not found")
    site, sub_path = resolved
    request_id = str(uuid.uuid4())

    if not state.admit(site):
        logger.info("rate limit exceeded for %s", site.base_origin)
        state.events.log_event(_event(request_id, request, site, sub_path, "RATE_LIMITED", limit=site.rate_limit))
        raise RateLimited("Rate limit exceeded. Please try again later.")

    credential = extract_credential(request.headers.get("authorization"))
    banned, remaining = state.check_ban(site, credential)
    if banned:
        state.events.log_event(_event(
            request_id, request, site, sub_path, "BANNED",
            credential=fingerprint(credential), remaining_minutes=remaining,
        ))
        raise Banned(
            f"Access suspended after repeated policy violations. Try again in {remaining} minute(s).",
            code="credential_banned",
        )

    if should_audit(sub_path, request.method, site):
        return await handle_audited(state, request, site, sub_path, credential, request_id)

    return await forward_request(state.client, request, site.base_origin + sub_path)


def create_app(
    sites: Optional[List[SiteConfig]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    classifier_base: str = config.AUDIT_API_BASE,
    notifier: Optional[Notifier] = None,
    events_path: Optional[Path] = config.EVENTS_LOG,
    prefix: str = config.PROXY_PREFIX,
    clock=time.time,
    sweep_interval: float = config.SWEEP_INTERVAL_SECONDS,
) -> FastAPI:
    if sites is None:
        sites = config.load_sites()
    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
    if notifier is None:
        notifier = Notifier(
            client,
            app_token=config.WXPUSHER_APP_TOKEN,
            uid=config.WXPUSHER_UID,
            password=config.ENCRYPTION_PASSWORD,
            salt=config.ENCRYPTION_SALT,
            deploy_domain=config.DEPLOY_DOMAIN,
        )
    state = ProxyState(sites, client, classifier_base, notifier, EventLog(events_path), prefix, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(sweep_forever(state, sweep_interval))
        logger.info("proxy ready with %d site(s): %s", len(state.sites), ", ".join(state.sites))
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await client.aclose()

    app = FastAPI(title="Message Audit Proxy", lifespan=lifespan)
    app.state.proxy = state

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return exc.to_response()

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error for %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error", "internal_error")

    @app.get("/")
    def liveness():
        return {"status": "ok", "message": LIVENESS_MESSAGE}

    @app.api_route(
        "/{full_path:path}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    )
    async def proxy(full_path: str, request: Request):
        return await handle_proxy(state, request)

    return app

