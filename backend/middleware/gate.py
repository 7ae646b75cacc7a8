"""
Route gate: maps (session claims, requested path) to pass-through or redirect.

The decision table is an ordered list of rules. Exempt paths are checked
first, then the rules in ``GATE_RULES`` order; the first rule that applies
decides the redirect target, and a request no rule catches is allowed.
The gate never fails a request: a missing or unverifiable token is simply
the unauthenticated state.
"""
from dataclasses import dataclass
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse
from starlette.types import ASGIApp
import logging

from services.auth import SessionClaims, decode_session, get_token_from_request
from services.security import GateConfig, SecurityUtils, gate_config

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class GateState:
    has_token: bool
    email_verified: bool
    profile_completed: bool

    @classmethod
    def from_claims(cls, claims: Optional[SessionClaims]) -> "GateState":
        if claims is None:
            return cls(has_token=False, email_verified=False, profile_completed=False)
        return cls(
            has_token=True,
            email_verified=claims.uf_email_verified,
            profile_completed=claims.profile_completed,
        )

@dataclass(frozen=True)
class GateRule:
    name: str
    applies: Callable[[GateState, str, GateConfig], bool]
    target: Callable[[GateConfig], str]

@dataclass(frozen=True)
class GateDecision:
    allow: bool
    target: Optional[str] = None
    rule: Optional[str] = None

ALLOW = GateDecision(allow=True)

def _matches(path: str, route: str) -> bool:
    """Exact match or a sub-path of ``route``."""
    return path == route or path.startswith(route.rstrip("/") + "/")

def is_exempt(path: str, config: GateConfig) -> bool:
    if path in config.exempt_paths:
        return True
    if any(path.startswith(prefix) for prefix in config.exempt_prefixes):
        return True
    # A dotted name under a restricted prefix is not a static asset
    if is_restricted(path, config):
        return False
    # Static assets (favicon.ico, robots.txt, /images/logo.png ...)
    return "." in path.rsplit("/", 1)[-1]

def is_restricted(path: str, config: GateConfig) -> bool:
    return any(_matches(path, prefix) for prefix in config.restricted_prefixes)

GATE_RULES = (
    GateRule(
        name="unauthenticated",
        applies=lambda state, path, config: not state.has_token,
        target=lambda config: config.verify_path,
    ),
    GateRule(
        name="email_unverified",
        applies=lambda state, path, config: not state.email_verified and path != config.verify_path,
        target=lambda config: config.verify_path,
    ),
    GateRule(
        name="profile_incomplete",
        applies=lambda state, path, config: (
            state.email_verified
            and not state.profile_completed
            and path != config.complete_profile_path
        ),
        target=lambda config: config.complete_profile_path,
    ),
    GateRule(
        name="profile_already_complete",
        applies=lambda state, path, config: (
            state.email_verified
            and state.profile_completed
            and path == config.complete_profile_path
        ),
        target=lambda config: config.landing_path,
    ),
    GateRule(
        name="restricted_unverified",
        applies=lambda state, path, config: is_restricted(path, config) and not state.email_verified,
        target=lambda config: config.verify_path,
    ),
)

def evaluate_gate(path: str, claims: Optional[SessionClaims],
                  config: GateConfig = gate_config) -> GateDecision:
    if is_exempt(path, config):
        return ALLOW

    state = GateState.from_claims(claims)
    for rule in GATE_RULES:
        if rule.applies(state, path, config):
            return GateDecision(allow=False, target=rule.target(config), rule=rule.name)
    return ALLOW

class RouteGateMiddleware(BaseHTTPMiddleware):
    """Redirects page requests whose session state does not permit the path."""

    def __init__(self, app: ASGIApp, config: GateConfig = None):
        super().__init__(app)
        self.config = config or gate_config

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if is_exempt(path, self.config):
            return await call_next(request)

        claims = decode_session(get_token_from_request(request))
        decision = evaluate_gate(path, claims, self.config)
        if decision.allow:
            return await call_next(request)

        SecurityUtils.log_security_event(
            "gate_redirect",
            {"path": path, "rule": decision.rule, "target": decision.target},
            user_email=claims.email if claims else None,
            client_ip=SecurityUtils.get_client_ip(request)
        )
        return RedirectResponse(url=decision.target, status_code=307)
