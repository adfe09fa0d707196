"""
Fixed-window rate limiter keyed by action class and client identifier.

Why: The authorize, poll and token endpoints must be protected independent of
the authorization server's own pacing. Checks never block: they answer
immediately with allowed/denied and the window metadata the HTTP layer
returns to the client.

Behavior:
- One counter per `"{action}:{identifier}"` and window, mutated under a lock.
- Adaptive classes (login) block the identifier for `block_duration_ms` once
  the limit was exceeded more than twice in a window.
- Whitelisted IPs/CIDRs are never limited; blacklisted ones are always
  rejected with a one-hour `blocked_until`.
"""
from __future__ import annotations

import ipaddress
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Mapping, Optional

from .audit import security_event

BLACKLIST_BLOCK_MS = 3_600_000
ADAPTIVE_VIOLATION_THRESHOLD = 2


@dataclass(frozen=True)
class RateLimitRule:
    max: int
    window_ms: int
    adaptive: bool = False
    block_duration_ms: Optional[int] = None


DEFAULT_RULES: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(max=5, window_ms=900_000, adaptive=True, block_duration_ms=900_000),
    "oauth_authorize": RateLimitRule(max=20, window_ms=60_000),
    "oauth_poll": RateLimitRule(max=30, window_ms=60_000),
    "oauth_token": RateLimitRule(max=20, window_ms=60_000),
    "api": RateLimitRule(max=100, window_ms=60_000),
    "default": RateLimitRule(max=100, window_ms=60_000),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms
    blocked_until: Optional[int] = None


@dataclass
class _Window:
    count: int
    reset_at: int
    violations: int = 0
    blocked_until: Optional[int] = None


def _int_env(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def rules_from_env(environ: Mapping[str, str] | None = None) -> Dict[str, RateLimitRule]:
    """Apply `RATE_LIMIT_<CLASS>_MAX/_WINDOW/_BLOCK_DURATION` overrides to the defaults."""
    env = os.environ if environ is None else environ
    rules: Dict[str, RateLimitRule] = {}
    for action, rule in DEFAULT_RULES.items():
        prefix = f"RATE_LIMIT_{action.upper()}_"
        rules[action] = RateLimitRule(
            max=_int_env(env, prefix + "MAX", rule.max) or rule.max,
            window_ms=_int_env(env, prefix + "WINDOW", rule.window_ms) or rule.window_ms,
            adaptive=rule.adaptive,
            block_duration_ms=_int_env(env, prefix + "BLOCK_DURATION", rule.block_duration_ms),
        )
    return rules


def parse_networks(entries: Iterable[str]) -> tuple:
    """Parse IPs and CIDRs; unparseable entries are ignored."""
    nets = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            nets.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            continue
    return tuple(nets)


def _ip_in(ip: str, networks: tuple) -> bool:
    if not networks:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr.version == net.version and addr in net for net in networks)


class RateLimiter:
    def __init__(
        self,
        rules: Optional[Mapping[str, RateLimitRule]] = None,
        *,
        whitelist: Iterable[str] = (),
        blacklist: Iterable[str] = (),
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.rules = dict(rules or DEFAULT_RULES)
        self._whitelist = parse_networks(whitelist)
        self._blacklist = parse_networks(blacklist)
        self._clock_ms = clock_ms
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **kwargs) -> "RateLimiter":
        env = os.environ if environ is None else environ
        return cls(
            rules_from_env(env),
            whitelist=(env.get("RATE_LIMIT_IP_WHITELIST") or "").split(","),
            blacklist=(env.get("RATE_LIMIT_IP_BLACKLIST") or "").split(","),
            **kwargs,
        )

    def rule_for(self, action: str) -> RateLimitRule:
        return self.rules.get(action) or self.rules["default"]

    @staticmethod
    def key(identifier: str, action: str) -> str:
        return f"{action}:{identifier}"

    def check(self, identifier: str, action: str = "default") -> RateLimitResult:
        """Count one attempt and report whether it is allowed."""
        return self._evaluate(identifier, action, consume=True)

    def preview(self, identifier: str, action: str = "default") -> RateLimitResult:
        """Report the current state without counting an attempt."""
        return self._evaluate(identifier, action, consume=False)

    def reset(self, identifier: str, action: str = "default") -> None:
        with self._lock:
            self._windows.pop(self.key(identifier, action), None)

    def cleanup(self) -> int:
        """Drop windows whose reset time and block have passed."""
        now = self._clock_ms()
        with self._lock:
            doomed = [
                k for k, w in self._windows.items()
                if w.reset_at < now and (w.blocked_until is None or w.blocked_until < now)
            ]
            for k in doomed:
                del self._windows[k]
            return len(doomed)

    def _evaluate(self, identifier: str, action: str, *, consume: bool) -> RateLimitResult:
        now = self._clock_ms()
        rule = self.rule_for(action)
        if _ip_in(identifier, self._whitelist):
            return RateLimitResult(allowed=True, remaining=rule.max, reset_at=now + rule.window_ms)
        if _ip_in(identifier, self._blacklist):
            if consume:
                security_event("rate_limit_exceeded", ip=identifier, action=action, reason="blacklist")
            return RateLimitResult(
                allowed=False, remaining=0, reset_at=now + 60_000, blocked_until=now + BLACKLIST_BLOCK_MS
            )

        key = self.key(identifier, action)
        with self._lock:
            win = self._windows.get(key)
            if win is not None and win.blocked_until is not None and win.blocked_until > now:
                result = RateLimitResult(False, 0, win.reset_at, win.blocked_until)
            elif win is None or win.reset_at < now:
                if not consume:
                    return RateLimitResult(True, rule.max, now + rule.window_ms)
                win = _Window(count=1, reset_at=now + rule.window_ms)
                self._windows[key] = win
                return RateLimitResult(True, rule.max - 1, win.reset_at)
            elif win.count >= rule.max:
                if consume:
                    win.violations += 1
                    if rule.adaptive and win.violations > ADAPTIVE_VIOLATION_THRESHOLD:
                        block = rule.block_duration_ms or rule.window_ms * 2
                        win.blocked_until = now + block
                        win.reset_at = now + block
                result = RateLimitResult(False, 0, win.reset_at, win.blocked_until)
            else:
                if consume:
                    win.count += 1
                return RateLimitResult(True, rule.max - win.count, win.reset_at)

        if consume:
            security_event("rate_limit_exceeded", ip=identifier, action=action)
        return result
