"""Credential vault: per-provider key pools with round-robin and cooldowns."""

import logging
import math
import os
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from hydra.models import (
    HEALTH_COOLDOWN,
    HEALTH_HEALTHY,
    STATUS_ACTIVE,
    STATUS_COOLDOWN,
    CredentialRecord,
    ProviderPool,
    ProviderStatus,
    cloak,
)

logger = logging.getLogger(__name__)

PROVIDERS = ("GEMINI", "GROQ", "OPENAI", "DEEPSEEK", "MISTRAL", "OPENROUTER")

PLACEHOLDER_MARKERS = ("INSERT", "YOUR_", "TODO", "CHANGE_ME", "EXAMPLE", "PLACEHOLDER")
MIN_KEY_LENGTH = 8
MAX_NUMBERED_ALIASES = 9

RATE_LIMIT_MARKERS = ("429", "quota", "rate limit", "limit", "resource exhausted")
OVERLOAD_MARKERS = ("503", "overloaded", "unavailable")

_SPLIT_PATTERN = re.compile(r"[,;\n]")


@dataclass(frozen=True)
class PenaltyPolicy:
    """Cooldown durations in seconds for the three failure tiers."""

    rate_limit_seconds: float = 300.0
    overload_seconds: float = 30.0
    generic_seconds: float = 3.0

    def __post_init__(self):
        if not (
            self.rate_limit_seconds > self.overload_seconds > self.generic_seconds > 0
        ):
            raise ValueError("penalties must satisfy rate_limit > overload > generic > 0")


def credential_env_names(provider: str) -> List[str]:
    """Environment variable aliases scanned for a provider, in priority order."""
    names = [
        f"{provider}_API_KEY",
        f"{provider}_API_KEYS",
        f"VITE_{provider}_API_KEY",
    ]
    names.extend(
        f"{provider}_API_KEY_{index}" for index in range(1, MAX_NUMBERED_ALIASES + 1)
    )
    return names


def _error_text(error: object) -> str:
    parts = [str(error)]
    if isinstance(error, Mapping):
        parts.append(str(error.get("message", "")))
    for attribute in ("status_code", "code"):
        value = getattr(error, attribute, None)
        if value is not None:
            parts.append(str(value))
    return " ".join(parts).lower()


class CredentialVault:
    """Holds API key pools per provider and hands them out fairly.

    All operations are synchronous and never raise for missing or unknown
    credentials; ``get_key`` returning ``None`` is the signal to skip a
    provider.
    """

    def __init__(
        self,
        providers: Sequence[str] = PROVIDERS,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.time,
        penalties: Optional[PenaltyPolicy] = None,
    ):
        self.providers: List[str] = list(providers)
        self.pools: Dict[str, ProviderPool] = {}
        self._environ = environ if environ is not None else os.environ
        self._clock = clock
        self.penalties = penalties or PenaltyPolicy()
        self.refresh()

    def refresh(self) -> None:
        for provider in self.providers:
            keys = self._scan_keys(provider)
            records = [
                CredentialRecord.from_plain(provider, index, key)
                for index, key in enumerate(keys)
            ]
            existing = self.pools.get(provider)
            cursor = existing.cursor if existing is not None else 0
            self.pools[provider] = ProviderPool(records=records, cursor=cursor)
            logger.debug("Loaded %d key(s) for %s", len(records), provider)

    def get_key(self, provider: str) -> Optional[str]:
        pool = self.pools.get(provider)
        if pool is None or not pool.records:
            return None

        self._reactivate_expired(pool)
        active = pool.active()
        if not active:
            return None

        index = pool.cursor % len(active)
        selected = active[index]
        pool.cursor = (index + 1) % len(active)
        return selected.key

    def report_failure(self, provider: str, key: str, error: object) -> None:
        record = self._find_record(provider, key)
        if record is None:
            return

        penalty = self.penalty_for(error)
        record.fails += 1
        record.status = STATUS_COOLDOWN
        record.cooldown_until = self._clock() + penalty
        record.last_error = str(error)[:200]
        logger.warning(
            "Key %s (%s) cooling down for %.0fs after failure #%d",
            record.key_prefix(),
            provider,
            penalty,
            record.fails,
        )

    def report_success(self, provider: str) -> None:
        logger.debug("Success reported for %s", provider)

    def penalty_for(self, error: object) -> float:
        text = _error_text(error)
        if any(marker in text for marker in RATE_LIMIT_MARKERS):
            return self.penalties.rate_limit_seconds
        if any(marker in text for marker in OVERLOAD_MARKERS):
            return self.penalties.overload_seconds
        return self.penalties.generic_seconds

    def is_healthy(self, provider: str) -> bool:
        pool = self.pools.get(provider)
        if pool is None:
            return False
        self._reactivate_expired(pool)
        return bool(pool.active())

    def get_all_statuses(self) -> List[ProviderStatus]:
        now = self._clock()
        statuses = []
        for provider, pool in self.pools.items():
            healthy = self.is_healthy(provider)
            cooling = [r for r in pool.records if r.status == STATUS_COOLDOWN]
            remaining = 0
            if cooling:
                soonest = min(r.cooldown_until for r in cooling) - now
                remaining = max(0, math.ceil(soonest / 60))
            statuses.append(
                ProviderStatus(
                    id=provider,
                    status=HEALTH_HEALTHY if healthy else HEALTH_COOLDOWN,
                    key_count=len(pool.records),
                    cooldown_remaining=remaining,
                )
            )
        return statuses

    def get_key_status(self, provider: str) -> Optional[List[Dict[str, object]]]:
        pool = self.pools.get(provider)
        if pool is None:
            return None
        self._reactivate_expired(pool)
        now = self._clock()
        return [
            {
                "id": record.id,
                "key_prefix": record.key_prefix(),
                "status": record.status,
                "fails": record.fails,
                "cooldown_seconds": max(0.0, record.cooldown_until - now)
                if record.status == STATUS_COOLDOWN
                else 0.0,
                "last_error": record.last_error,
            }
            for record in pool.records
        ]

    def _reactivate_expired(self, pool: ProviderPool) -> None:
        now = self._clock()
        for record in pool.records:
            if record.status == STATUS_COOLDOWN and record.cooldown_until <= now:
                record.status = STATUS_ACTIVE
                record.fails = 0

    def _find_record(self, provider: str, key: str) -> Optional[CredentialRecord]:
        pool = self.pools.get(provider)
        if pool is None:
            return None
        target = cloak(key)
        for record in pool.records:
            if record.cloaked_key == target:
                return record
        return None

    def _scan_keys(self, provider: str) -> List[str]:
        seen: Dict[str, None] = {}
        for name in credential_env_names(provider):
            raw = self._environ.get(name)
            if not raw:
                continue
            for value in _split_values(raw):
                if _is_valid_key(value):
                    seen.setdefault(value, None)
                else:
                    logger.warning(
                        "Skipped malformed key for %s in %s: too short or placeholder",
                        provider,
                        name,
                    )
        return list(seen)


def _split_values(raw: str) -> Iterable[str]:
    for piece in _SPLIT_PATTERN.split(raw):
        clean = re.sub(r"['\"\s]", "", piece)
        if clean:
            yield clean


def _is_valid_key(value: str) -> bool:
    if len(value) < MIN_KEY_LENGTH:
        return False
    upper = value.upper()
    return not any(marker in upper for marker in PLACEHOLDER_MARKERS)
