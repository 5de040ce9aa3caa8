import asyncio
import math
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

import structlog

from tokenpool.cache import THRESHOLD_KEY, Clock, TieredCache, TTLCache, utc_now
from tokenpool.errors import PricingError, StoreError
from tokenpool.pricing import REFERENCE_MODELS, PricingOracle, reference_price
from tokenpool.result import Err, Ok
from tokenpool.store.base import RemoteStore

logger = structlog.get_logger()

# hardcoded last resort when nothing else yields a threshold
DEFAULT_TOKEN_THRESHOLD = 100_000_000

SYSTEM_CONFIG_TTL = timedelta(minutes=5)
_SYSTEM_CONFIG_KEY = "system-config"


class PricingMethod(str, Enum):
    FIXED = "fixed"
    DYNAMIC = "dynamic"

    @classmethod
    def parse(cls, value: "object") -> "PricingMethod":
        if value == "fixed":
            return cls.FIXED
        # older rows spell the dynamic method "litellm_dynamic"
        return cls.DYNAMIC


@dataclass(frozen=True, slots=True)
class TokenLimits:
    per_window: "int" = DEFAULT_TOKEN_THRESHOLD
    daily: "int" = 500_000_000
    monthly: "int" = 15_000_000_000


@dataclass(frozen=True, slots=True)
class WarningLevels:
    # fractions of the token limit
    level1: "float" = 0.8
    level2: "float" = 0.9
    critical: "float" = 1.0


@dataclass(frozen=True, slots=True)
class BurnRateThresholds:
    # tokens per minute
    high: "float" = 1000
    moderate: "float" = 500
    normal: "float" = 100


@dataclass(frozen=True, slots=True)
class TokenThreshold:
    tokens: "int" = DEFAULT_TOKEN_THRESHOLD
    usd_equivalent: "float" = 40.0
    pricing_method: "PricingMethod" = PricingMethod.DYNAMIC


@dataclass(frozen=True, slots=True)
class PricingConfig:
    use_dynamic_pricing: "bool" = True
    target_usd_amount: "float" = 40.0
    fallback_tokens: "int" = DEFAULT_TOKEN_THRESHOLD


def _number(
    section: "dict[str, Any]",
    name: "str",
    default: "float",
    key: "str",
) -> "float":
    """
    reads a positive finite number, rejecting anything else in favor of
    the default.
    """
    if name not in section:
        return default
    value = section[name]
    if (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    ):
        return value
    logger.warning("invalid_config_value", key=key, field=name, value=repr(value))
    return default


def _section(rows: "dict[str, object]", key: "str") -> "dict[str, Any]":
    value = rows.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        logger.warning("invalid_config_section", key=key)
        return {}
    return value


@dataclass(frozen=True, slots=True)
class SystemConfig:
    """
    SystemConfig holds the static thresholds stored in the remote
    system_config table. Every missing or invalid value falls back to
    the built-in default.
    """

    token_limits: "TokenLimits" = field(default_factory=TokenLimits)
    warning_levels: "WarningLevels" = field(default_factory=WarningLevels)
    burn_rate: "BurnRateThresholds" = field(default_factory=BurnRateThresholds)
    default_threshold: "TokenThreshold" = field(default_factory=TokenThreshold)
    pricing: "PricingConfig" = field(default_factory=PricingConfig)

    @classmethod
    def from_rows(cls, rows: "dict[str, object]") -> "SystemConfig":
        d = cls()

        limits = _section(rows, "token_limits")
        # per_session is the legacy name of per_window
        if "per_window" not in limits and "per_session" in limits:
            limits = {**limits, "per_window": limits["per_session"]}
        token_limits = TokenLimits(
            per_window=int(
                _number(limits, "per_window", d.token_limits.per_window, "token_limits")
            ),
            daily=int(_number(limits, "daily", d.token_limits.daily, "token_limits")),
            monthly=int(
                _number(limits, "monthly", d.token_limits.monthly, "token_limits")
            ),
        )

        levels = _section(rows, "warning_levels") or _section(
            rows, "cost_warning_levels"
        )
        warning_levels = WarningLevels(
            level1=_number(levels, "level1", d.warning_levels.level1, "warning_levels"),
            level2=_number(levels, "level2", d.warning_levels.level2, "warning_levels"),
            critical=_number(
                levels, "critical", d.warning_levels.critical, "warning_levels"
            ),
        )

        bands = _section(rows, "burn_rate_thresholds")
        burn_rate = BurnRateThresholds(
            high=_number(bands, "high", d.burn_rate.high, "burn_rate_thresholds"),
            moderate=_number(
                bands, "moderate", d.burn_rate.moderate, "burn_rate_thresholds"
            ),
            normal=_number(bands, "normal", d.burn_rate.normal, "burn_rate_thresholds"),
        )

        threshold = _section(rows, "default_token_threshold")
        default_threshold = TokenThreshold(
            tokens=int(
                _number(
                    threshold,
                    "tokens",
                    d.default_threshold.tokens,
                    "default_token_threshold",
                )
            ),
            usd_equivalent=_number(
                threshold,
                "usd_equivalent",
                d.default_threshold.usd_equivalent,
                "default_token_threshold",
            ),
            pricing_method=PricingMethod.parse(threshold.get("pricing_method")),
        )

        pricing = _section(rows, "pricing_config")
        use_dynamic = pricing.get(
            "use_dynamic_pricing", pricing.get("use_litellm", True)
        )
        pricing_config = PricingConfig(
            use_dynamic_pricing=bool(use_dynamic),
            target_usd_amount=_number(
                pricing,
                "target_usd_amount",
                d.pricing.target_usd_amount,
                "pricing_config",
            ),
            fallback_tokens=int(
                _number(
                    pricing, "fallback_tokens", d.pricing.fallback_tokens, "pricing_config"
                )
            ),
        )

        return cls(
            token_limits=token_limits,
            warning_levels=warning_levels,
            burn_rate=burn_rate,
            default_threshold=default_threshold,
            pricing=pricing_config,
        )


@dataclass(frozen=True, slots=True)
class ResolvedConfig:
    """
    effective thresholds used by one aggregation pass.
    """

    token_limit: "int"
    pricing_method: "PricingMethod"
    burn_rate: "BurnRateThresholds"
    warning_levels: "WarningLevels"


def tokens_for_budget(target_usd: "float", input_cost: "float", output_cost: "float") -> "int":
    """
    converts a USD budget into tokens at the average of the input and
    output price.
    """
    for cost in (input_cost, output_cost):
        if not (
            isinstance(cost, (int, float))
            and not isinstance(cost, bool)
            and math.isfinite(cost)
            and cost > 0
        ):
            raise PricingError(f"invalid token price: {cost!r}")

    avg_price = (input_cost + output_cost) / 2
    tokens = round(target_usd / avg_price)
    if tokens <= 0:
        raise PricingError(
            f"invalid token count {tokens} for ${target_usd} at {avg_price}/token"
        )
    return tokens


class ConfigResolver:
    """
    ConfigResolver derives the effective token threshold through a
    fallback chain: a fixed remote value, the cached dynamic value, a
    fresh price lookup, and finally a hardcoded constant.

    Only successful price lookups are cached. The lookup itself runs
    under a lock and re-checks the cache, so concurrent refresh cycles
    trigger at most one network call per TTL.
    """

    def __init__(
        self,
        store: "RemoteStore",
        pricing: "PricingOracle",
        caches: "TieredCache",
        clock: "Clock" = utc_now,
        reference_models: "tuple[str, ...]" = REFERENCE_MODELS,
        config_ttl: "timedelta" = SYSTEM_CONFIG_TTL,
    ) -> "None":
        self._store = store
        self._pricing = pricing
        self._caches = caches
        self._reference_models = reference_models
        self._config_cache: "TTLCache[str, SystemConfig]" = TTLCache(
            "system_config", config_ttl, clock
        )
        self._config_lock: "asyncio.Lock" = asyncio.Lock()
        self._threshold_lock: "asyncio.Lock" = asyncio.Lock()

    async def close(self) -> "None":
        await self._pricing.close()

    async def get_system_config(self) -> "SystemConfig":
        """
        returns the remote static config. A store failure falls back to
        the defaults without caching them.
        """
        cached = self._config_cache.get(_SYSTEM_CONFIG_KEY)
        if cached is not None:
            return cached

        async with self._config_lock:
            cached = self._config_cache.get(_SYSTEM_CONFIG_KEY)
            if cached is not None:
                return cached

            try:
                rows = await self._store.fetch_system_config()
            except StoreError as exc:
                logger.warning("system_config_fetch_failed", error=str(exc))
                return SystemConfig()

            if not rows:
                logger.warning("system_config_empty")
                return SystemConfig()

            config = SystemConfig.from_rows(rows)
            self._config_cache.set(_SYSTEM_CONFIG_KEY, config)
            return config

    async def resolve_token_threshold(self) -> "int":
        config = await self.get_system_config()

        if config.default_threshold.pricing_method is PricingMethod.FIXED:
            logger.debug("token_threshold_fixed", tokens=config.default_threshold.tokens)
            return config.default_threshold.tokens

        if not config.pricing.use_dynamic_pricing:
            return config.token_limits.per_window

        cached = self._caches.dynamic_threshold.get(THRESHOLD_KEY)
        if cached is not None:
            return cached

        async with self._threshold_lock:
            cached = self._caches.dynamic_threshold.get(THRESHOLD_KEY)
            if cached is not None:
                return cached

            try:
                tokens = await self._compute_dynamic_threshold(
                    config.pricing.target_usd_amount
                )
            except Exception as exc:
                logger.warning(
                    "dynamic_threshold_failed",
                    error=str(exc),
                    fallback_tokens=config.pricing.fallback_tokens,
                )
                return config.pricing.fallback_tokens

            self._caches.dynamic_threshold.set(THRESHOLD_KEY, tokens)
            return tokens

    async def _compute_dynamic_threshold(self, target_usd: "float") -> "int":
        table = await self._pricing.fetch_model_pricing()
        model, price = reference_price(table, self._reference_models)
        tokens = tokens_for_budget(target_usd, price.input_cost, price.output_cost)
        logger.info(
            "dynamic_threshold_computed",
            model=model,
            target_usd=target_usd,
            tokens=tokens,
        )
        return tokens

    async def resolve(self) -> "ResolvedConfig":
        config = await self.get_system_config()
        token_limit = await self.resolve_token_threshold()
        return ResolvedConfig(
            token_limit=token_limit,
            pricing_method=config.default_threshold.pricing_method,
            burn_rate=config.burn_rate,
            warning_levels=config.warning_levels,
        )

    async def update_system_config(
        self,
        key: "str",
        value: "object",
        description: "str | None" = None,
    ) -> "Ok[None] | Err[StoreError]":
        """
        writes one system_config row and drops every cached value
        derived from it.
        """
        try:
            await self._store.upsert_system_config(key, value, description)
        except StoreError as exc:
            logger.warning("system_config_update_failed", key=key, error=str(exc))
            return Err(exc)

        self.clear_cache()
        return Ok(None)

    def clear_cache(self) -> "None":
        self._config_cache.clear()
        self._caches.dynamic_threshold.clear()
        logger.info("config_cache_cleared")
