import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx
import structlog

from tokenpool.errors import PricingError
from tokenpool.models import TokenCounts

logger = structlog.get_logger()

LITELLM_PRICING_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/"
    "model_prices_and_context_window.json"
)

# price lookups must never stall a refresh tick for long
PRICING_TIMEOUT_SECONDS = 20.0

# tried in order, older generations last
REFERENCE_MODELS: "tuple[str, ...]" = (
    "claude-sonnet-4-20250514",
    "claude-4-sonnet-20250514",
    "claude-4-sonnet",
    "anthropic/claude-4-sonnet-20250514",
    "anthropic/claude-sonnet-4-20250514",
    "claude-3-5-sonnet-20241022",
    "anthropic/claude-3-5-sonnet-20241022",
)


@dataclass(frozen=True, slots=True)
class ModelPrice:
    # USD per token
    input_cost: "float"
    output_cost: "float"
    cache_creation_cost: "float" = 0.0
    cache_read_cost: "float" = 0.0

    def cost_of(self, counts: "TokenCounts") -> "float":
        return (
            counts.input_tokens * self.input_cost
            + counts.output_tokens * self.output_cost
            + counts.cache_creation_tokens * self.cache_creation_cost
            + counts.cache_read_tokens * self.cache_read_cost
        )


class PricingOracle(Protocol):
    async def fetch_model_pricing(self) -> "dict[str, ModelPrice]": ...

    async def close(self) -> "None": ...


def _is_price(value: "object") -> "bool":
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


def parse_price_table(raw: "dict[str, Any]") -> "dict[str, ModelPrice]":
    """
    keeps only the models that carry a valid input and output price.
    """
    table: "dict[str, ModelPrice]" = {}
    for model, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        input_cost = entry.get("input_cost_per_token")
        output_cost = entry.get("output_cost_per_token")
        if not (_is_price(input_cost) and _is_price(output_cost)):
            continue
        cache_creation = entry.get("cache_creation_input_token_cost")
        cache_read = entry.get("cache_read_input_token_cost")
        table[model] = ModelPrice(
            float(input_cost),
            float(output_cost),
            float(cache_creation) if _is_price(cache_creation) else 0.0,
            float(cache_read) if _is_price(cache_read) else 0.0,
        )
    return table


def load_offline_pricing(path: "Path") -> "dict[str, ModelPrice]":
    """
    reads a price table snapshot stored in the LiteLLM JSON format.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise PricingError(f"cannot read offline pricing {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise PricingError(f"offline pricing {path} is not a JSON object")
    return parse_price_table(raw)


def lookup_price(
    table: "dict[str, ModelPrice]", model: "str"
) -> "ModelPrice | None":
    """
    finds a model under its own name or its provider-prefixed name.
    """
    return table.get(model) or table.get(f"anthropic/{model}")


def reference_price(
    table: "dict[str, ModelPrice]",
    models: "tuple[str, ...]" = REFERENCE_MODELS,
) -> "tuple[str, ModelPrice]":
    """
    returns the first reference model present in the table.
    """
    for model in models:
        price = table.get(model)
        if price is not None:
            return model, price
    raise PricingError("no reference model found in pricing data")


class PricingClient:
    """
    PricingClient fetches the public LiteLLM price table. When the
    network fails it falls back to the last table it fetched, then to
    an offline snapshot if one was given.
    """

    def __init__(
        self,
        url: "str" = LITELLM_PRICING_URL,
        offline_pricing: "dict[str, ModelPrice] | None" = None,
        timeout: "float" = PRICING_TIMEOUT_SECONDS,
    ) -> "None":
        self._url = url
        self._offline = offline_pricing
        self._last_good: "dict[str, ModelPrice] | None" = None
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch_model_pricing(self) -> "dict[str, ModelPrice]":
        try:
            resp = await self._client.get(self._url)
            resp.raise_for_status()
            raw = resp.json()
            if not isinstance(raw, dict):
                raise PricingError("price table is not a JSON object")
            table = parse_price_table(raw)
        except (httpx.HTTPError, ValueError, PricingError) as exc:
            logger.warning("pricing_fetch_failed", url=self._url, error=str(exc))
            if self._last_good is not None:
                return self._last_good
            if self._offline is not None:
                logger.info("pricing_using_offline_table", models=len(self._offline))
                return self._offline
            raise PricingError(f"price table unavailable: {exc}") from exc

        self._last_good = table
        logger.debug("pricing_fetched", models=len(table))
        return table
