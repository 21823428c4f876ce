"""Token cost accounting with a hard budget ceiling."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import CostLimitError
from .models import CostRecord
from .time_utils import now_iso

logger = logging.getLogger("pitchdeck")

DEFAULT_MAX_COST = 50.0
DEFAULT_RATE: Tuple[float, float] = (0.01, 0.03)

# USD per 1K tokens: (input, output)
MODEL_RATES: Dict[str, Dict[str, Tuple[float, float]]] = {
    "anthropic": {
        "claude-sonnet-4-20250514": (0.003, 0.015),
        "claude-3-5-sonnet-20241022": (0.003, 0.015),
    },
    "openai": {
        "gpt-5.2": (0.01, 0.03),
        "gpt-4o": (0.005, 0.015),
        "gpt-4-turbo": (0.01, 0.03),
    },
    "google": {
        "gemini-2.0-flash": (0.000075, 0.0003),
        "gemini-3-pro-image-preview": (0.00025, 0.001),
    },
}


class CostTracker:
    def __init__(
        self,
        max_cost: float = DEFAULT_MAX_COST,
        rates: Optional[Dict[str, Dict[str, Tuple[float, float]]]] = None,
    ) -> None:
        self.max_cost = float(max_cost)
        self.rates = rates if rates is not None else MODEL_RATES
        self.total_cost = 0.0
        self.breakdown: Dict[str, float] = {}
        self.calls: List[CostRecord] = []

    def rates_for(self, provider: str, model: str) -> Tuple[float, float]:
        return self.rates.get(provider, {}).get(model, DEFAULT_RATE)

    def add_usage(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
        """Record one call and return its cost.

        The call is recorded before the ceiling check, so when this raises
        ``CostLimitError`` the total already includes the offending call.
        """
        rate_in, rate_out = self.rates_for(provider, model)
        cost = (input_tokens / 1000.0) * rate_in + (output_tokens / 1000.0) * rate_out

        self.calls.append(
            CostRecord(
                timestamp=now_iso(),
                provider=provider,
                model=model,
                input_tokens=int(input_tokens),
                output_tokens=int(output_tokens),
                cost=cost,
            )
        )
        self.breakdown[provider] = self.breakdown.get(provider, 0.0) + cost
        self.total_cost += cost
        logger.debug("Cost %s/%s: $%.4f (total $%.4f)", provider, model, cost, self.total_cost)

        if self.total_cost > self.max_cost:
            raise CostLimitError(self.total_cost, self.max_cost)
        return cost

    def summary(self) -> Dict[str, object]:
        count = len(self.calls)
        return {
            "total_cost": self.total_cost,
            "breakdown": dict(self.breakdown),
            "call_count": count,
            "average_cost_per_call": self.total_cost / count if count else 0.0,
            "max_cost": self.max_cost,
        }

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {**self.summary(), "calls": [c.model_dump() for c in self.calls]}
        with path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return path
