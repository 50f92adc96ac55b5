"""
PATCHBAY Router: model calls for the default executor.

One Router serves one write run. It maps agent roles to LiteLLM model
strings, charges every response against the run's token and dollar caps,
and retries transient provider errors.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from patchbay.config_loader import LimitsConfig, PatchbayConfig

# Reasoning models that only accept the provider's default temperature.
_FIXED_TEMPERATURE_PREFIXES = ("gpt-5", "o1", "o3", "o4")


class BudgetExceededError(Exception):
    pass


@dataclass
class RunBudget:
    """Spend caps for a single write run."""
    token_cap: int
    dollar_cap: float
    tokens_spent: int = 0
    dollars_spent: float = 0.0
    calls: int = 0

    @classmethod
    def from_limits(cls, limits: LimitsConfig) -> "RunBudget":
        return cls(token_cap=limits.max_tokens_per_task, dollar_cap=limits.max_dollars_per_task)

    @property
    def exhausted(self) -> bool:
        return self.tokens_spent >= self.token_cap or self.dollars_spent >= self.dollar_cap

    def ensure_available(self) -> None:
        if self.exhausted:
            raise BudgetExceededError(
                f"run budget spent: {self.tokens_spent}/{self.token_cap} tokens, "
                f"${self.dollars_spent:.2f}/${self.dollar_cap:.2f}"
            )

    def charge(self, response: Any) -> int:
        """Add one LiteLLM response to the totals. Returns the tokens it used."""
        usage = getattr(response, "usage", None)
        used = (getattr(usage, "total_tokens", 0) or 0) if usage else 0
        self.tokens_spent += used
        self.calls += 1
        try:
            self.dollars_spent += litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Models missing from LiteLLM's price table are charged tokens only.
            logger.debug(f"[ROUTER] No price for response: {e}")
        return used

    def snapshot(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "tokens_spent": self.tokens_spent,
            "tokens_left": max(0, self.token_cap - self.tokens_spent),
            "dollars_spent": round(self.dollars_spent, 4),
            "dollars_left": round(max(0.0, self.dollar_cap - self.dollars_spent), 4),
        }


def accepts_temperature(model: str) -> bool:
    bare = model.lower().rsplit("/", 1)[-1]
    return not bare.startswith(_FIXED_TEMPERATURE_PREFIXES)


def completion_params(
    model: str,
    messages: list[dict[str, Any]],
    temperature: float,
    max_tokens: int,
    tools: list[dict] | None,
) -> dict[str, Any]:
    params: dict[str, Any] = dict(model=model, messages=messages, max_tokens=max_tokens)
    if accepts_temperature(model):
        params["temperature"] = temperature
    if tools:
        params.update(tools=tools, tool_choice="auto")
    return params


class RouterResponse(BaseModel):
    content: str
    model: str
    tool_calls: list[Any] = []
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    def __init__(self, config: PatchbayConfig):
        self.models = {
            "implementer": config.routing.implementer,
            "planner": config.routing.planner,
        }
        self.budget = RunBudget.from_limits(config.limits)
        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        try:
            return self.models[role]
        except KeyError:
            raise ValueError(f"No model routed for role {role!r} (have: {', '.join(self.models)})") from None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_not_exception_type((BudgetExceededError, ValueError)),
        reraise=True,
    )
    def complete(
        self,
        role: str,
        messages: list[dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 4096,
        tools: list[dict] | None = None,
    ) -> RouterResponse:
        """One LiteLLM completion for `role`. Raises BudgetExceededError once the run is spent."""
        self.budget.ensure_available()
        model = self.resolve_model(role)

        started = time.monotonic()
        response = litellm.completion(**completion_params(model, messages, temperature, max_tokens, tools))
        latency_ms = int((time.monotonic() - started) * 1000)
        used = self.budget.charge(response)
        logger.debug(f"[ROUTER] {role} via {model}: {used} tokens in {latency_ms}ms ({self.budget.snapshot()})")

        message = response.choices[0].message
        return RouterResponse(
            content=message.content or "",
            model=model,
            tool_calls=list(getattr(message, "tool_calls", None) or []),
            tokens_used=used,
            cost=self.budget.dollars_spent,
            latency_ms=latency_ms,
        )
