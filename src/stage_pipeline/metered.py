"""Metered HTTP client for cost-bearing model calls.

Every call is checked against an explicitly passed :class:`BudgetLedger`
before any request is made.  The pre-call estimate is held as a
reservation while the request is in flight, and the actual cost is
recorded into the same ledger afterwards.

Transient failures (network errors and 5xx responses) are retried with
exponential backoff.  4xx responses are never retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from src.stage_pipeline.budget import BudgetLedger
from src.stage_pipeline.config import MeteredConfig
from src.stage_pipeline.exceptions import BudgetExceededError, MeteredCallError

logger = logging.getLogger(__name__)

# USD per million tokens: (input, output)
PRICING: dict[str, tuple[float, float]] = {
    "claude-sonnet-4": (3.00, 15.00),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    "claude-3-opus-20240229": (15.00, 75.00),
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4-turbo": (10.00, 30.00),
    "gemini-1.5-pro-002": (1.25, 5.00),
    "gemini-1.5-flash-002": (0.075, 0.30),
}
DEFAULT_PRICING_MODEL = "claude-sonnet-4"


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Compute the USD cost of a call from the pricing table.

    Unknown models are priced as :data:`DEFAULT_PRICING_MODEL`.
    """
    price_in, price_out = PRICING.get(model, PRICING[DEFAULT_PRICING_MODEL])
    cost = (input_tokens / 1_000_000) * price_in + (output_tokens / 1_000_000) * price_out
    return round(cost, 6)


@dataclass
class MeteredResponse:
    """Outcome of a successful metered call."""

    output: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    attempts: int = 1

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class MeteredClient:
    """Async client that meters every call against a budget ledger.

    Parameters
    ----------
    config:
        Endpoint, model and retry settings.
    api_key:
        Bearer token sent with every request.  Never logged.
    transport:
        Optional ``httpx`` transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        config: MeteredConfig | None = None,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or MeteredConfig()
        self._api_key = api_key
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def estimate(self, prompt: str, max_tokens: int | None = None) -> float:
        """Expected cost of a call with *prompt*, used as its reservation.

        A configured ``estimate_usd`` wins.  Otherwise the prompt is
        priced at roughly four characters per token plus the full output
        cap.
        """
        if self._config.estimate_usd is not None:
            return max(float(self._config.estimate_usd), 0.0)
        max_tokens = self._config.max_tokens if max_tokens is None else max_tokens
        return estimate_cost(self._config.model, len(prompt) // 4 + 1, max_tokens)

    def _delay(self, attempt: int) -> float:
        return min(self._config.backoff_base * (2 ** attempt), self._config.max_backoff)

    async def _post(self, payload: dict[str, Any]) -> tuple[dict[str, Any], int]:
        """POST *payload* with retry + exponential backoff.

        Returns:
            The decoded JSON body and the number of attempts made.

        Raises:
            MeteredCallError: On a 4xx response or once retries are exhausted.
        """
        if not self._config.base_url:
            raise MeteredCallError(None, "Metered client has no base_url configured")

        last_error: Exception | None = None
        last_status: int | None = None
        async with httpx.AsyncClient(
            timeout=self._config.timeout_s,
            transport=self._transport,
        ) as http:
            for attempt in range(self._config.max_retries + 1):
                try:
                    resp = await http.post(
                        self._config.base_url, json=payload, headers=self._headers()
                    )
                except httpx.HTTPError as exc:
                    last_error = exc
                    last_status = None
                else:
                    if resp.status_code < 400:
                        return resp.json(), attempt + 1
                    last_status = resp.status_code
                    if resp.status_code < 500:
                        raise MeteredCallError(
                            resp.status_code,
                            f"Metered call rejected with HTTP {resp.status_code}",
                        )
                    last_error = MeteredCallError(resp.status_code)

                if attempt < self._config.max_retries:
                    delay = self._delay(attempt)
                    logger.debug(
                        "Retry %d/%d for metered call after %.1fs: %s",
                        attempt + 1,
                        self._config.max_retries,
                        delay,
                        last_error,
                    )
                    await asyncio.sleep(delay)

        logger.warning(
            "All %d retries exhausted for metered call: %s",
            self._config.max_retries,
            last_error,
        )
        raise MeteredCallError(
            last_status, f"Metered call failed after retries: {last_error}"
        )

    async def call(
        self,
        ledger: BudgetLedger,
        *,
        client: str,
        stage: str,
        prompt: str,
        run_id: str | None = None,
        estimate: float = 0.0,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> MeteredResponse:
        """Make one metered call on behalf of *client* at *stage*.

        The budget is checked first; a call that would cross a ceiling
        raises :class:`BudgetExceededError` without touching the network.

        Args:
            ledger: The ledger to check and record into.
            client: Client slug.
            stage: Stage token.
            prompt: Prompt text.
            run_id: Current run id, used for the per-run ceiling.
            estimate: Expected cost in USD, reserved while in flight.
            max_tokens: Output token cap sent to the server; defaults to
                the configured cap.
            model: Model override; defaults to the configured model.

        Returns:
            The parsed :class:`MeteredResponse`.
        """
        model = model or self._config.model
        max_tokens = self._config.max_tokens if max_tokens is None else max_tokens
        decision = ledger.check_budget(client, stage, run_id=run_id, estimate=estimate)
        if not decision.within_budget:
            raise BudgetExceededError(decision.scope, decision.spent, decision.limit or 0.0)

        reservation = ledger.reserve(client, stage, estimate, run_id=run_id)
        try:
            body, attempts = await self._post(
                {"model": model, "prompt": prompt, "max_tokens": max_tokens}
            )
        finally:
            ledger.release(reservation)

        usage = body.get("usage") or {}
        input_tokens = int(usage.get("input_tokens", 0) or 0)
        output_tokens = int(usage.get("output_tokens", 0) or 0)
        cost = body.get("cost_usd")
        if cost is None:
            cost = estimate_cost(model, input_tokens, output_tokens)
        recorded = ledger.record(run_id, client, stage, cost)

        logger.info(
            "Metered call for %s/%s: %d tokens, $%.4f (%d attempt(s))",
            client,
            stage,
            input_tokens + output_tokens,
            recorded,
            attempts,
        )
        return MeteredResponse(
            output=str(body.get("output", "")),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=recorded,
            attempts=attempts,
        )
