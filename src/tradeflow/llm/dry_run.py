"""
Dry-run LLM client returning canned responses by agent role.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from tradeflow.llm.base import LLMRequest, LLMResponse


@dataclass
class DryRunResponse:
    """Canned response for one role."""

    content: str
    input_tokens: int = 100
    output_tokens: int = 50


DRY_RUN_RESPONSES: dict[str, DryRunResponse] = {
    "analyst": DryRunResponse(
        content="Summary: conditions are mixed with a modest positive tilt.\n"
        "- Momentum is constructive\n- Valuation is full",
        input_tokens=800,
        output_tokens=120,
    ),
    "bull": DryRunResponse(
        content="The bull case rests on durable growth.\n"
        "- Revenue growth remains above peers\n- Margins are expanding",
        input_tokens=1500,
        output_tokens=200,
    ),
    "bear": DryRunResponse(
        content="The bear case centres on valuation risk.\n"
        "- Multiple is above its history\n- Competition is intensifying",
        input_tokens=1500,
        output_tokens=200,
    ),
    "research_manager": DryRunResponse(
        content="Recommendation: BUY. The bull arguments on growth outweigh valuation concerns.",
        input_tokens=2500,
        output_tokens=250,
    ),
    "trader": DryRunResponse(
        content="Proposed action: BUY with a staged entry over two weeks.",
        input_tokens=1200,
        output_tokens=150,
    ),
    "risk_analyst": DryRunResponse(
        content="Risk view: position is acceptable with a stop below recent support.",
        input_tokens=1000,
        output_tokens=120,
    ),
    "risk_manager": DryRunResponse(
        content="DECISION: BUY\nCONFIDENCE: 72\nRationale: growth case holds with managed downside.",
        input_tokens=3000,
        output_tokens=200,
    ),
    "default": DryRunResponse(content="Dry run response."),
}


class DryRunClient:
    """LLM client that never leaves the process."""

    def __init__(self, latency_s: float = 0.0) -> None:
        self.latency_s = latency_s
        self.calls: list[LLMRequest] = []

    @property
    def provider(self) -> str:
        return "dry_run"

    async def complete(self, request: LLMRequest) -> LLMResponse:
        self.calls.append(request)
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        canned = DRY_RUN_RESPONSES.get(request.role, DRY_RUN_RESPONSES["default"])
        return LLMResponse(
            content=canned.content,
            model=request.model,
            provider=self.provider,
            input_tokens=canned.input_tokens,
            output_tokens=canned.output_tokens,
        )

    async def close(self) -> None:
        return None
