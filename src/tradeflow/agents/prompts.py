"""
Prompt templates for pipeline agents.

Prompts are deliberately short; agent business logic is not the concern
of the orchestration core.
"""

from __future__ import annotations

import re
from typing import Any

from tradeflow.types import WorkflowRun

ANALYST_FOCUS: dict[str, str] = {
    "agent-macro-analyst": "macroeconomic backdrop: rates, inflation, growth and sector rotation",
    "agent-market-analyst": "price action, trend, momentum and volume",
    "agent-news-analyst": "recent company and industry news and its likely market impact",
    "agent-social-media-analyst": "retail sentiment and social media discussion",
    "agent-fundamentals-analyst": "financial statements, valuation and earnings quality",
}

RISK_STANCES: dict[str, str] = {
    "agent-risky-analyst": "aggressive: argue for capturing upside even at higher risk",
    "agent-safe-analyst": "conservative: argue for capital preservation",
    "agent-neutral-analyst": "balanced: weigh upside against downside evenly",
}

SYSTEM_PROMPTS: dict[str, str] = {
    "analyst": (
        "You are an equity analyst covering {ticker}. Focus on the {focus}. "
        "Start with a one-line summary, then list key findings as '- ' bullets."
    ),
    "bull": (
        "You are the bull researcher in a structured debate about {ticker}. Build the "
        "strongest evidence-based case for investing. Rebut the bear's last points "
        "where they exist. List your key points as '- ' bullets."
    ),
    "bear": (
        "You are the bear researcher in a structured debate about {ticker}. Build the "
        "strongest evidence-based case against investing. Rebut the bull's last points "
        "where they exist. List your key points as '- ' bullets."
    ),
    "research_manager": (
        "You are the research manager. Judge the bull/bear debate on {ticker} and state "
        "a recommendation of BUY, SELL or HOLD with your reasoning."
    ),
    "trader": (
        "You are the trader. Turn the research recommendation on {ticker} into a "
        "concrete proposed action (BUY, SELL or HOLD) with entry considerations."
    ),
    "risk_analyst": (
        "You are a risk analyst reviewing the trader's plan for {ticker}. Your stance is "
        "{stance}. Give your assessment in a few sentences."
    ),
    "risk_manager": (
        "You are the risk manager making the final call on {ticker}. Weigh the risk "
        "analysts' views against the trader's plan. Answer with lines 'DECISION: BUY|SELL|HOLD' "
        "and 'CONFIDENCE: <0-100>', followed by a short rationale."
    ),
}

_MAX_SECTION_CHARS = 1500
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")
_DECISION = re.compile(r"DECISION:\s*(BUY|SELL|HOLD)", re.IGNORECASE)
_CONFIDENCE = re.compile(r"CONFIDENCE:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)


def system_prompt(role: str, ticker: str, **fields: str) -> str:
    return SYSTEM_PROMPTS[role].format(ticker=ticker, **fields)


def _insight_text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("analysis") or value.get("text") or value.get("summary") or ""
    return str(value or "")[:_MAX_SECTION_CHARS]


def format_insights(run: WorkflowRun, keys: list[str]) -> str:
    """Render recorded insights; missing or failed agents are marked unavailable."""
    sections: list[str] = []
    for key in keys:
        text = _insight_text(run.agent_insights.get(key))
        sections.append(f"## {key}\n{text or '(unavailable)'}")
    return "\n\n".join(sections)


def format_debate(run: WorkflowRun) -> str:
    sections: list[str] = []
    for rnd in run.debate_rounds:
        bull = (rnd.bull_text or "(no contribution)")[:_MAX_SECTION_CHARS]
        bear = (rnd.bear_text or "(no contribution)")[:_MAX_SECTION_CHARS]
        sections.append(f"## Round {rnd.round}\nBull:\n{bull}\n\nBear:\n{bear}")
    return "\n\n".join(sections) or "(no debate recorded)"


def extract_points(text: str, limit: int = 5) -> list[str]:
    """Pull bullet points out of model output."""
    points = [m.group(1) for line in text.splitlines() if (m := _BULLET.match(line))]
    return points[:limit]


def parse_decision(text: str) -> tuple[str | None, float | None]:
    """Parse 'DECISION:' and 'CONFIDENCE:' lines from the risk manager."""
    decision = _DECISION.search(text)
    confidence = _CONFIDENCE.search(text)
    return (
        decision.group(1).upper() if decision else None,
        float(confidence.group(1)) if confidence else None,
    )
