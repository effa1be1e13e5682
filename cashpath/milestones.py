"""
Milestone planning for savings goals.

A goal is split into N checkpoints, N coming from the pace the user picked.
Names, advice and target percentages come from a ``MilestoneSuggester``; the
planner validates what it gets back and turns percentages into amounts and
dates along the goal's timeline.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Protocol

from pydantic import BaseModel, Field

from .errors import ExternalServiceError, MilestoneGenerationError

logger = logging.getLogger(__name__)

PACE_MILESTONE_COUNTS = {"aggressive": 3, "moderate": 4, "relaxed": 5}
MIN_MILESTONES = 2
MAX_MILESTONES = 10
MIN_PERCENTAGE = 10
MAX_PERCENTAGE = 95


class MilestoneSuggestion(BaseModel):
    name: str
    advice: str = ""
    target_percentage: int = Field(description="Share of the goal target, between 10 and 95")


class MilestoneSuggestions(BaseModel):
    milestones: List[MilestoneSuggestion]


@dataclass
class GoalContext:
    name: str
    target_amount: int
    current_amount: int


@dataclass
class PlannedMilestone:
    name: str
    advice: str
    target_amount: int
    target_date: datetime | None
    order: int


class MilestoneSuggester(Protocol):
    def suggest_milestones(self, context: GoalContext, count: int) -> List[MilestoneSuggestion]:
        ...


def milestone_count(pace: str, custom_count: int | None = None) -> int:
    if custom_count is not None:
        return max(MIN_MILESTONES, min(MAX_MILESTONES, custom_count))
    return PACE_MILESTONE_COUNTS.get(pace, PACE_MILESTONE_COUNTS["moderate"])


def default_milestone_name(percentage: int, index: int, total: int) -> str:
    if index == 1:
        return "🚀 First Step"
    if index == total:
        return "🎯 Almost There"
    if percentage <= 25:
        return "🌱 Getting Started"
    if percentage <= 50:
        return "⭐ Halfway Hero"
    if percentage <= 75:
        return "🔥 On Fire"
    return "💪 Final Push"


class EvenSpacingSuggester:
    """Deterministic suggester: checkpoints at i/(N+1) of the target."""

    def suggest_milestones(self, context: GoalContext, count: int) -> List[MilestoneSuggestion]:
        suggestions = []
        for i in range(1, count + 1):
            percentage = round(i / (count + 1) * 100)
            suggestions.append(
                MilestoneSuggestion(
                    name=default_milestone_name(percentage, i, count),
                    advice="",
                    target_percentage=percentage,
                )
            )
        return suggestions


def _validated(suggestions, count: int) -> List[MilestoneSuggestion]:
    if suggestions is None or len(suggestions) != count:
        got = 0 if suggestions is None else len(suggestions)
        raise MilestoneGenerationError(f"Expected {count} milestone suggestions, got {got}")

    cleaned = []
    for s in suggestions:
        name = (s.name or "").strip()
        if not name:
            raise MilestoneGenerationError("Milestone suggestion without a name")
        pct = max(MIN_PERCENTAGE, min(MAX_PERCENTAGE, int(s.target_percentage)))
        cleaned.append(MilestoneSuggestion(name=name, advice=(s.advice or "").strip(), target_percentage=pct))
    return sorted(cleaned, key=lambda s: s.target_percentage)


def plan_milestones(
    context: GoalContext,
    target_date: datetime | None,
    count: int,
    suggester: MilestoneSuggester,
    now: datetime | None = None,
) -> List[PlannedMilestone]:
    now = now or datetime.utcnow()
    try:
        suggestions = suggester.suggest_milestones(context, count)
    except ExternalServiceError as exc:
        raise MilestoneGenerationError(f"Milestone suggestions unavailable: {exc.message}") from exc

    suggestions = _validated(suggestions, count)

    # dates are only spread over a timeline that still lies ahead
    timeline = target_date - now if target_date and target_date > now else None

    planned = []
    for order, s in enumerate(suggestions, start=1):
        planned.append(
            PlannedMilestone(
                name=s.name,
                advice=s.advice,
                target_amount=round(context.target_amount * s.target_percentage / 100),
                target_date=now + timeline * (s.target_percentage / 100) if timeline else None,
                order=order,
            )
        )
    logger.debug("planned %d milestones for goal '%s'", len(planned), context.name)
    return planned


def build_suggester(settings) -> MilestoneSuggester:
    if settings.OPENAI_API_KEY:
        from .llm import LLMMilestoneSuggester

        return LLMMilestoneSuggester(model_name=settings.MILESTONE_MODEL, api_key=settings.OPENAI_API_KEY)
    logger.info("OPENAI_API_KEY not set, using evenly spaced milestones")
    return EvenSpacingSuggester()
