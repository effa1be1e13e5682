# cashpath/llm.py
import logging
from typing import List

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import ExternalServiceError
from .milestones import GoalContext, MilestoneSuggestion, MilestoneSuggestions

logger = logging.getLogger(__name__)

MILESTONE_SYSTEM = (
    "You are a financial goal motivation assistant. You split a savings goal into "
    "motivational milestones with short, actionable advice."
)

MILESTONE_USER_TMPL = """Goal name: "{name}"
Target amount: {target_amount}
Already saved: {current_amount}

Generate exactly {count} milestones.
- Each has a name (max 4 words, may start with one emoji), advice (1-2 sentences)
  and target_percentage, an integer between 10 and 95.
- Percentages strictly increase from the first milestone to the last.
- The first milestone celebrates starting, the last builds excitement for reaching the goal.
"""


def get_model(model_name: str, api_key: str | None):
    return ChatOpenAI(
        model=model_name,
        api_key=api_key,
        temperature=0.7,
    )


class LLMMilestoneSuggester:
    def __init__(self, model_name: str, api_key: str | None = None, model=None):
        self.model = model or get_model(model_name, api_key)

    def suggest_milestones(self, context: GoalContext, count: int) -> List[MilestoneSuggestion]:
        msgs = [
            SystemMessage(content=MILESTONE_SYSTEM),
            HumanMessage(
                content=MILESTONE_USER_TMPL.format(
                    name=context.name,
                    target_amount=context.target_amount,
                    current_amount=context.current_amount,
                    count=count,
                )
            ),
        ]
        try:
            result: MilestoneSuggestions = self.model.with_structured_output(MilestoneSuggestions).invoke(msgs)
        except Exception as exc:
            logger.warning("milestone suggestion request failed: %s", exc)
            raise ExternalServiceError("Milestone suggestion service failed") from exc
        return result.milestones
