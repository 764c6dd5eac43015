import json
import logging
from typing import Any, Dict, List, Optional

from . import agents
from .errors import PlanningFailure
from .llm import LMStudioClient
from .schemas import Attachments, Plan, ThoughtStep
from .structured import json_completion

logger = logging.getLogger("uvicorn.error")


def _steps(value: Any) -> List[ThoughtStep]:
    if not isinstance(value, list):
        return []
    steps: List[ThoughtStep] = []
    for item in value:
        if isinstance(item, dict):
            steps.append(
                ThoughtStep(
                    phase=str(item.get("phase") or ""),
                    step=str(item.get("step") or ""),
                    concise_step=str(item.get("concise_step") or item.get("conciseStep") or ""),
                )
            )
        elif isinstance(item, str) and item.strip():
            steps.append(ThoughtStep(step=item.strip(), concise_step=item.strip()))
    return steps


def _flag(data: Dict[str, Any], camel: str, snake: str) -> bool:
    value = data.get(camel, data.get(snake))
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def parse_plan(data: Any) -> Plan:
    """Plan from the classifier's JSON. Tool flags switch thinking off."""
    if not isinstance(data, dict):
        raise PlanningFailure(f"planner returned {type(data).__name__}, expected an object")
    molecule_name = data.get("moleculeName", data.get("molecule_name"))
    plan = Plan(
        needs_web_search=_flag(data, "needsWebSearch", "needs_web_search"),
        is_url_read_request=_flag(data, "isUrlReadRequest", "is_url_read_request"),
        is_creator_request=_flag(data, "isCreatorRequest", "is_creator_request"),
        is_capabilities_request=_flag(data, "isCapabilitiesRequest", "is_capabilities_request"),
        is_molecule_request=_flag(data, "isMoleculeRequest", "is_molecule_request"),
        molecule_name=str(molecule_name).strip() if molecule_name else None,
        needs_thinking=_flag(data, "needsThinking", "needs_thinking"),
        needs_code_context=_flag(data, "needsCodeContext", "needs_code_context"),
        thoughts=_steps(data.get("thoughts")),
        search_plan=_steps(data.get("searchPlan", data.get("search_plan"))),
    )
    if plan.uses_side_tool:
        plan = plan.model_copy(update={"needs_thinking": False, "thoughts": []})
    return plan


def planner_prompt(prompt: str, attachments: Optional[Attachments]) -> str:
    lines = [f"USER PROMPT:\n{prompt or '(empty)'}"]
    if attachments is not None:
        desc = attachments.descriptors()
        if desc["image_count"]:
            lines.append(f"ATTACHED IMAGES: {desc['image_count']}")
        if desc["file_name"]:
            lines.append(f"ATTACHED FILE: {desc['file_name']}")
    return "\n\n".join(lines)


class Planner:
    def __init__(self, lm_client: LMStudioClient, default_model: str):
        self.lm_client = lm_client
        self.default_model = default_model

    async def plan(self, prompt: str, attachments: Optional[Attachments] = None, model: Optional[str] = None) -> Plan:
        """Classify the prompt. Any failure yields Plan.fallback() and is only logged."""
        try:
            data = await json_completion(
                self.lm_client,
                model or self.default_model,
                agents.PLANNER_SYSTEM,
                planner_prompt(prompt, attachments),
                max_tokens=1024,
            )
            return parse_plan(data)
        except Exception as exc:
            failure = exc if isinstance(exc, PlanningFailure) else PlanningFailure(str(exc) or type(exc).__name__)
            logger.warning("Planning failed, using fallback plan: %s", failure)
            return Plan.fallback()


def describe_plan(plan: Plan) -> str:
    return json.dumps(plan.model_dump(include={"needs_web_search", "is_url_read_request", "is_molecule_request", "needs_thinking"}))
