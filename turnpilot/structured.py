import json
import logging
import re
from typing import Any, Optional

from . import agents
from .llm import LMStudioClient, message_content

logger = logging.getLogger("uvicorn.error")

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


def _strip_fences(raw: str) -> str:
    match = _FENCE_RE.match(raw or "")
    return match.group(1) if match else (raw or "").strip()


async def safe_json_parse(raw: str, lm_client: LMStudioClient, fixer_model: Optional[str]) -> Optional[Any]:
    """Parse JSON, asking the JSONRepair profile to fix it once when it is malformed."""
    try:
        return json.loads(_strip_fences(raw))
    except json.JSONDecodeError:
        pass
    if not fixer_model:
        return None
    try:
        resp = await lm_client.chat_completion(
            model=fixer_model,
            messages=[
                {"role": "system", "content": agents.JSON_REPAIR_SYSTEM},
                {"role": "user", "content": raw},
            ],
            temperature=0.0,
            max_tokens=800,
        )
        return json.loads(_strip_fences(message_content(resp)))
    except json.JSONDecodeError:
        logger.warning("JSON repair returned invalid JSON")
        return None


async def json_completion(
    lm_client: LMStudioClient,
    model: str,
    system: str,
    user: str,
    max_tokens: int = 1024,
) -> Any:
    """Run a JSON-mode completion and return the parsed object. Raises ValueError when it cannot be parsed."""
    resp = await lm_client.chat_completion(
        model=model,
        messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
        temperature=0.0,
        max_tokens=max_tokens,
        json_mode=True,
    )
    parsed = await safe_json_parse(message_content(resp), lm_client, model)
    if parsed is None:
        raise ValueError("model returned malformed JSON")
    return parsed
