import logging
from typing import List, Optional, Tuple

from . import agents
from .llm import LMStudioClient
from .schemas import Message, Summary
from .structured import json_completion

logger = logging.getLogger("uvicorn.error")

Pair = Tuple[Message, Message]


def pair_recent_messages(messages: List[Message], window: int) -> List[Pair]:
    """(user, model) pairs from the last ``window`` messages, read at even offsets."""
    recent = messages[-window:]
    pairs: List[Pair] = []
    for i in range(0, len(recent), 2):
        user = recent[i]
        model = recent[i + 1] if i + 1 < len(recent) else None
        if user.role == "user" and model is not None and model.role == "model":
            pairs.append((user, model))
    return pairs


class SummaryService:
    def __init__(self, lm_client: LMStudioClient, default_model: str):
        self.lm_client = lm_client
        self.default_model = default_model

    async def summarize(self, pairs: List[Pair], starting_serial: int, model: Optional[str] = None) -> List[Summary]:
        if not pairs:
            return []
        blocks = "\n".join(
            f'---\nConvo Index: {idx}\nUser Input: "{user.content}"\nAI Response: "{reply.content}"\n---'
            for idx, (user, reply) in enumerate(pairs)
        )
        data = await json_completion(
            self.lm_client,
            model or self.default_model,
            agents.SUMMARIZER_SYSTEM,
            f"Generate summaries for the following conversation pairs:\n{blocks}",
            max_tokens=2048,
        )
        items = data.get("summaries") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ValueError("summarizer did not return a list")
        summaries: List[Summary] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                idx = int(item.get("convo_index"))
            except (TypeError, ValueError):
                continue
            if idx < 0 or idx >= len(pairs):
                continue
            user, reply = pairs[idx]
            summaries.append(
                Summary(
                    user_message_id=user.id,
                    model_message_id=reply.id,
                    serial_number=starting_serial + idx + 1,
                    user_input=str(item.get("user_input") or user.content),
                    summary=str(item.get("summary") or ""),
                )
            )
        return summaries
