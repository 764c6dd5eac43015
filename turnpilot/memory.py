import json
import logging
from typing import Dict, List, Optional, Tuple

from . import agents
from .db import Database
from .llm import LMStudioClient
from .schemas import MemoryExtraction, UserProfile
from .structured import json_completion

logger = logging.getLogger("uvicorn.error")


def apply_memory_update(facts: List[str], extraction: MemoryExtraction) -> Tuple[List[str], bool]:
    """Replace exact-match facts, then append new facts that are not already present."""
    updated = list(facts)
    changed = False
    for update in extraction.updated_memories:
        try:
            index = updated.index(update.old_memory)
        except ValueError:
            continue
        if updated[index] != update.new_memory:
            updated[index] = update.new_memory
            changed = True
    for fact in extraction.new_memories:
        fact = fact.strip()
        if fact and fact not in updated:
            updated.append(fact)
            changed = True
    return updated, changed


class MemoryStore:
    """Long-term facts about the user and their profile."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db
        self.facts: List[str] = []
        self.profile = UserProfile()

    async def load(self) -> None:
        if self.db is not None:
            self.facts, self.profile = await self.db.get_memory_state()

    async def save(self) -> None:
        if self.db is not None:
            await self.db.save_memory_state(self.facts, self.profile)

    def snapshot(self) -> Tuple[List[str], UserProfile]:
        return list(self.facts), self.profile.model_copy()

    async def replace(self, facts: List[str], profile: Optional[UserProfile] = None) -> None:
        self.facts = list(facts)
        if profile is not None:
            self.profile = profile
        await self.save()

    async def clear(self) -> None:
        await self.replace([], UserProfile())


class MemoryService:
    def __init__(self, lm_client: LMStudioClient, default_model: str):
        self.lm_client = lm_client
        self.default_model = default_model

    async def extract(
        self,
        exchange: List[Dict[str, str]],
        facts: List[str],
        profile: UserProfile,
        model: Optional[str] = None,
    ) -> MemoryExtraction:
        turns = "\n".join(f"{turn['role']}: {turn['text']}" for turn in exchange)
        prompt = (
            f"CURRENT LTM:\n{json.dumps(facts)}\n\n"
            f"NEW CONVERSATION TURNS:\n{turns}\n\n"
            "Analyze the conversation and LTM, then generate the JSON output as instructed."
        )
        system = agents.MEMORY_SYSTEM_TEMPLATE.format(name=profile.name or "Unknown")
        data = await json_completion(self.lm_client, model or self.default_model, system, prompt)
        if not isinstance(data, dict):
            raise ValueError("memory extraction did not return an object")
        if not isinstance(data.get("user_profile_updates"), dict):
            data["user_profile_updates"] = {}
        return MemoryExtraction.model_validate(data)
