import json
import logging
import re
from typing import Dict, List, Optional, Tuple

from . import agents
from .db import Database
from .llm import LMStudioClient
from .schemas import CodeSnippet
from .structured import json_completion

logger = logging.getLogger("uvicorn.error")

CODE_BLOCK_RE = re.compile(r"```(\w+)?\n([\s\S]*?)```")


def extract_code_blocks(text: str) -> List[Tuple[str, str]]:
    """(language, code) for each fenced block. Language defaults to ``text``."""
    return [(match.group(1) or "text", match.group(2)) for match in CODE_BLOCK_RE.finditer(text or "")]


class CodeStore:
    def __init__(self, db: Optional[Database] = None):
        self.db = db
        self.snippets: List[CodeSnippet] = []

    async def load(self) -> None:
        if self.db is not None:
            self.snippets = await self.db.list_code_snippets()

    async def add(self, snippet: CodeSnippet) -> None:
        self.snippets.append(snippet)
        if self.db is not None:
            await self.db.add_code_snippet(snippet)

    def descriptors(self) -> List[Dict[str, str]]:
        return [{"id": s.id, "description": s.description} for s in self.snippets]

    def by_ids(self, ids: List[str]) -> List[CodeSnippet]:
        wanted = set(ids)
        return [s for s in self.snippets if s.id in wanted]


class CodeMemoryService:
    def __init__(self, lm_client: LMStudioClient, default_model: str):
        self.lm_client = lm_client
        self.default_model = default_model

    async def find_relevant(self, prompt: str, descriptors: List[Dict[str, str]]) -> List[str]:
        """Ids of stored snippets the prompt refers to. Lookup failures return an empty list."""
        if not descriptors:
            return []
        user = f"USER PROMPT:\n{prompt}\n\nSNIPPETS:\n{json.dumps(descriptors)}"
        try:
            data = await json_completion(self.lm_client, self.default_model, agents.CODE_RETRIEVAL_SYSTEM, user)
        except Exception as exc:
            logger.warning("Code retrieval failed: %s", exc)
            return []
        ids = data.get("relevant_ids") if isinstance(data, dict) else data
        if not isinstance(ids, list):
            return []
        known = {d["id"] for d in descriptors}
        return [str(i) for i in ids if str(i) in known]

    async def describe(self, language: str, code: str, context: List[Dict[str, str]]) -> str:
        context_text = "\n".join(f"{turn['role']}: {turn['text']}" for turn in context)
        user = f"CONVERSATION:\n{context_text}\n\nLANGUAGE: {language}\nCODE:\n```{language}\n{code}\n```"
        data = await json_completion(self.lm_client, self.default_model, agents.CODE_DESCRIBE_SYSTEM, user)
        description = data.get("description") if isinstance(data, dict) else None
        if not description:
            raise ValueError("code description was empty")
        return str(description).strip()
