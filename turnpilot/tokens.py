import math
from dataclasses import dataclass
from typing import Dict, Optional

from .schemas import Usage


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class TokenCounts:
    input_tokens: int
    output_tokens: int
    system_tokens: Optional[int] = None

    def as_update(self) -> Dict[str, Optional[int]]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "system_tokens": self.system_tokens,
        }


class TokenAccountant:
    """Token counts shown on a settled message.

    When a tool, attachment or web search was involved the whole prompt is shown as input. Otherwise the
    input is the estimated user text and the rest of the prompt is reported as system overhead.
    """

    @staticmethod
    def compute(usage: Usage, user_prompt: str, tool_was_used: bool) -> TokenCounts:
        total = usage.prompt_token_count
        if tool_was_used:
            return TokenCounts(input_tokens=total, output_tokens=usage.candidates_token_count)
        user_tokens = estimate_tokens(user_prompt)
        system = max(0, total - user_tokens)
        return TokenCounts(
            input_tokens=user_tokens,
            output_tokens=usage.candidates_token_count,
            system_tokens=system if system > 0 else None,
        )

    @classmethod
    def annotate(cls, usage: Optional[Usage], user_prompt: str, tool_was_used: bool) -> Dict[str, Optional[int]]:
        """Message fields for the counts. Empty when the stream reported no usage."""
        if usage is None:
            return {}
        return cls.compute(usage, user_prompt, tool_was_used).as_update()
