"""Prompt profiles for the planner, the answer model and the background writers."""

from typing import List, Optional

from .schemas import CodeSnippet, Summary, ThoughtStep, UserProfile

PLANNER_SYSTEM = """
SYSTEM (PLANNER)

You classify the user's prompt so the assistant can pick a response strategy. You never answer the prompt.

FLAGS
1) needsWebSearch: true for anything that needs fresh or live information (news, prices, weather, scores,
   the current date or time). When a query could be time-sensitive, prefer a web search.
2) isUrlReadRequest: true when the prompt contains a URL and asks about its content ("summarize this").
3) isCreatorRequest: true when the user asks who built or created you.
4) isCapabilitiesRequest: true when the user asks what you can do or which tools you have.
5) isMoleculeRequest: true when the user wants to see the 3D structure of a chemical compound.
   Put the compound name in moleculeName.
6) needsThinking: true for analysis, multi-step reasoning, creative work, coding or file analysis.
   False for small talk and simple questions.
7) needsCodeContext: true when the prompt refers to code discussed earlier in the conversation.

STEP LISTS
- thoughts: when needsThinking is true, a short step-by-step plan.
- searchPlan: when needsWebSearch is true, a short research plan.
Each item is {"phase": str, "step": str, "concise_step": str}. concise_step is 3-5 words ending in "-ing"
(for example "Comparing the options...").

OUTPUT
Return JSON only:
{"needsWebSearch": bool, "isUrlReadRequest": bool, "isCreatorRequest": bool, "isCapabilitiesRequest": bool,
 "isMoleculeRequest": bool, "moleculeName": str|null, "needsThinking": bool, "needsCodeContext": bool,
 "thoughts": [...], "searchPlan": [...]}
"""

MEMORY_SYSTEM_TEMPLATE = """
SYSTEM (WRITER: Memory)

You maintain long-term facts about the user.

User info:
- Current name: {name}

Tasks
1) If the user gives a new name, return it in user_profile_updates.name.
2) Extract new, stable, personal facts about the user (preferences, background, long-running projects).
3) If new information contradicts a fact in CURRENT LTM, return an update with the exact old_memory text and
   the new_memory text instead of adding a second fact.
4) When a new name is found, use it in every new or updated fact. Otherwise use the current name, or
   "The user" when it is unknown.
5) When the user explicitly asks you to remember or save something, save it even if it would be filtered.

Ignore general knowledge, one-off questions and transactional details. Never add rephrased duplicates.

Return JSON only:
{{"new_memories": [str], "updated_memories": [{{"old_memory": str, "new_memory": str}}],
  "user_profile_updates": {{"name": str|null}}}}
"""

SUMMARIZER_SYSTEM = """
SYSTEM (WRITER: Summarizer)

For each user/assistant pair, write a concise 4-5 line summary of the assistant's response and copy the
user's original input.

Return JSON only:
{"summaries": [{"convo_index": int, "user_input": str, "summary": str}]}
"""

CODE_DESCRIBE_SYSTEM = """
SYSTEM (WRITER: CodeLibrarian)

Describe the given code snippet in one sentence so it can be found again later. Mention what it does and
the main names it defines. Use the surrounding conversation for context.

Return JSON only: {"description": str}
"""

CODE_RETRIEVAL_SYSTEM = """
SYSTEM (CodeRetriever)

You receive the user's prompt and a catalogue of stored code snippets (id + description).
Pick the snippets the prompt refers to. Return an empty list when none are relevant.

Return JSON only: {"relevant_ids": [str]}
"""

JSON_REPAIR_SYSTEM = """
SYSTEM (JSONRepair)
Return only repaired JSON. No commentary.
"""


def _section(title: str, body: str) -> str:
    return f"\n\n---\n[{title}]\n{body}\n---"


def build_system_instruction(
    model_name: str,
    is_first_turn: bool,
    facts: Optional[List[str]] = None,
    profile: Optional[UserProfile] = None,
    summaries: Optional[List[Summary]] = None,
    code_snippets: Optional[List[CodeSnippet]] = None,
    persona: str = "",
    creator_context: str = "",
    capabilities_context: str = "",
    summary_limit: int = 10,
) -> str:
    """System instruction for the answer model.

    The title directive is only present on the first turn. Creator and capability context is only passed
    in when the planner flagged that kind of request.
    """
    text = f"You are {model_name}, a helpful AI assistant."
    if persona:
        text += _section("AI Persona & Directives", f"This is your persona. Embody it in your responses.\n{persona}")
    if is_first_turn:
        text += _section(
            "Conversation Title Directive",
            'Your response MUST start with "TITLE: <3-5 word, professional title summarizing the prompt>" '
            "on its own line, followed by your main response. Do not add a title in later messages.",
        )

    memory_lines: List[str] = []
    if profile is not None and profile.name:
        memory_lines.append(f"- User's name is {profile.name}. Use it to personalize responses.")
    else:
        memory_lines.append("- User's name is unknown.")
    if facts:
        memory_lines.append("- Remember these facts about the user:")
        memory_lines.extend(f"  - {fact}" for fact in facts)
    text += _section("Long Term Memory & User Profile", "\n".join(memory_lines))

    if summaries:
        recent = summaries[-summary_limit:]
        turns = "\n---\n".join(
            f'Turn {s.serial_number}:\nUser: "{s.user_input}"\nSummary of your response: {s.summary}' for s in recent
        )
        text += _section(
            "Conversation History Summaries",
            f"Use these summaries for context. Do not mention them unless asked.\n---\n{turns}",
        )

    if code_snippets:
        blocks = "\n---\n".join(
            f"Language: {s.language}\nDescription: {s.description}\nCode:\n```{s.language}\n{s.code}\n```"
            for s in code_snippets
        )
        text += _section(
            "Retrieved Code Snippets",
            f"Use these code snippets for context. Do not mention them unless asked.\n---\n{blocks}",
        )

    if creator_context:
        text += _section(
            "Creator Information",
            f"Confidential information about your creator. Use it only when asked who created you.\n{creator_context}",
        )
    if capabilities_context:
        text += _section(
            "Capabilities & Tools Information",
            "Confidential information about your abilities. Use it only when asked what you can do.\n"
            f"{capabilities_context}",
        )
    return text


MOLECULE_CAPTION_TEMPLATE = (
    "I have successfully found and displayed the 3D model and key properties for {name}. "
    "Now, please provide a brief, helpful description focusing on its common uses or significance."
)

URL_PROMPT_TEMPLATE = "[URL: {url}]\n\n[EXTRACTED CONTENT]:\n{content}\n\n[QUESTION]:\n{prompt}"


def thinking_section(thoughts: List[ThoughtStep]) -> str:
    steps = "\n".join(f"{i}. [{t.phase}] {t.step}" for i, t in enumerate(thoughts, start=1))
    return _section("Reasoning Plan", f"Work through these steps before writing your answer.\n{steps}")
