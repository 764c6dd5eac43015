import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

from . import agents
from .chemistry import PubChemClient
from .errors import ToolFailure
from .schemas import Attachments, MoleculeData, Plan
from .url_reader import UrlReader

logger = logging.getLogger("uvicorn.error")

NO_URL_MESSAGE = "No valid URL was provided for the URL Reader tool."


class ToolKind(str, Enum):
    AUTO = "auto"
    WEB_SEARCH = "webSearch"
    URL_READER = "urlReader"
    THINKING = "thinking"
    CHEMISTRY = "chemistry"


@dataclass(frozen=True)
class Route:
    """Plan after manual overrides and attachment rules, plus the image-analysis switch."""

    plan: Plan
    image_flow: bool = True
    image_analysis: bool = False
    file_analysis: bool = False

    @property
    def web_search(self) -> bool:
        return self.plan.needs_web_search

    @property
    def thinking(self) -> bool:
        return self.plan.needs_thinking


def _with(route: Route, image_flow: Optional[bool] = None, **flags: Any) -> Route:
    plan = route.plan.model_copy(update=flags)
    return replace(route, plan=plan, image_flow=route.image_flow if image_flow is None else image_flow)


def _url_reader(route: Route) -> Route:
    return _with(route, image_flow=False, is_url_read_request=True, needs_web_search=False, needs_thinking=False)


def _web_search(route: Route) -> Route:
    return _with(route, image_flow=False, needs_web_search=True, needs_thinking=False, is_url_read_request=False)


def _thinking(route: Route) -> Route:
    return _with(route, needs_thinking=True, needs_web_search=False, is_url_read_request=False)


def _chemistry(route: Route) -> Route:
    return _with(route, is_molecule_request=True, needs_web_search=False, needs_thinking=False)


MANUAL_OVERRIDES: Dict[ToolKind, Callable[[Route], Route]] = {
    ToolKind.AUTO: lambda route: route,
    ToolKind.URL_READER: _url_reader,
    ToolKind.WEB_SEARCH: _web_search,
    ToolKind.THINKING: _thinking,
    ToolKind.CHEMISTRY: _chemistry,
}


def apply_manual_tool(plan: Plan, tool: ToolKind) -> Route:
    return MANUAL_OVERRIDES[ToolKind(tool)](Route(plan=plan))


def apply_attachment_rules(route: Route, attachments: Attachments) -> Route:
    """Attachments replace thinking; images also drop the planned thoughts."""
    image_analysis = route.image_flow and bool(attachments.images)
    file_analysis = attachments.file is not None
    plan = route.plan
    if image_analysis:
        plan = plan.model_copy(update={"needs_thinking": False, "thoughts": []})
    elif file_analysis:
        plan = plan.model_copy(update={"needs_thinking": False})
    return replace(route, plan=plan, image_analysis=image_analysis, file_analysis=file_analysis)


@dataclass
class ToolOutcome:
    effective_prompt: str
    route: Route
    tool_in_use: Optional[str] = None
    molecule: Optional[MoleculeData] = None

    @property
    def tool_ran(self) -> bool:
        return self.tool_in_use is not None or self.molecule is not None


Marker = Callable[[Dict[str, Any]], None]


class ToolRouter:
    def __init__(self, url_reader: UrlReader, pubchem: PubChemClient):
        self.url_reader = url_reader
        self.pubchem = pubchem

    def route(self, plan: Plan, tool: ToolKind, attachments: Attachments) -> Route:
        return apply_attachment_rules(apply_manual_tool(plan, tool), attachments)

    async def execute(self, route: Route, prompt: str, url: Optional[str], mark: Marker) -> ToolOutcome:
        """Run at most one side-channel tool. Raises ToolFailure, which ends the turn.

        ``mark`` receives field updates for the in-flight model message.
        """
        plan = route.plan
        if plan.is_url_read_request:
            if not (url or "").strip():
                raise ToolFailure(NO_URL_MESSAGE)
            mark({"is_planning": False, "tool_in_use": "url"})
            content = await self.url_reader.fetch(url or "")
            effective = agents.URL_PROMPT_TEMPLATE.format(url=url.strip(), content=content, prompt=prompt)
            return ToolOutcome(effective_prompt=effective, route=route, tool_in_use="url")

        if plan.is_molecule_request:
            name = (plan.molecule_name or prompt).strip()
            mark({"is_planning": False, "is_molecule_request": True})
            molecule = await self.pubchem.get_molecule(name)
            mark({"is_molecule_request": False, "molecule": molecule})
            settled = _with(route, needs_web_search=False, needs_thinking=False)
            return ToolOutcome(
                effective_prompt=agents.MOLECULE_CAPTION_TEMPLATE.format(name=name),
                route=settled,
                molecule=molecule,
            )

        return ToolOutcome(effective_prompt=prompt, route=route)
