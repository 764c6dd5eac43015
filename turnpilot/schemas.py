import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["user", "model"]
ToolName = Literal["auto", "webSearch", "urlReader", "thinking", "chemistry"]

# Fields that only exist while a turn is in flight, with the value they reset to.
TRANSIENT_FIELDS: Dict[str, Any] = {
    "is_planning": False,
    "tool_in_use": None,
    "thoughts": None,
    "search_plan": None,
    "is_analyzing_image": False,
    "is_analyzing_file": False,
    "is_long_tool_use": False,
    "is_molecule_request": False,
}
# Flags of which at most one message in a conversation may carry at a time.
EXCLUSIVE_FLAGS = ("is_planning", "tool_in_use", "is_analyzing_image", "is_analyzing_file")


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id() -> str:
    return uuid.uuid4().hex


class ThoughtStep(BaseModel):
    phase: str = ""
    step: str = ""
    concise_step: str = ""


class Plan(BaseModel):
    needs_web_search: bool = False
    is_url_read_request: bool = False
    is_creator_request: bool = False
    is_capabilities_request: bool = False
    is_molecule_request: bool = False
    molecule_name: Optional[str] = None
    needs_thinking: bool = False
    needs_code_context: bool = False
    thoughts: List[ThoughtStep] = Field(default_factory=list)
    search_plan: List[ThoughtStep] = Field(default_factory=list)

    model_config = {"frozen": True}

    @classmethod
    def fallback(cls) -> "Plan":
        return cls(needs_web_search=True, needs_thinking=False)

    @property
    def uses_side_tool(self) -> bool:
        return self.needs_web_search or self.is_url_read_request or self.is_molecule_request


class ImageAttachment(BaseModel):
    base64: str
    mime_type: str = "image/png"


class FileAttachment(BaseModel):
    base64: str
    mime_type: str = "application/octet-stream"
    name: str = "file"
    size: Optional[int] = None


class Attachments(BaseModel):
    images: List[ImageAttachment] = Field(default_factory=list)
    file: Optional[FileAttachment] = None
    url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.images and self.file is None and not (self.url or "").strip()

    def descriptors(self) -> Dict[str, Any]:
        return {
            "image_count": len(self.images),
            "file_name": self.file.name if self.file else None,
        }


class Atom(BaseModel):
    element: str
    x: float
    y: float
    z: float


class Bond(BaseModel):
    source: int = Field(alias="from")
    target: int = Field(alias="to")
    order: int = 1

    model_config = {"populate_by_name": True}


class MoleculeData(BaseModel):
    name: str = ""
    atoms: List[Atom] = Field(default_factory=list)
    bonds: List[Bond] = Field(default_factory=list)
    molecular_formula: Optional[str] = None
    molecular_weight: Optional[str] = None
    iupac_name: Optional[str] = None


class GroundingSource(BaseModel):
    uri: str
    title: str = ""


class Usage(BaseModel):
    prompt_token_count: int = 0
    candidates_token_count: int = 0


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Role
    content: str = ""
    timestamp: str = Field(default_factory=utc_iso)
    images: Optional[List[ImageAttachment]] = None
    file: Optional[FileAttachment] = None
    url: Optional[str] = None
    model_used: Optional[str] = None

    # In-flight only.
    is_planning: bool = False
    tool_in_use: Optional[Literal["url"]] = None
    thoughts: Optional[List[ThoughtStep]] = None
    search_plan: Optional[List[ThoughtStep]] = None
    is_analyzing_image: bool = False
    is_analyzing_file: bool = False
    is_long_tool_use: bool = False
    is_molecule_request: bool = False

    thinking_duration: Optional[float] = None
    analysis_completed: Optional[bool] = None
    sources: Optional[List[GroundingSource]] = None
    molecule: Optional[MoleculeData] = None
    memory_updated: Optional[bool] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    system_tokens: Optional[int] = None
    generation_time: Optional[int] = None
    is_error: bool = False

    def has_exclusive_flag(self) -> bool:
        return any(getattr(self, name) for name in EXCLUSIVE_FLAGS)

    def has_transient_state(self) -> bool:
        return any(getattr(self, name) != reset for name, reset in TRANSIENT_FIELDS.items())

    def stripped(self) -> "Message":
        return self.model_copy(update=TRANSIENT_FIELDS)


class Summary(BaseModel):
    id: str = Field(default_factory=new_id)
    user_message_id: str
    model_message_id: str
    serial_number: int
    user_input: str
    summary: str


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = "New Chat"
    messages: List[Message] = Field(default_factory=list)
    summaries: List[Summary] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_iso)
    is_pinned: bool = False
    is_generating_title: bool = False


class CodeSnippet(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    language: str = "text"
    code: str


class UserProfile(BaseModel):
    name: Optional[str] = None


class MemoryUpdate(BaseModel):
    old_memory: str
    new_memory: str


class MemoryExtraction(BaseModel):
    new_memories: List[str] = Field(default_factory=list)
    updated_memories: List[MemoryUpdate] = Field(default_factory=list)
    user_profile_updates: UserProfile = Field(default_factory=UserProfile)

    model_config = {"extra": "ignore"}


class TurnState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    TOOL_EXECUTING = "tool_executing"
    STREAMING = "streaming"
    SETTLING = "settling"
    CANCELLED = "cancelled"


class TurnStatus(BaseModel):
    state: TurnState = TurnState.IDLE
    is_loading: bool = False
    is_thinking: bool = False
    is_searching_web: bool = False
    is_long_tool_use: bool = False
    elapsed_ms: int = 0
    error: Optional[str] = None


class ConversationTurn(BaseModel):
    conversation_id: str
    prompt: str = ""
    attachments: Attachments = Field(default_factory=Attachments)
    tool: ToolName = "auto"
    model: Optional[str] = None
    is_retry: bool = False


class SendRequest(BaseModel):
    prompt: str = ""
    conversation_id: Optional[str] = None
    images: List[ImageAttachment] = Field(default_factory=list)
    file: Optional[FileAttachment] = None
    url: Optional[str] = None
    tool: ToolName = "auto"
    model: Optional[str] = None

    def attachments(self) -> Attachments:
        return Attachments(images=self.images, file=self.file, url=self.url)


class ConversationPatch(BaseModel):
    title: Optional[str] = None
    is_pinned: Optional[bool] = None
