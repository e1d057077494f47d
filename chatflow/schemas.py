from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .modes import ChatMode


ItemStatus = Literal["QUEUED", "PENDING", "COMPLETED", "ERROR", "ABORTED"]
DoneStatus = Literal["complete", "error", "aborted"]
SyncMessageType = Literal["thread-update", "thread-item-update", "thread-delete", "thread-item-delete"]

TERMINAL_STATUSES = {"COMPLETED", "ERROR", "ABORTED"}
EVENT_TYPES = (
    "answer",
    "steps",
    "sources",
    "status",
    "suggestions",
    "error",
    "metrics",
    "toolCalls",
    "toolResults",
    "object",
)

# snake_case in Python, camelCase on the wire and in stored payloads
WIRE_CONFIG = {"alias_generator": to_camel, "populate_by_name": True, "protected_namespaces": ()}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Answer(BaseModel):
    text: Optional[str] = None
    final_text: Optional[str] = None
    full_text: Optional[str] = None
    status: Optional[str] = None

    model_config = {**WIRE_CONFIG, "extra": "allow"}


class Thread(BaseModel):
    id: str
    title: str = "New Thread"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    pinned: bool = False
    pinned_at: Optional[datetime] = None
    auto_title_version: int = 0
    auto_title_updated_at: Optional[datetime] = None

    model_config = WIRE_CONFIG


class ThreadItem(BaseModel):
    id: str
    thread_id: str
    parent_id: Optional[str] = None
    branch_root_id: Optional[str] = None
    query: str = ""
    image_attachment: Optional[str] = None
    mode: Optional[str] = None
    status: ItemStatus = "QUEUED"
    answer: Optional[Answer] = None
    thinking_process: Optional[str] = None
    steps: Dict[str, Any] = Field(default_factory=dict)
    sources: List[Any] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    tool_calls: Optional[Any] = None
    tool_results: Optional[Any] = None
    object: Optional[Any] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tokens_used: Optional[int] = None
    generation_duration_ms: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = WIRE_CONFIG

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ChatConfig(BaseModel):
    model: Optional[str] = None
    chat_mode: str = ChatMode.AUTO.value
    use_web_search: bool = False
    show_suggestions: bool = True
    custom_instructions: str = ""
    current_thread_id: Optional[str] = None

    model_config = WIRE_CONFIG


class CompletionRequest(BaseModel):
    mode: ChatMode
    prompt: str
    thread_id: str
    thread_item_id: str
    parent_thread_item_id: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    custom_instructions: Optional[str] = None
    web_search: bool = False
    max_iterations: Optional[int] = None
    mcp_config: Dict[str, Any] = Field(default_factory=dict)
    show_suggestions: bool = False
    requested_mode: Optional[ChatMode] = None
    mode_selection_reason: Optional[str] = None

    model_config = WIRE_CONFIG


class ModeSelectRequest(BaseModel):
    query: str
    has_image: bool = False

    model_config = WIRE_CONFIG


class TitleRequest(BaseModel):
    thread_id: Optional[str] = None
    stage: Literal["initial", "refine"] = "initial"
    conversation: List[Dict[str, Any]] = Field(default_factory=list)
    fallback_title: Optional[str] = None

    model_config = WIRE_CONFIG


class SyncMessage(BaseModel):
    type: SyncMessageType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = 0


class StreamEventBase(BaseModel):
    thread_id: str
    thread_item_id: str
    parent_thread_item_id: Optional[str] = None
    query: Optional[str] = None
    mode: Optional[str] = None
    requested_mode: Optional[str] = None
    mode_selection_reason: Optional[str] = None

    model_config = {**WIRE_CONFIG, "extra": "allow"}


class AnswerEvent(StreamEventBase):
    event: Literal["answer"] = "answer"
    answer: Answer


class StepsEvent(StreamEventBase):
    event: Literal["steps"] = "steps"
    steps: Dict[str, Any]


class SourcesEvent(StreamEventBase):
    event: Literal["sources"] = "sources"
    sources: List[Any]


class StatusEvent(StreamEventBase):
    event: Literal["status"] = "status"
    status: ItemStatus


class SuggestionsEvent(StreamEventBase):
    event: Literal["suggestions"] = "suggestions"
    suggestions: List[str]


class ErrorEvent(StreamEventBase):
    event: Literal["error"] = "error"
    error: Union[str, Dict[str, Any]]


class MetricsEvent(StreamEventBase):
    event: Literal["metrics"] = "metrics"
    metrics: Dict[str, Any]


class ToolCallsEvent(StreamEventBase):
    event: Literal["toolCalls"] = "toolCalls"
    tool_calls: Any


class ToolResultsEvent(StreamEventBase):
    event: Literal["toolResults"] = "toolResults"
    tool_results: Any


class ObjectEvent(StreamEventBase):
    event: Literal["object"] = "object"
    object: Any


class DoneEvent(StreamEventBase):
    event: Literal["done"] = "done"
    status: DoneStatus
    error: Optional[str] = None


StreamEvent = Annotated[
    Union[
        AnswerEvent,
        StepsEvent,
        SourcesEvent,
        StatusEvent,
        SuggestionsEvent,
        ErrorEvent,
        MetricsEvent,
        ToolCallsEvent,
        ToolResultsEvent,
        ObjectEvent,
        DoneEvent,
    ],
    Field(discriminator="event"),
]
STREAM_EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamEvent)


def parse_stream_event(event: str, data: Dict[str, Any]) -> Any:
    return STREAM_EVENT_ADAPTER.validate_python({**data, "event": event})
