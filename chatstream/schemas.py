from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


DirectiveKind = Literal["search", "image", "code", "page", "text_file", "task", "function_call"]
DirectiveState = Literal["not_detected", "running", "completed", "errored"]
TERMINAL_STATES = ("completed", "errored")


class SearchSource(BaseModel):
    title: str = ""
    url: str
    content: Optional[str] = ""
    score: Optional[float] = None
    published_date: Optional[str] = None

    model_config = {"extra": "allow"}


class SearchImage(BaseModel):
    url: str
    title: Optional[str] = None
    alt: Optional[str] = None


class SearchResults(BaseModel):
    answer: str = ""
    sources: List[SearchSource] = Field(default_factory=list)
    images: List[SearchImage] = Field(default_factory=list)
    query: str = ""


class MultiSearchEntry(BaseModel):
    query: str
    completed: bool = False
    results: Optional[SearchResults] = None
    error: bool = False


class ExecutableCode(BaseModel):
    code: str
    language: str = "python"


class GeneratedImage(BaseModel):
    src: str
    alt: Optional[str] = None


class TextFileInfo(BaseModel):
    file_id: str
    name: str
    size: int = 0


class TaskInfo(BaseModel):
    type: str
    query: str


class FunctionCallInfo(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    ok: bool = False


class DirectiveNotice(BaseModel):
    """Display text that stands in for a directive region; the raw content keeps the tags."""

    kind: DirectiveKind
    raw: str = ""
    text: str
    ok: bool = True


class ChatMessage(BaseModel):
    id: str
    conversation_id: str
    sender: Literal["user", "assistant"]
    content: str = ""
    timestamp: str
    response_time: Optional[float] = None

    search_request: Optional[str] = None
    search_completed: bool = False
    search_error: bool = False
    search_results: Optional[SearchResults] = None
    multi_search: List[MultiSearchEntry] = Field(default_factory=list)

    executable_code: Optional[ExecutableCode] = None
    code_executing: bool = False
    code_executed: bool = False
    code_error: bool = False
    generated_images: Optional[List[GeneratedImage]] = None

    image_prompt: Optional[str] = None
    image_generation_completed: bool = False
    image_generation_error: bool = False

    page_id: Optional[str] = None
    text_file: Optional[TextFileInfo] = None
    task: Optional[TaskInfo] = None
    function_call: Optional[FunctionCallInfo] = None
    notices: List[DirectiveNotice] = Field(default_factory=list)
    directive_states: Dict[str, DirectiveState] = Field(default_factory=dict)

    is_finalizing: bool = False

    model_config = {"validate_assignment": True}

    def state_of(self, kind: str) -> str:
        return self.directive_states.get(kind, "not_detected")

    def is_terminal(self, kind: str) -> bool:
        return self.state_of(kind) in TERMINAL_STATES


class Conversation(BaseModel):
    id: str
    title: str
    icon: Optional[str] = None
    model: Optional[str] = None
    created_at: str
    updated_at: str
    messages: List[ChatMessage] = Field(default_factory=list)


class Page(BaseModel):
    id: str
    conversation_id: str
    message_id: str
    title: str
    content: str
    created_at: Optional[str] = None


class SendMessageRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = None
    model: Optional[str] = None


class ConversationCreateRequest(BaseModel):
    title: Optional[str] = None
    model: Optional[str] = None


class ConversationUpdateRequest(BaseModel):
    title: Optional[str] = None
    icon: Optional[str] = None
    model: Optional[str] = None


class SettingsUpdate(BaseModel):
    llm_base_url: Optional[str] = None
    llm_api_key: Optional[str] = None
    chat_endpoint: Optional[Dict[str, Any]] = None
    title_endpoint: Optional[Dict[str, Any]] = None
    image_endpoint: Optional[Dict[str, Any]] = None
    tavily_api_key: Optional[str] = None
    search_depth: Optional[Literal["basic", "advanced"]] = None
    max_results: Optional[int] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    ui_throttle_ms: Optional[int] = None
    persist_search_results: Optional[bool] = None
    rehydrate_images: Optional[bool] = None
    generate_titles: Optional[bool] = None
