from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

#########################################################################
## Pydantic models ######################################################
#########################################################################

class ThreadSummary(BaseModel):
    thread_id: str
    title: str
    status: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ThreadsResponse(BaseModel):
    threads: List[ThreadSummary]


class AssistantSummary(BaseModel):
    assistant_id: str
    name: Optional[str] = None
    graph_id: Optional[str] = None


class AssistantsResponse(BaseModel):
    assistants: List[AssistantSummary]
    default_assistant_id: Optional[str] = None


class BranchInfo(BaseModel):
    branch: str
    options: List[str]
    label: str


class ContentPartView(BaseModel):
    kind: Literal["text", "image"]
    text: Optional[str] = None
    url: Optional[str] = None


class ToolCallView(BaseModel):
    id: Optional[str] = None
    name: str
    args: Dict[str, Any] = {}
    state: Literal["input-available", "output-available"]
    result: Optional[str] = None


class MessageView(BaseModel):
    id: Optional[str] = None
    role: Optional[str] = None
    text: str
    content: List[ContentPartView] = []
    name: Optional[str] = None
    tool_calls: List[ToolCallView] = []
    branch: Optional[BranchInfo] = None
    toolbar_visible: bool = False
    can_regenerate: bool = False
    editing: bool = False


class ThreadStateResponse(BaseModel):
    thread_id: Optional[str] = None
    assistant_id: str
    branch: str
    is_loading: bool
    error: Optional[str] = None
    messages: List[MessageView]
    todos: List[Dict[str, Any]]
    todo_summary: Optional[str] = None
    event_cursor: int = 0


class AttachRequest(BaseModel):
    assistant_id: Optional[str] = None
    new: bool = False


class SubmitRequest(BaseModel):
    text: str


class EditRequest(BaseModel):
    message_id: str
    text: str


class RegenerateRequest(BaseModel):
    message_id: str


class BranchRequest(BaseModel):
    message_id: Optional[str] = None
    direction: Optional[Literal["next", "previous"]] = None
    branch: Optional[str] = None


class ActionResponse(BaseModel):
    status: str
    reason: Optional[str] = None
