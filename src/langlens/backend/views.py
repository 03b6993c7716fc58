from typing import Any, Optional

from langchain_core.messages import BaseMessage

from langlens.engine.controller import ThreadController
from langlens.engine.messages import TextPart, content_parts, message_role, rendered_text, tool_call_state
from langlens.engine.navigator import BranchNavigator
from langlens.engine.todos import describe_todos
from langlens.service.queries import title_of_thread

from langlens.backend.models import (
    AssistantSummary,
    BranchInfo,
    ContentPartView,
    MessageView,
    ThreadStateResponse,
    ThreadSummary,
    ToolCallView,
)

#########################################################################
## Payload builders #####################################################
#########################################################################

def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    isoformat = getattr(value, "isoformat", None)
    return isoformat() if callable(isoformat) else str(value)


def thread_summary(thread: dict) -> ThreadSummary:
    return ThreadSummary(
        thread_id=str(thread.get("thread_id")),
        title=title_of_thread(thread),
        status=thread.get("status"),
        created_at=_iso(thread.get("created_at")),
        updated_at=_iso(thread.get("updated_at")),
    )


def assistant_summary(assistant: dict) -> AssistantSummary:
    return AssistantSummary(
        assistant_id=str(assistant.get("assistant_id")),
        name=assistant.get("name"),
        graph_id=assistant.get("graph_id"),
    )


def content_view(msg: BaseMessage) -> list[ContentPartView]:
    views = []
    for part in content_parts(msg):
        if isinstance(part, TextPart):
            views.append(ContentPartView(kind=part.kind, text=part.text))
        else:
            views.append(ContentPartView(kind=part.kind, url=part.url))
    return views


def tool_call_views(msg: BaseMessage, controller: ThreadController) -> list[ToolCallView]:
    """Tool calls of `msg` joined with their results by tool call id."""
    thread = controller.reconciler.thread
    views = []
    for call in getattr(msg, "tool_calls", None) or []:
        result = thread.tool_result_for(call.get("id"))
        views.append(ToolCallView(
            id=call.get("id"),
            name=call.get("name") or "",
            args=call.get("args") or {},
            state=tool_call_state(call, thread.messages),
            result=rendered_text(result) if result is not None else None,
        ))
    return views


def message_view(
    msg: BaseMessage,
    controller: ThreadController,
    navigator: BranchNavigator,
) -> MessageView:
    position = navigator.position(msg)
    branch = None
    if position is not None:
        metadata = controller.reconciler.thread.metadata_of(msg)
        branch = BranchInfo(
            branch=metadata.branch,
            options=list(position.options),
            label=position.label,
        )
    return MessageView(
        id=msg.id,
        role=message_role(msg),
        text=rendered_text(msg),
        content=content_view(msg),
        name=msg.name,
        tool_calls=tool_call_views(msg, controller),
        branch=branch,
        toolbar_visible=controller.toolbar_visible(msg),
        can_regenerate=controller.can_regenerate(msg),
        editing=controller.is_editing(msg),
    )


def thread_state(
    controller: ThreadController,
    navigator: BranchNavigator,
    tool_names: list[str],
    event_cursor: int = 0,
) -> ThreadStateResponse:
    """Snapshot of a session as the front end renders it."""
    thread = controller.reconciler.thread
    todos = thread.todos(tool_names)
    return ThreadStateResponse(
        thread_id=thread.thread_id,
        assistant_id=thread.assistant_id,
        branch=thread.branch,
        is_loading=thread.is_loading,
        error=str(thread.error) if thread.error is not None else None,
        messages=[message_view(msg, controller, navigator) for msg in thread.visible_messages],
        todos=[todo if isinstance(todo, dict) else {"value": todo} for todo in todos],
        todo_summary=describe_todos(todos) if todos else None,
        event_cursor=event_cursor,
    )
