from typing import Any, Iterable, Literal, Optional, Sequence

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, ValidationError

from langlens.config import TODO_TOOL_NAMES
from langlens.engine.messages import is_assistant

#########################################################################
## Todo queue ###########################################################
#########################################################################

class TodoItem(BaseModel):
    id: Optional[str] = None
    content: str
    status: Literal["pending", "in_progress", "completed"] = "pending"


def is_todo_tool(name: Any, tool_names: Iterable[str] = TODO_TOOL_NAMES) -> bool:
    return isinstance(name, str) and name in set(tool_names)


def _todo_calls(message: BaseMessage, tool_names: Iterable[str]) -> list[dict]:
    names = set(tool_names)
    calls = getattr(message, "tool_calls", None) or []
    return [call for call in calls if is_todo_tool(call.get("name"), names)]


def extract_todos(
    messages: Sequence[BaseMessage],
    tool_names: Iterable[str] = TODO_TOOL_NAMES,
) -> list[Any]:
    """
    Return the todo list written by the most recent todo tool call.

    Later calls replace earlier ones; lists are never merged. The `todos`
    argument is returned as given, or an empty list when it is missing or
    not a list.
    """
    names = list(tool_names)
    todo_messages = [
        msg for msg in messages
        if is_assistant(msg) and _todo_calls(msg, names)
    ]
    if not todo_messages:
        return []

    last_call = _todo_calls(todo_messages[-1], names)[-1]
    args = last_call.get("args")
    if not isinstance(args, dict):
        return []
    todos = args.get("todos")
    if not isinstance(todos, list):
        return []
    return list(todos)


def parse_todo_items(todos: Sequence[Any]) -> list[TodoItem]:
    """Typed view of a todo queue; entries that do not validate are skipped."""
    items: list[TodoItem] = []
    for todo in todos:
        try:
            items.append(TodoItem.model_validate(todo))
        except ValidationError:
            continue
    return items


def describe_todos(todos: Sequence[Any]) -> str:
    """Queue header such as "3 Todo Items, 1 completed"."""
    if not todos:
        return ""
    completed = sum(
        1 for todo in todos
        if isinstance(todo, dict) and todo.get("status") == "completed"
    )
    label = f"{len(todos)} Todo Item{'s' if len(todos) > 1 else ''}"
    if completed == 0:
        return label
    if completed == len(todos):
        return f"{label}, all done"
    return f"{label}, {completed} completed"
