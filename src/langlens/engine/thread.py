from dataclasses import dataclass, replace
from typing import Any, Optional

from langchain_core.messages import BaseMessage, ToolMessage

from langlens.engine.messages import (
    find_tool_result,
    index_of,
    should_render,
)
from langlens.engine.metadata import (
    EMPTY_INDEX,
    CheckpointMetadata,
    CheckpointMetadataIndex,
)
from langlens.engine.todos import extract_todos

#########################################################################
## Thread snapshot ######################################################
#########################################################################

@dataclass(frozen=True)
class Thread:
    """
    Immutable view of one conversation on its currently selected branch.

    The reconciler publishes a new Thread for every change; everything else
    (visible messages, todos, branch metadata) is projected from it.
    """

    thread_id: Optional[str]
    assistant_id: str
    messages: tuple[BaseMessage, ...] = ()
    index: CheckpointMetadataIndex = EMPTY_INDEX
    is_loading: bool = False
    branch: str = ""
    error: Optional[BaseException] = None

    def with_changes(self, **changes: Any) -> "Thread":
        if "messages" in changes:
            changes["messages"] = tuple(changes["messages"])
        return replace(self, **changes)

    def metadata_of(self, message: BaseMessage) -> Optional[CheckpointMetadata]:
        return self.index.metadata_of(message)

    @property
    def visible_messages(self) -> list[BaseMessage]:
        return [msg for msg in self.messages if should_render(msg)]

    def index_of(self, message: BaseMessage) -> int:
        return index_of(message, self.messages)

    def get_message(self, message_id: str) -> Optional[BaseMessage]:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def tool_result_for(self, tool_call_id: Optional[str]) -> Optional[ToolMessage]:
        return find_tool_result(tool_call_id, self.messages)

    def todos(self, tool_names=None) -> list[Any]:
        if tool_names is None:
            return extract_todos(self.messages)
        return extract_todos(self.messages, tool_names)
