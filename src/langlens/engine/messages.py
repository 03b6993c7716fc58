import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    message_chunk_to_message,
)
from langgraph.graph.message import add_messages as _add_messages

from langlens.utils import extract_text_from_content

logger = logging.getLogger(__name__)

#########################################################################
## Checkpoint references ################################################
#########################################################################

class CheckpointRef:
    """
    Opaque checkpoint token minted by the execution service.

    The wrapped payload is never interpreted here; refs compare equal only to
    other refs carrying the same payload and are handed back verbatim.
    """

    __slots__ = ("_payload", "_key")

    def __init__(self, payload: Mapping[str, Any]):
        self._payload = dict(payload)
        self._key = json.dumps(self._payload, sort_keys=True, default=str)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["CheckpointRef"]:
        if isinstance(payload, CheckpointRef):
            return payload
        if isinstance(payload, Mapping) and payload:
            return cls(payload)
        return None

    def to_payload(self) -> dict:
        return dict(self._payload)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CheckpointRef):
            return NotImplemented
        return self._key == other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __repr__(self) -> str:
        return f"CheckpointRef({self._key})"

#########################################################################
## Roles and content parts ##############################################
#########################################################################

HUMAN = "human"
ASSISTANT = "assistant"
TOOL = "tool"

_ROLE_ALIASES = {
    "human": HUMAN,
    "user": HUMAN,
    "ai": ASSISTANT,
    "assistant": ASSISTANT,
    "AIMessageChunk": ASSISTANT,
    "tool": TOOL,
    "system": "system",
}


@dataclass(frozen=True)
class TextPart:
    text: str
    kind: str = "text"


@dataclass(frozen=True)
class ImagePart:
    url: str
    kind: str = "image"


ContentPart = Union[TextPart, ImagePart]


def message_role(msg: Any) -> Optional[str]:
    if isinstance(msg, HumanMessage):
        return HUMAN
    if isinstance(msg, AIMessage):
        return ASSISTANT
    if isinstance(msg, ToolMessage):
        return TOOL
    if isinstance(msg, BaseMessage):
        return _ROLE_ALIASES.get(msg.type)
    if isinstance(msg, dict):
        return _ROLE_ALIASES.get(msg.get("type") or msg.get("role"))
    return None


def is_human(msg: Any) -> bool:
    return message_role(msg) == HUMAN


def is_assistant(msg: Any) -> bool:
    return message_role(msg) == ASSISTANT


def is_tool(msg: Any) -> bool:
    return message_role(msg) == TOOL


def _image_url(part: dict) -> Optional[str]:
    image_url = part.get("image_url")
    if isinstance(image_url, str):
        return image_url
    if isinstance(image_url, dict) and isinstance(image_url.get("url"), str):
        return image_url["url"]
    url = part.get("url")
    return url if isinstance(url, str) else None


def content_parts(msg: BaseMessage) -> list[ContentPart]:
    """Normalize a message's content into ordered text/image parts."""
    content = msg.content
    if isinstance(content, str):
        return [TextPart(content)] if content else []
    parts: list[ContentPart] = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(TextPart(part))
            continue
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "text" and isinstance(part.get("text"), str):
            parts.append(TextPart(part["text"]))
        elif part_type in ("image_url", "image"):
            url = _image_url(part)
            if url:
                parts.append(ImagePart(url))
    return parts


def rendered_text(msg: BaseMessage) -> str:
    """Visible text of a single message."""
    return extract_text_from_content(msg.content)


def human_text_message(text: str) -> HumanMessage:
    return HumanMessage(content=[{"type": "text", "text": text}])

#########################################################################
## Payload coercion #####################################################
#########################################################################

def _coerce_tool_calls(raw: Any) -> list[dict]:
    calls: list[dict] = []
    if not isinstance(raw, list):
        return calls
    for call in raw:
        if not isinstance(call, dict):
            continue
        name = call.get("name")
        args = call.get("args")
        function = call.get("function")
        if name is None and isinstance(function, dict):
            name = function.get("name")
            args = function.get("arguments")
        if isinstance(args, str):
            try:
                args = json.loads(args)
            except json.JSONDecodeError:
                args = {}
        if not isinstance(name, str) or not name:
            continue
        calls.append({
            "id": call.get("id"),
            "name": name,
            "args": args if isinstance(args, dict) else {},
            "type": "tool_call",
        })
    return calls


def coerce_message(payload: Any) -> BaseMessage:
    """Turn a server message payload (or a message) into a langchain message."""
    if isinstance(payload, BaseMessage):
        return payload
    if not isinstance(payload, dict):
        raise TypeError(f"Cannot interpret message payload: {payload!r}")

    role = message_role(payload)
    content = payload.get("content")
    if content is None:
        content = ""
    kwargs = {"id": payload.get("id"), "name": payload.get("name")}
    if role == HUMAN:
        return HumanMessage(content=content, **kwargs)
    if role == ASSISTANT:
        return AIMessage(
            content=content,
            tool_calls=_coerce_tool_calls(payload.get("tool_calls")),
            **kwargs,
        )
    if role == TOOL:
        return ToolMessage(
            content=content,
            tool_call_id=payload.get("tool_call_id") or "",
            **kwargs,
        )
    if role == "system":
        return SystemMessage(content=content, **kwargs)
    raise ValueError(f"Unsupported message type: {payload.get('type')!r}")


def coerce_messages(payloads: Optional[Iterable[Any]]) -> list[BaseMessage]:
    """Coerce payloads, skipping any that are not chat messages."""
    messages = []
    for payload in payloads or []:
        try:
            messages.append(coerce_message(payload))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping message payload: %s", exc)
    return messages


def merge_messages(
    existing: Sequence[BaseMessage],
    incoming: Sequence[BaseMessage],
) -> list[BaseMessage]:
    """Merge by id: known ids are replaced in place, new ids are appended."""
    if not incoming:
        return list(existing)
    return _add_messages(list(existing), list(incoming))


def accumulate_chunk(previous: Optional[AIMessageChunk], payload: dict) -> AIMessageChunk:
    """Add one streamed token delta to the chunk gathered so far for its message."""
    tool_call_chunks = []
    for raw in payload.get("tool_call_chunks") or []:
        if not isinstance(raw, dict):
            continue
        tool_call_chunks.append({
            "name": raw.get("name"),
            "args": raw.get("args"),
            "id": raw.get("id"),
            "index": raw.get("index"),
            "type": "tool_call_chunk",
        })
    chunk = AIMessageChunk(
        content=payload.get("content") or "",
        id=payload.get("id"),
        name=payload.get("name"),
        tool_call_chunks=tool_call_chunks,
    )
    if previous is None:
        return chunk
    return previous + chunk


def chunk_to_message(chunk: AIMessageChunk) -> BaseMessage:
    return message_chunk_to_message(chunk)

#########################################################################
## Conversation helpers #################################################
#########################################################################

def should_render(msg: BaseMessage) -> bool:
    """Tool results are only shown through their originating tool call."""
    return not is_tool(msg)


def index_of(message: BaseMessage, messages: Sequence[BaseMessage]) -> int:
    for idx, candidate in enumerate(messages):
        if candidate is message:
            return idx
    if message.id is not None:
        for idx, candidate in enumerate(messages):
            if candidate.id == message.id:
                return idx
    return -1


def find_previous_human_message_index(
    message: BaseMessage,
    messages: Sequence[BaseMessage],
) -> int:
    """Index of the nearest human message before `message`, or -1."""
    message_index = index_of(message, messages)
    for idx in range(message_index - 1, -1, -1):
        if is_human(messages[idx]):
            return idx
    return -1


def extract_ai_message_content(
    message: BaseMessage,
    messages: Sequence[BaseMessage],
) -> str:
    """
    Full text of an assistant reply that may span several assistant messages.

    Joins the rendered text of every assistant message after the preceding
    human message up to and including `message`, separated by blank lines.
    """
    message_index = index_of(message, messages)
    previous_human_index = find_previous_human_message_index(message, messages)
    if previous_human_index == -1:
        return rendered_text(message)
    blocks = []
    for msg in messages[previous_human_index + 1:message_index + 1]:
        if not is_assistant(msg):
            continue
        text = rendered_text(msg)
        if text.strip():
            blocks.append(text)
    return "\n\n".join(blocks).strip()


def find_tool_result(
    tool_call_id: Optional[str],
    messages: Sequence[BaseMessage],
) -> Optional[ToolMessage]:
    if not tool_call_id:
        return None
    for msg in messages:
        if isinstance(msg, ToolMessage) and msg.tool_call_id == tool_call_id:
            return msg
    return None


def tool_call_state(call: dict, messages: Sequence[BaseMessage]) -> str:
    if find_tool_result(call.get("id"), messages) is not None:
        return "output-available"
    return "input-available"
