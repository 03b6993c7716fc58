import os
from typing import Any, Dict

from langchain_core.messages import BaseMessage

#########################################################################
## Environment helpers ##################################################
#########################################################################

def float_env(name: str, default: float) -> float:
    """Parse a float from the environment, gracefully falling back to default."""
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default

def int_env(name: str, default: int) -> int:
    """Parse an int from the environment, gracefully falling back to default."""
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

#########################################################################
## Content parsing ######################################################
#########################################################################

def extract_text_from_content(content: Any) -> str:
    """
    Extracts visible text from message content and returns it as a single string.

    Strings are trimmed, lists are flattened with empty parts dropped and the
    rest joined by a blank line, and dict parts contribute only when they are
    text blocks. Anything else yields an empty string.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, (list, tuple)):
        texts = [extract_text_from_content(part) for part in content]
        return "\n\n".join(text for text in texts if text.strip()).strip()

    # Handle both dict-like and attribute-like parts
    part_type = getattr(content, "type", None)
    if part_type is None and isinstance(content, dict):
        part_type = content.get("type")
    if part_type != "text":
        return ""
    text = getattr(content, "text", None)
    if text is None and isinstance(content, dict):
        text = content.get("text")
    return text.strip() if isinstance(text, str) else ""

#########################################################################
## Serialization ########################################################
#########################################################################

def serialize_message(msg: BaseMessage) -> Dict[str, Any]:
    """Best-effort JSON-safe serialization of a message for API payloads."""
    payload: Dict[str, Any] = {
        "id": msg.id,
        "type": msg.type,
        "content": msg.content,
        "name": getattr(msg, "name", None),
    }
    tool_calls = getattr(msg, "tool_calls", None)
    if tool_calls:
        payload["tool_calls"] = [
            {"id": call.get("id"), "name": call.get("name"), "args": call.get("args")}
            for call in tool_calls
        ]
    tool_call_id = getattr(msg, "tool_call_id", None)
    if tool_call_id is not None:
        payload["tool_call_id"] = tool_call_id
    return payload
