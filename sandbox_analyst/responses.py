# sandbox_analyst/responses.py
"""
Plain-text extraction from completion-service responses.

Responses come in several envelope shapes depending on the API flavour and SDK
version:

  DIRECT_TEXT   "..."  |  {"output_text": "..."}  |  {"text": "..."}
  CONTENT_LIST  [part, ...]  |  {"content": [...]}  |  {"output": [...]}
  TEXT_VALUE    {"text": {"value": "..."}}

Each node is classified into exactly one variant and handled by that variant's
branch. Anything else is UNRECOGNIZED and contributes nothing. `extract_text`
never raises on a shape it does not know.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Mapping

from langchain_core.messages import BaseMessage

logger = logging.getLogger(__name__)

# Guard against pathological nesting in untrusted payloads.
_MAX_DEPTH = 12


class Envelope(str, Enum):
    DIRECT_TEXT = "direct_text"
    CONTENT_LIST = "content_list"
    TEXT_VALUE = "text_value"
    UNRECOGNIZED = "unrecognized"


def _as_mapping(node: Any) -> Any:
    """Turn SDK objects into plain data so one set of rules covers both."""
    if isinstance(node, BaseMessage):
        return node.content
    if isinstance(node, (str, list, tuple, Mapping)) or node is None:
        return node
    if hasattr(node, "model_dump"):
        try:
            return node.model_dump()
        except Exception:  # noqa: BLE001 - unknown SDK object; treat as opaque
            return None
    output_text = getattr(node, "output_text", None)
    if isinstance(output_text, str):
        return {"output_text": output_text}
    return None


def classify(node: Any) -> Envelope:
    node = _as_mapping(node)
    if isinstance(node, str):
        return Envelope.DIRECT_TEXT
    if isinstance(node, (list, tuple)):
        return Envelope.CONTENT_LIST
    if isinstance(node, Mapping):
        output_text = node.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return Envelope.DIRECT_TEXT
        text = node.get("text")
        if isinstance(text, str):
            return Envelope.DIRECT_TEXT
        if isinstance(text, Mapping) and isinstance(text.get("value"), str):
            return Envelope.TEXT_VALUE
        if isinstance(node.get("content"), (list, tuple, str)) or isinstance(node.get("output"), (list, tuple)):
            return Envelope.CONTENT_LIST
    return Envelope.UNRECOGNIZED


def _direct_text(node: Any) -> str:
    if isinstance(node, str):
        return node
    output_text = node.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text
    return node["text"]


def _collect(node: Any, parts: List[str], depth: int) -> None:
    if depth > _MAX_DEPTH:
        return
    node = _as_mapping(node)
    kind = classify(node)

    if kind == Envelope.DIRECT_TEXT:
        text = _direct_text(node).strip()
        if text:
            parts.append(text)
    elif kind == Envelope.TEXT_VALUE:
        text = node["text"]["value"].strip()
        if text:
            parts.append(text)
    elif kind == Envelope.CONTENT_LIST:
        if isinstance(node, Mapping):
            children = node.get("output") if isinstance(node.get("output"), (list, tuple)) else node.get("content")
            if isinstance(children, str):
                children = [children]
        else:
            children = node
        for child in children:
            _collect(child, parts, depth + 1)
    # UNRECOGNIZED: contributes nothing


def extract_text(response: Any) -> str:
    """Return the plain text carried by `response`, or "" if none is found."""
    parts: List[str] = []
    try:
        _collect(response, parts, 0)
    except Exception as e:  # noqa: BLE001 - shape mismatch degrades to empty text
        logger.debug("Could not extract text from response (%s): %r", type(response).__name__, e)
        return ""
    return "\n".join(parts).strip()
