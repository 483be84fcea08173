"""Out-of-band markers embedded in model replies.

Grammar (all names are upper case, matching is case sensitive):

    block   := "<!--" NAME NEWLINE json NEWLINE NAME "-->"
    NAME    := "EXTRACTED_DATA" | "ISSUE_DECISION"
    control := "<!--" CONTROL ":" WS* value WS* "-->"
    CONTROL := "SESSION_CONTROL" | "MODE_SWITCH"
    value   := [A-Za-z_-]+

Block content is raw JSON with no escaping. The newlines around it are
optional when parsing. The content may be wrapped in a code fence, which is
removed before decoding. When a name occurs more than once, the first
occurrence wins.

The user-visible text is the reply with every block, every control, any
unterminated trailing "<!--" fragment and every fenced code block (delimiters
and body) removed, along with any other HTML comment, then trimmed. A lone
fence delimiter with no partner is dropped as well.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from .llm import extract_json_object

EXTRACTED_DATA = "EXTRACTED_DATA"
ISSUE_DECISION = "ISSUE_DECISION"
SESSION_CONTROL = "SESSION_CONTROL"
MODE_SWITCH = "MODE_SWITCH"

_BLOCK_RE = re.compile(r"<!--\s*(EXTRACTED_DATA|ISSUE_DECISION)\s*(.*?)\s*\1\s*-->", re.DOTALL)
_CONTROL_RE = re.compile(r"<!--\s*(SESSION_CONTROL|MODE_SWITCH)\s*:\s*([A-Za-z_-]+)\s*-->")
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_UNTERMINATED_RE = re.compile(r"<!--(?!.*-->).*\Z", re.DOTALL)
_FENCE_LINE_RE = re.compile(r"^[ \t]*```[\w-]*[ \t]*$\n?", re.MULTILINE)
_FENCE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)


@dataclass
class MarkerScan:
    visible_text: str
    blocks: dict[str, str] = field(default_factory=dict)
    controls: dict[str, str] = field(default_factory=dict)

    def block_json(self, name: str) -> dict[str, Any] | None:
        raw = self.blocks.get(name)
        if raw is None:
            return None
        return extract_json_object(_FENCE_LINE_RE.sub("", raw))


def scan(text: str | None) -> MarkerScan:
    raw = text or ""
    blocks: dict[str, str] = {}
    controls: dict[str, str] = {}
    for match in _BLOCK_RE.finditer(raw):
        blocks.setdefault(match.group(1), match.group(2).strip())
    for match in _CONTROL_RE.finditer(raw):
        controls.setdefault(match.group(1), match.group(2).strip().lower())

    visible = _BLOCK_RE.sub("", raw)
    visible = _CONTROL_RE.sub("", visible)
    visible = _COMMENT_RE.sub("", visible)
    visible = _UNTERMINATED_RE.sub("", visible)
    visible = _FENCE_BLOCK_RE.sub("", visible)
    visible = _FENCE_LINE_RE.sub("", visible)
    visible = re.sub(r"\n{3,}", "\n\n", visible).strip()
    return MarkerScan(visible_text=visible, blocks=blocks, controls=controls)


def render_block(name: str, payload: dict[str, Any]) -> str:
    return f"<!--{name}\n{json.dumps(payload, ensure_ascii=False)}\n{name}-->"


def render_control(name: str, value: str) -> str:
    return f"<!--{name}: {value}-->"
