from __future__ import annotations

import re
from dataclasses import dataclass

MAX_MESSAGE_CHARS = 5000


class ConversationInputError(Exception):
    pass


@dataclass(frozen=True)
class GuardResult:
    text: str
    pause_requested: bool
    profile_check_requested: bool


class ConversationGuard:
    _COMMENT_RE = re.compile(r"<!--.*?(?:-->|\Z)", re.DOTALL)
    _MARKER_NAME_RE = re.compile(r"\b(EXTRACTED_DATA|ISSUE_DECISION|SESSION_CONTROL|MODE_SWITCH)\b", re.IGNORECASE)
    _INJECTION_PATTERNS = [
        re.compile(r"ignore\s+(all\s+)?(the\s+)?(previous|prior|above)\s+(instructions|prompts?|rules)", re.IGNORECASE),
        re.compile(r"disregard\s+(all\s+)?(the\s+)?(previous|prior|above)\s+(instructions|prompts?|rules)", re.IGNORECASE),
        re.compile(r"\byou\s+are\s+now\b", re.IGNORECASE),
        re.compile(r"\b(system|developer)\s*prompt\b", re.IGNORECASE),
        re.compile(r"^\s*(system|assistant)\s*:", re.IGNORECASE | re.MULTILINE),
    ]
    _PAUSE_PATTERNS = [
        re.compile(r"\bsave\s+(it\s+)?(and|&)\s+(stop|quit|exit|finish|end)\b", re.IGNORECASE),
        re.compile(r"\b(let'?s|can we|i\s+want\s+to|i'?d\s+like\s+to)\s+(stop|pause|take\s+a\s+break|continue\s+later)\b(?!\s+[a-z])", re.IGNORECASE),
        re.compile(r"\b(stop|pause)\s+(here|for\s+now|for\s+today|the\s+(session|chat|interview))\b", re.IGNORECASE),
        re.compile(r"\b(that'?s\s+(all|enough)\s+for\s+(now|today))\b", re.IGNORECASE),
        re.compile(r"^\s*(stop|pause|quit|exit|bye|goodbye)\s*[.!]*\s*$", re.IGNORECASE),
    ]
    _PROFILE_CHECK_PATTERNS = [
        re.compile(r"\b(check|review|audit|analy[sz]e)\s+(my\s+)?(health\s+)?profile\b", re.IGNORECASE),
        re.compile(r"\b(duplicates?|contradictions?|conflicts?)\s+in\s+my\s+(health\s+)?profile\b", re.IGNORECASE),
    ]

    def __init__(self, *, max_chars: int = MAX_MESSAGE_CHARS) -> None:
        self.max_chars = max_chars

    def validate_message(self, text: str | None) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ConversationInputError("Message must not be empty.")
        if len(cleaned) > self.max_chars:
            raise ConversationInputError(f"Message exceeds {self.max_chars} characters.")
        return cleaned

    def sanitize(self, text: str) -> str:
        cleaned = self._COMMENT_RE.sub(" ", text)
        cleaned = self._MARKER_NAME_RE.sub(" ", cleaned)
        for pattern in self._INJECTION_PATTERNS:
            cleaned = pattern.sub(" ", cleaned)
        return re.sub(r"[ \t]{2,}", " ", cleaned).strip()

    def is_pause_request(self, text: str) -> bool:
        return any(pattern.search(text or "") for pattern in self._PAUSE_PATTERNS)

    def is_profile_check_request(self, text: str) -> bool:
        return any(pattern.search(text or "") for pattern in self._PROFILE_CHECK_PATTERNS)

    def inspect(self, text: str | None) -> GuardResult:
        validated = self.validate_message(text)
        sanitized = self.sanitize(validated)
        if not sanitized:
            raise ConversationInputError("Message has no usable content.")
        return GuardResult(
            text=sanitized,
            pause_requested=self.is_pause_request(validated),
            profile_check_requested=self.is_profile_check_request(validated),
        )
