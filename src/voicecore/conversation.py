"""Per-call conversation history with a bounded sliding window."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

DEFAULT_MAX_MESSAGES = 21  # system prompt + last 20 messages


class Conversation:
    """
    Ordered chat messages in OpenAI format.

    Element 0 is always the system prompt and is never evicted. When the cap
    is exceeded the oldest non-system messages are dropped first.
    """

    def __init__(self, system_prompt: str = "", max_messages: int = DEFAULT_MAX_MESSAGES):
        if max_messages < 2:
            raise ValueError("max_messages must leave room for at least one message")
        self.max_messages = max_messages
        self._messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]

    @property
    def system_prompt(self) -> str:
        return self._messages[0]["content"]

    def set_system_prompt(self, prompt: str) -> None:
        self._messages[0] = {"role": "system", "content": prompt}

    def add(self, role: str, content: Optional[str], **extra: Any) -> None:
        message: Dict[str, Any] = {"role": role, "content": content}
        message.update(extra)
        self._messages.append(message)
        self._trim()

    def add_user(self, content: str) -> None:
        self.add("user", content)

    def add_assistant(self, content: str) -> None:
        self.add("assistant", content)

    def _trim(self) -> None:
        if len(self._messages) > self.max_messages:
            self._messages = [self._messages[0]] + self._messages[-(self.max_messages - 1):]

    def pop_last_user(self) -> Optional[Dict[str, Any]]:
        """Remove the trailing user message (a turn that never got a reply)."""
        if len(self._messages) > 1 and self._messages[-1]["role"] == "user":
            return self._messages.pop()
        return None

    @property
    def messages(self) -> List[Dict[str, Any]]:
        """Copy of the windowed history, ready for the chat completions API."""
        return [dict(m) for m in self._messages]

    def last_assistant_text(self) -> str:
        for message in reversed(self._messages):
            if message["role"] == "assistant" and isinstance(message.get("content"), str):
                return message["content"]
        return ""

    def transcript(self) -> str:
        """Plain transcript of user/assistant speech, excluding tool internals."""
        lines = []
        for message in self._messages:
            content = message.get("content")
            if message["role"] not in ("user", "assistant") or not isinstance(content, str):
                continue
            speaker = "User" if message["role"] == "user" else "AI"
            lines.append(f"{speaker}: {content}")
        return "\n".join(lines)

    def clear(self) -> None:
        """Drop all history, system prompt included (end of call)."""
        self._messages = [{"role": "system", "content": ""}]

    def __len__(self) -> int:
        return len(self._messages)
