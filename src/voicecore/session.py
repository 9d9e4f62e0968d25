"""Per-call session state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from src.voicecore.call_context import CallContext
from src.voicecore.conversation import Conversation

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    """Where the call is in the listen/think/speak loop."""
    IDLE = "idle"
    LISTENING = "listening"
    TURN_PENDING = "turn_pending"
    GENERATING = "generating"
    SPEAKING = "speaking"
    ENDED = "ended"


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    llm_first_sentence_ms: float = 0.0
    llm_total_ms: float = 0.0
    tts_ms: float = 0.0
    total_turn_ms: float = 0.0
    used_tool: Optional[str] = None
    failed: bool = False

    def finalize(self) -> None:
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    barge_ins: int = 0
    dropped_turns: int = 0
    audio_out_ms: float = 0.0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "failed_turns": sum(1 for t in self.turns if t.failed),
            "barge_ins": self.barge_ins,
            "dropped_turns": self.dropped_turns,
            "audio_out_ms": round(self.audio_out_ms, 1),
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


class CallSession:
    """
    One active phone call.

    `speaking` and `processing` are the only concurrency controls: at most one
    LLM turn in flight and at most one reply playing. All mutation happens on
    the connection's own event loop task, so plain booleans suffice.
    """

    def __init__(
        self,
        call_sid: str,
        stream_sid: str,
        context: CallContext,
        *,
        caller_phone: Optional[str] = None,
        called_number: Optional[str] = None,
        max_messages: int = 21,
        test_mode: bool = False,
    ):
        self._call_sid = call_sid
        self._stream_sid = stream_sid
        self.context = context
        self.caller_phone = caller_phone
        self.called_number = called_number
        self.test_mode = test_mode
        self.conversation = Conversation(context.system_prompt, max_messages=max_messages)
        self.state = TurnState.IDLE
        self.speaking = False
        self.processing = False
        self.stt: Optional[Any] = None
        self.collected_fields: Dict[str, str] = {}
        self.started_at = time.time()
        self.ended_reason: Optional[str] = None
        self.metrics = CallMetrics(start_time=self.started_at)
        self._closed = False

    @property
    def call_sid(self) -> str:
        return self._call_sid

    @property
    def stream_sid(self) -> str:
        return self._stream_sid

    @property
    def is_closed(self) -> bool:
        return self._closed

    def duration_seconds(self) -> int:
        return round(time.time() - self.started_at)

    async def close(self) -> bool:
        """
        Tear down the session. Returns True only for the call that did the work.

        Closes the STT connection exactly once and clears the conversation.
        """
        if self._closed:
            return False
        self._closed = True
        self.state = TurnState.ENDED
        self.speaking = False
        self.processing = False
        self.metrics.end_time = time.time()

        stt, self.stt = self.stt, None
        if stt is not None:
            try:
                await stt.close()
            except Exception as e:
                logger.warning("Error closing STT", call_sid=self.call_sid, error=str(e))

        self.conversation.clear()
        self.collected_fields.clear()
        return True
