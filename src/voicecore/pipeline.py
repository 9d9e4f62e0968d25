"""Voice Pipeline Orchestration.

One pipeline per Twilio media stream connection:
inbound Twilio mu-law -> Deepgram STT (mulaw/8000) -> (final transcript)
input buffer -> LLM (streaming sentences, or tool calling) -> Deepgram TTS
(mulaw/8000) -> 20ms frames -> Twilio outbound

Turn-taking rules:
- At most one LLM turn in flight; finals arriving meanwhile are dropped
- Barge-in: a final transcript while our audio is still playing sends Twilio
  `clear` before anything else happens
- `speaking` is cleared by the end-of-reply mark echo, not by send completion
- A failed generation is removed from history and answered with an apology
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog

from src.voicecore.audio import get_audio_duration_ms
from src.voicecore.call_context import (
    NOT_CONFIGURED_MESSAGE,
    CallContextProvider,
    EnvCallContextProvider,
    build_greeting,
)
from src.voicecore.config import Config, get_config
from src.voicecore.input_collector import (
    BufferConfig,
    InputBuffer,
    InputType,
    classify_expected_input,
    extract_digits,
)
from src.voicecore.llm import ChatLLM, LLMError, create_llm
from src.voicecore.notifications import CallCompletedNotifier
from src.voicecore.session import CallSession, TurnMetrics, TurnState
from src.voicecore.stream_token import StreamTokenStore
from src.voicecore.stt import STTConnectionError, create_stt
from src.voicecore.tools import ToolContext, ToolDispatcher, tool_definitions
from src.voicecore.tts import DeepgramTTS, TTSError
from src.voicecore.twilio_protocol import (
    END_OF_REPLY_MARK,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

TURN_FAILED_MESSAGE = "I'm sorry, I'm having a little trouble right now. Could you repeat that?"
STT_FAILED_MESSAGE = "I'm sorry, I'm experiencing technical difficulties. Please try calling again."
PLAYBACK_WAIT_TIMEOUT_S = 15.0

SendMessage = Callable[[str], Awaitable[None]]
CloseConnection = Callable[[], Awaitable[None]]


def _preview(text: str, limit: int = 80) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass
class PipelineServices:
    """Process-wide collaborators shared by every call."""
    config: Config
    token_store: StreamTokenStore
    context_provider: CallContextProvider
    llm: ChatLLM
    tts: DeepgramTTS
    tools: ToolDispatcher
    notifier: Optional[CallCompletedNotifier] = None
    stt_factory: Callable[..., Any] = create_stt
    buffer_configs: Optional[Mapping[InputType, BufferConfig]] = None

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "PipelineServices":
        config = config or get_config()
        return cls(
            config=config,
            token_store=StreamTokenStore(
                config.stream_token_secret,
                ttl_seconds=config.stream_token_ttl_seconds,
            ),
            context_provider=EnvCallContextProvider(config),
            llm=create_llm(config),
            tts=DeepgramTTS(config),
            tools=ToolDispatcher(config),
            notifier=CallCompletedNotifier(config),
        )

    async def aclose(self) -> None:
        await self.tts.close()
        await self.tools.aclose()
        if self.notifier:
            await self.notifier.aclose()


class VoicePipeline:
    """
    Per-call orchestrator and STT listener.

    `handle_message` is driven by the WebSocket receive loop; LLM/TTS work
    runs in background tasks so barge-in can be detected while a reply plays.
    """

    def __init__(
        self,
        send_message: SendMessage,
        services: PipelineServices,
        close_connection: Optional[CloseConnection] = None,
    ):
        self._send_message = send_message
        self._services = services
        self._close_connection = close_connection
        self.config = services.config

        self._protocol = TwilioProtocolHandler()
        self.session: Optional[CallSession] = None
        self._input_buffer: Optional[InputBuffer] = None

        self._turn_task: Optional[asyncio.Task] = None
        self._output_task: Optional[asyncio.Task] = None
        self._stt_task: Optional[asyncio.Task] = None

        self._reply_seq = 0
        self._current_mark: Optional[str] = None
        self._playback_done = asyncio.Event()
        self._playback_done.set()

        self._turn_counter = 0
        self._stt_failed = False
        self._stopped = False

    @property
    def call_sid(self) -> str:
        return self._protocol.call_sid

    @property
    def stream_sid(self) -> str:
        return self._protocol.stream_sid

    @property
    def state(self) -> TurnState:
        return self.session.state if self.session else TurnState.IDLE

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    # ------------------------------------------------------------------
    # Twilio events
    # ------------------------------------------------------------------

    async def handle_message(self, raw_message: str) -> None:
        """Handle an incoming WebSocket message from Twilio."""
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Ignoring malformed Twilio message", call_sid=self.call_sid, error=str(e))
            return

        if self._stopped:
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            self._handle_mark(event)

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", call_sid=self.call_sid, digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", call_sid=self.call_sid, stream_sid=self.stream_sid)
            self._protocol.handle_stop()
            await self.stop(reason="caller-hangup")

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self.session is not None:
            logger.warning("Ignoring duplicate start event", call_sid=self.call_sid)
            return

        pending = self._services.token_store.consume(event.auth_token)
        if pending is None:
            logger.warning(
                "Rejected media stream - invalid or missing token",
                call_sid=event.call_sid,
                stream_sid=event.stream_sid,
            )
            self._stopped = True
            await self._close()
            return

        self._protocol.handle_start(event)

        context = None
        try:
            context = await self._services.context_provider.load(pending.called_number)
        except Exception as e:
            logger.error("Failed to load call context", call_sid=event.call_sid, error=str(e))

        if context is None:
            logger.warning(
                "No call context - sending fallback and closing",
                call_sid=event.call_sid,
                called_number=pending.called_number,
            )
            self._output_task = asyncio.create_task(self._say_and_hang_up(NOT_CONFIGURED_MESSAGE))
            return

        session = CallSession(
            event.call_sid,
            event.stream_sid,
            context,
            caller_phone=pending.caller_phone,
            called_number=pending.called_number,
            max_messages=self.config.max_conversation_messages,
            test_mode=self.config.test_mode,
        )
        session.state = TurnState.LISTENING
        self.session = session
        self._input_buffer = InputBuffer(
            self._on_input_ready,
            configs=self._services.buffer_configs,
            call_sid=event.call_sid,
        )

        logger.info(
            "Call started",
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            organization_id=context.organization_id,
            assistant_id=context.assistant_id,
            calendar_enabled=context.calendar_enabled,
            transfer_rules=len(context.transfer_rules),
        )

        # Open STT in the background so a slow handshake doesn't delay the greeting.
        session.stt = self._services.stt_factory(self, self.config, call_sid=event.call_sid)
        self._stt_task = asyncio.create_task(self._connect_stt())

        self._output_task = asyncio.create_task(self._speak_greeting(build_greeting(context)))

    async def _connect_stt(self) -> None:
        session = self.session
        if session is None or session.stt is None:
            return
        try:
            ok = await session.stt.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("STT connect task error", call_sid=self.call_sid, error=str(e))
            ok = False

        if ok:
            logger.info("STT ready", call_sid=self.call_sid)
        elif not session.is_closed:
            await self.on_error(STTConnectionError("Deepgram connection failed"))

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        session = self.session
        if session is None or session.is_closed or session.stt is None:
            return
        await session.stt.send_audio(event.payload)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        rtt_ms = self._protocol.handle_mark(event)
        if not event.name.startswith(END_OF_REPLY_MARK) or event.name != self._current_mark:
            logger.debug("Ignoring stale mark", call_sid=self.call_sid, mark_name=event.name)
            return

        self._current_mark = None
        self._playback_done.set()
        session = self.session
        if session is not None and not session.is_closed:
            session.speaking = False
            if session.state == TurnState.SPEAKING:
                session.state = TurnState.LISTENING
        logger.debug("Playback finished", call_sid=self.call_sid, mark_rtt_ms=round(rtt_ms, 2))

    # ------------------------------------------------------------------
    # STT listener
    # ------------------------------------------------------------------

    async def on_partial(self, text: str) -> None:
        logger.debug("STT partial", call_sid=self.call_sid, text=_preview(text, 50))

    async def on_final(self, text: str) -> None:
        session = self.session
        if session is None or session.is_closed or self._input_buffer is None:
            return

        if session.processing:
            session.metrics.dropped_turns += 1
            logger.info(
                "Dropping transcript - turn already in flight",
                call_sid=session.call_sid,
                text=_preview(text),
            )
            return

        if session.speaking:
            await self._barge_in()

        expected = None
        if self._input_buffer.is_empty:
            expected = classify_expected_input(session.conversation.last_assistant_text())
            session.state = TurnState.TURN_PENDING

        logger.info("Final transcript", call_sid=session.call_sid, text=_preview(text))
        await self._input_buffer.add(text, expected)

    async def on_utterance_end(self) -> None:
        if self._input_buffer is not None and self.session is not None and not self.session.is_closed:
            await self._input_buffer.utterance_end()

    async def on_error(self, error: Exception) -> None:
        session = self.session
        if session is None or session.is_closed or self._stt_failed:
            return
        self._stt_failed = True
        session.ended_reason = "stt-error"
        logger.error("STT failure during call", call_sid=session.call_sid, error=str(error))

        if self._input_buffer is not None:
            self._input_buffer.cancel()
        if self._output_task and not self._output_task.done():
            self._output_task.cancel()
        self._output_task = asyncio.create_task(self._say_and_hang_up(STT_FAILED_MESSAGE))

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _on_input_ready(self, text: str, input_type: InputType) -> None:
        """Buffered caller input is complete: start a turn."""
        session = self.session
        if session is None or session.is_closed:
            return

        if session.processing:
            session.metrics.dropped_turns += 1
            logger.info("Dropping turn - already processing", call_sid=session.call_sid)
            return

        if session.speaking:
            await self._barge_in()

        if input_type == InputType.PHONE:
            session.collected_fields[input_type.value] = extract_digits(text)
        elif input_type != InputType.GENERAL:
            session.collected_fields[input_type.value] = text

        session.processing = True
        session.state = TurnState.GENERATING
        self._turn_task = asyncio.create_task(self._run_turn(text))

    async def _run_turn(self, text: str) -> None:
        """Run one conversation turn for the caller's utterance."""
        session = self.session
        if session is None:
            return

        self._turn_counter += 1
        metrics = TurnMetrics(turn_id=self._turn_counter, start_time=time.time())
        session.conversation.add_user(text)

        try:
            tools = tool_definitions(
                session.context.calendar_enabled,
                bool(session.context.transfer_rules),
            )
            if tools or not self.config.llm_streaming:
                await self._run_completion_turn(session, tools, metrics)
            else:
                await self._run_streaming_turn(session, metrics)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            metrics.failed = True
            logger.error(
                "Turn failed",
                call_sid=session.call_sid,
                error_type=type(e).__name__,
                error=str(e),
            )
            session.conversation.pop_last_user()
            if not session.is_closed:
                await self._speak(TURN_FAILED_MESSAGE)
        finally:
            session.processing = False
            if session.state in (TurnState.TURN_PENDING, TurnState.GENERATING):
                session.state = TurnState.SPEAKING if session.speaking else TurnState.LISTENING
            metrics.finalize()
            session.metrics.turns.append(metrics)
            logger.info(
                "Turn completed",
                call_sid=session.call_sid,
                turn_id=metrics.turn_id,
                llm_first_sentence_ms=round(metrics.llm_first_sentence_ms, 2),
                llm_total_ms=round(metrics.llm_total_ms, 2),
                tts_ms=round(metrics.tts_ms, 2),
                total_turn_ms=round(metrics.total_turn_ms, 2),
                used_tool=metrics.used_tool,
                failed=metrics.failed,
            )

    async def _run_completion_turn(
        self,
        session: CallSession,
        tools: List[Dict[str, Any]],
        metrics: TurnMetrics,
    ) -> None:
        llm_start = time.time()
        reply = await self._services.llm.complete(session.conversation.messages, tools=tools or None)
        speak_reply = True

        if reply.has_tool_calls:
            call = reply.tool_calls[0]
            metrics.used_tool = call.name
            result = await self._services.tools.execute(
                call.name,
                call.arguments,
                ToolContext(
                    organization_id=session.context.organization_id,
                    assistant_id=session.context.assistant_id,
                    call_sid=session.call_sid,
                    transfer_rules=session.context.transfer_rules,
                    test_mode=session.test_mode,
                ),
            )
            reply_text = result.message
            if result.action == "transfer":
                # Twilio now plays the announcement and dials; the stream ends on its own.
                session.ended_reason = "transferred"
                speak_reply = False
        else:
            reply_text = reply.text

        metrics.llm_total_ms = (time.time() - llm_start) * 1000
        metrics.llm_first_sentence_ms = metrics.llm_total_ms
        if not reply_text:
            raise LLMError("LLM returned an empty reply")

        logger.info("LLM reply", call_sid=session.call_sid, text=_preview(reply_text))
        if speak_reply:
            tts_start = time.time()
            await self._speak(reply_text)
            metrics.tts_ms = (time.time() - tts_start) * 1000

        if not session.is_closed:
            session.conversation.add_assistant(reply_text)

    async def _run_streaming_turn(self, session: CallSession, metrics: TurnMetrics) -> None:
        llm_start = time.time()
        sentences: List[str] = []
        sent_audio = False

        async for sentence in self._services.llm.stream_sentences(session.conversation.messages):
            if session.is_closed:
                return
            if not sentences:
                metrics.llm_first_sentence_ms = (time.time() - llm_start) * 1000
            sentences.append(sentence)

            tts_start = time.time()
            sent_audio = await self._speak_segment(sentence) or sent_audio
            metrics.tts_ms += (time.time() - tts_start) * 1000

        metrics.llm_total_ms = (time.time() - llm_start) * 1000
        if not sentences:
            raise LLMError("LLM returned an empty reply")

        if sent_audio:
            await self._send_end_mark()

        reply_text = " ".join(sentences)
        logger.info("LLM reply", call_sid=session.call_sid, text=_preview(reply_text))
        if not session.is_closed:
            session.conversation.add_assistant(reply_text)

    # ------------------------------------------------------------------
    # Speech output
    # ------------------------------------------------------------------

    async def _speak_greeting(self, greeting: str) -> None:
        try:
            spoken = await self._speak(greeting)
        except asyncio.CancelledError:
            return
        session = self.session
        if spoken and session is not None and not session.is_closed:
            session.conversation.add_assistant(greeting)

    async def _speak(self, text: str) -> bool:
        """Synthesize a complete reply, send its frames and the end-of-reply mark."""
        if not await self._speak_segment(text):
            return False
        await self._send_end_mark()
        return True

    async def _speak_segment(self, text: str) -> bool:
        """Synthesize and send frames for one piece of text (no mark)."""
        if not text or self._stopped:
            return False

        voice = self.session.context.voice_id if self.session else None
        try:
            audio = await self._services.tts.synthesize(text, voice=voice)
        except TTSError as e:
            logger.error("TTS failed", call_sid=self.call_sid, error=str(e))
            return False

        messages = self._protocol.create_audio_messages(audio)
        if not messages or self._stopped:
            return False

        session = self.session
        if session is not None:
            session.speaking = True
            session.state = TurnState.SPEAKING
            session.metrics.audio_out_ms += get_audio_duration_ms(audio)
        self._playback_done.clear()

        for message in messages:
            if self._stopped:
                break
            await self._send(message)
        return True

    async def _send_end_mark(self) -> None:
        self._reply_seq += 1
        name = f"{END_OF_REPLY_MARK}-{self._reply_seq}"
        self._current_mark = name
        mark = self._protocol.create_mark(name)
        if mark:
            await self._send(mark)

    async def _barge_in(self) -> None:
        """Flush Twilio's buffered audio before handling new caller speech."""
        clear = self._protocol.create_clear()
        if clear:
            await self._send(clear)

        session = self.session
        if session is not None:
            session.speaking = False
            session.metrics.barge_ins += 1
        self._current_mark = None
        self._playback_done.set()

        # A greeting still being synthesized must not start playing after the clear.
        if self._output_task and not self._output_task.done() and self._output_task is not asyncio.current_task():
            self._output_task.cancel()

        logger.info("Barge-in - cleared Twilio audio buffer", call_sid=self.call_sid)

    async def _wait_for_playback(self, timeout: float = PLAYBACK_WAIT_TIMEOUT_S) -> None:
        try:
            await asyncio.wait_for(self._playback_done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("Timed out waiting for playback mark", call_sid=self.call_sid)

    async def _say_and_hang_up(self, text: str) -> None:
        """Speak a final sentence, let it play, then drop the media stream."""
        try:
            if await self._speak(text):
                await self._wait_for_playback()
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Failed to speak closing message", call_sid=self.call_sid, error=str(e))
        await self._close()

    async def _send(self, message: str) -> None:
        await self._send_message(message)

    async def _close(self) -> None:
        if self._close_connection is None:
            return
        try:
            await self._close_connection()
        except Exception as e:
            logger.warning("Error closing Twilio connection", call_sid=self.call_sid, error=str(e))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def stop(self, reason: str = "caller-hangup") -> None:
        """Tear the call down. Safe to call from both the stop event and socket close."""
        if self._stopped and (self.session is None or self.session.is_closed):
            return
        self._stopped = True

        if self._input_buffer is not None:
            self._input_buffer.cancel()

        current = asyncio.current_task()
        tasks = [
            t for t in (self._turn_task, self._output_task, self._stt_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        session = self.session
        if session is None:
            return

        transcript = session.conversation.transcript()
        collected = dict(session.collected_fields)
        duration = session.duration_seconds()
        ended_reason = session.ended_reason or reason
        if not await session.close():
            return

        if self._services.notifier is not None:
            self._services.notifier.notify(
                {
                    "callId": session.call_sid,
                    "organizationId": session.context.organization_id,
                    "assistantId": session.context.assistant_id,
                    "callerPhone": session.caller_phone,
                    "status": "completed",
                    "durationSeconds": duration,
                    "transcript": transcript,
                    "endedReason": ended_reason,
                    "collectedFields": collected,
                }
            )

        logger.info(
            "Call ended",
            call_sid=session.call_sid,
            stream_sid=session.stream_sid,
            ended_reason=ended_reason,
            metrics=session.metrics.to_dict(),
        )


async def create_pipeline(
    send_message: SendMessage,
    services: PipelineServices,
    close_connection: Optional[CloseConnection] = None,
) -> VoicePipeline:
    """
    Create a new voice pipeline for one Twilio media stream.

    Args:
        send_message: Function to send messages to Twilio WebSocket
        services: Shared collaborators (token store, LLM, TTS, tools)
        close_connection: Function that closes the Twilio WebSocket
    """
    return VoicePipeline(send_message, services, close_connection=close_connection)
