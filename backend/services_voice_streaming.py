"""
Real-time voice stream coordinator.

One VoiceStreamSession per client WebSocket. Each session owns an upstream
synthesis socket (text in, audio out) and a speech-understanding channel
(audio in, text out). The coordinator keeps the live sessions in a registry
keyed by stream id; the real session id is what audio cache entries and
voice-minute charges are written against.

Client -> server frames:
  {"type": "text_input", "text": "..."}   enrich (VOICE) and speak the reply
  {"type": "audio_input", "audio": "<b64>"} understand, then run the text path
  {"type": "stop"}                         flush buffered synthesis text
  {"type": "ping"}                         answered with pong

Server -> client frames:
  voice_ready, audio_processing, audio_output {audio, alignment}, pong,
  error {code, message}

Teardown happens once per stream no matter which side closes first: the
registry pop in close_stream is the guard.
"""
import asyncio
import base64
import binascii
import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from audio_files import audio_file_name, audio_url_for, delete_audio, save_audio
from models import AudioCacheEntry, Modality, Personality, Resource, Session
from request_identity import new_secure_token
from services_enrichment import EnrichmentGateway
from services_rate_limit import RateLimiter
from services_stt import (
    NullUnderstanding,
    UnderstandingChannel,
    UnderstandingConfig,
    UnderstandingError,
    build_understanding_config,
)
from services_tts import SynthesisError, SynthesisStream, estimate_duration_seconds, open_elevenlabs_stream
from storage import Storage
from utils.timestamp import utcnow

logger = logging.getLogger("au_gold")

ClientSend = Callable[[Dict[str, Any]], Awaitable[None]]
ClientClose = Callable[[int], Awaitable[None]]
SynthesisFactory = Callable[[], Awaitable[SynthesisStream]]

DEFAULT_UTTERANCE_TEXT = "Voice conversation audio"
CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011


class StreamState(str, Enum):
    INITIALIZING = "initializing"
    SYNTHESIS_CONNECTED = "synthesis_connected"
    READY = "ready"
    STREAMING = "streaming"
    IDLE = "idle"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class VoiceStreamSession:
    stream_id: str
    session_id: str
    conversation_id: str
    personality: Personality
    send: ClientSend
    close_client: Optional[ClientClose] = None
    synthesis: Optional[SynthesisStream] = None
    understanding_config: Optional[UnderstandingConfig] = None
    state: StreamState = StreamState.INITIALIZING
    is_active: bool = True
    started_at: float = 0.0
    started_at_utc: Any = field(default_factory=utcnow)
    text_queue: "asyncio.Queue[str]" = field(default_factory=asyncio.Queue)
    tasks: Set["asyncio.Task[Any]"] = field(default_factory=set)
    audio_chunks: List[bytes] = field(default_factory=list)
    utterance_text: List[str] = field(default_factory=list)
    spoke: bool = False


class VoiceStreamCoordinator:
    def __init__(
        self,
        storage: Storage,
        enrichment: EnrichmentGateway,
        rate_limiter: RateLimiter,
        synthesis_factory: SynthesisFactory = open_elevenlabs_stream,
        understanding: Optional[UnderstandingChannel] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.enrichment = enrichment
        self.rate_limiter = rate_limiter
        self.synthesis_factory = synthesis_factory
        self.understanding = understanding or NullUnderstanding()
        self.clock = clock
        self._streams: Dict[str, VoiceStreamSession] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get_stream(self, stream_id: str) -> Optional[VoiceStreamSession]:
        return self._streams.get(stream_id)

    @property
    def active_count(self) -> int:
        return len(self._streams)

    def _spawn(self, record: VoiceStreamSession, coro: Awaitable[Any]) -> None:
        task = asyncio.create_task(coro)
        record.tasks.add(task)
        task.add_done_callback(record.tasks.discard)

    async def _send(self, record: VoiceStreamSession, frame: Dict[str, Any]) -> None:
        if not record.is_active:
            return
        try:
            await record.send(frame)
        except Exception as e:
            # Client went away mid-send; the receive loop will notice and close.
            logger.info(f"[voice] Send to client failed for {record.stream_id}: {e}")

    async def _send_error(self, record: VoiceStreamSession, code: str, message: str) -> None:
        await self._send(record, {"type": "error", "code": code, "message": message})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open_stream(
        self,
        send: ClientSend,
        session: Session,
        conversation_id: str,
        personality: Personality,
        close_client: Optional[ClientClose] = None,
    ) -> Optional[str]:
        """
        Connect the upstream sockets for one client connection. Returns the
        stream id, or None when the synthesis socket could not be opened (an
        error frame has already been sent in that case).
        """
        stream_id = f"{session.id}-voice-{uuid.uuid4().hex}"
        record = VoiceStreamSession(
            stream_id=stream_id,
            session_id=session.id,
            conversation_id=conversation_id,
            personality=personality,
            send=send,
            close_client=close_client,
            started_at=self.clock(),
        )
        self._streams[stream_id] = record
        logger.info(f"[voice] Initializing stream {stream_id} personality={personality.value}")

        try:
            record.synthesis = await self.synthesis_factory()
        except SynthesisError as e:
            logger.error(f"[voice] Synthesis connect failed for session {session.id}: {e}")
            await self._send_error(record, "synthesis_error", "Failed to initialize voice streaming")
            await self.close_stream(stream_id, notify_client=False)
            return None
        record.state = StreamState.SYNTHESIS_CONNECTED

        record.understanding_config = build_understanding_config(personality)
        record.state = StreamState.READY
        await self._send(record, {"type": "voice_ready", "message": "Voice streaming ready"})

        self._spawn(record, self._relay_synthesis(record))
        self._spawn(record, self._text_worker(record))
        return stream_id

    async def close_stream(self, stream_id: str, *, notify_client: bool = True, code: int = CLOSE_NORMAL) -> None:
        """Tear a stream down. Safe to call any number of times."""
        record = self._streams.pop(stream_id, None)
        if record is None:
            return
        record.state = StreamState.CLOSING
        record.is_active = False

        current = asyncio.current_task()
        pending = [t for t in list(record.tasks) if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # Audio already relayed without an isFinal is still one utterance.
        await self._cache_utterance(record)

        if record.synthesis is not None:
            try:
                await record.synthesis.close()
            except Exception as e:
                logger.warning(f"[voice] Error closing synthesis socket for {stream_id}: {e}")

        if record.spoke:
            await self._charge_voice_minutes(record)

        record.state = StreamState.CLOSED
        logger.info(f"[voice] Stream closed: {stream_id} (session {record.session_id})")

        if notify_client and record.close_client is not None:
            try:
                await record.close_client(code)
            except Exception as e:
                logger.info(f"[voice] Client already closed for {stream_id}: {e}")

    async def close_all(self) -> None:
        for stream_id in list(self._streams):
            await self.close_stream(stream_id)

    async def _charge_voice_minutes(self, record: VoiceStreamSession) -> None:
        elapsed = max(0.0, self.clock() - record.started_at)
        minutes = max(1, math.ceil(elapsed / 60))
        try:
            session = await self.storage.get_session(record.session_id)
            if session is None:
                logger.warning(f"[voice] Session {record.session_id} vanished before voice charge")
                return
            await self.rate_limiter.commit(session, Resource.VOICE_MINUTES, minutes)
            logger.info(f"[voice] Charged {minutes} voice minute(s) to session {record.session_id}")
        except Exception as e:
            logger.error(
                f"[voice] Failed to charge voice minutes session={record.session_id} "
                f"conversation={record.conversation_id}: {e}"
            )

    async def _fail(self, record: VoiceStreamSession, code: str, message: str) -> None:
        await self._send_error(record, code, message)
        await self.close_stream(record.stream_id, code=CLOSE_INTERNAL_ERROR)

    # ------------------------------------------------------------------
    # Client frames
    # ------------------------------------------------------------------

    async def handle_client_frame(self, stream_id: str, raw: str) -> None:
        record = self._streams.get(stream_id)
        if record is None or not record.is_active:
            return

        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            await self._send_error(record, "invalid_frame", "Frame is not valid JSON")
            return
        if not isinstance(frame, dict):
            await self._send_error(record, "invalid_frame", "Frame must be a JSON object")
            return

        ftype = str(frame.get("type") or "").strip()
        if ftype == "text_input":
            text = str(frame.get("text") or "").strip()
            if not text:
                await self._send_error(record, "invalid_frame", "text_input requires text")
                return
            record.state = StreamState.STREAMING
            record.text_queue.put_nowait(text)
        elif ftype == "audio_input":
            record.state = StreamState.STREAMING
            await self._send(record, {"type": "audio_processing", "message": "Processing your speech..."})
            self._spawn(record, self._understand(record, str(frame.get("audio") or "")))
        elif ftype == "stop":
            await self._flush(record)
        elif ftype == "ping":
            await self._send(record, {"type": "pong"})
        else:
            logger.info(f"[voice] Ignoring unknown frame type {ftype!r} on {stream_id}")

    async def _flush(self, record: VoiceStreamSession) -> None:
        if record.synthesis is None:
            return
        try:
            await record.synthesis.flush()
        except SynthesisError as e:
            logger.error(f"[voice] Flush failed on {record.stream_id}: {e}")
            await self._fail(record, "synthesis_error", "Voice synthesis connection failed")

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def _text_worker(self, record: VoiceStreamSession) -> None:
        while True:
            text = await record.text_queue.get()
            try:
                await self._speak(record, text)
            except asyncio.CancelledError:
                raise
            except SynthesisError as e:
                logger.error(f"[voice] Synthesis send failed on {record.stream_id}: {e}")
                await self._fail(record, "synthesis_error", "Voice synthesis connection failed")
                return
            except Exception as e:
                logger.error(
                    f"[voice] Text input failed session={record.session_id} "
                    f"conversation={record.conversation_id}: {e}"
                )
                await self._send_error(record, "processing_error", "Failed to process text input")

    async def _speak(self, record: VoiceStreamSession, text: str) -> None:
        reply = text
        session = await self.storage.get_session(record.session_id)
        if session is not None:
            result = await self.enrichment.enrich(
                record.personality,
                Modality.VOICE,
                session,
                text,
                conversation_id=record.conversation_id,
            )
            reply = result.value or text
        if record.synthesis is None:
            return
        record.utterance_text.append(reply)
        record.spoke = True
        await record.synthesis.speak(reply)

    async def _understand(self, record: VoiceStreamSession, audio_b64: str) -> None:
        try:
            transcript = await self.understanding.transcribe(audio_b64, record.understanding_config)
        except UnderstandingError as e:
            logger.warning(f"[voice] Audio understanding failed on {record.stream_id}: {e}")
            await self._send_error(record, "audio_error", "Failed to process audio")
            return
        if transcript and record.is_active:
            record.text_queue.put_nowait(transcript)

    async def _relay_synthesis(self, record: VoiceStreamSession) -> None:
        synthesis = record.synthesis
        try:
            async for message in synthesis.messages():
                audio = message.get("audio")
                if audio:
                    self._buffer_audio(record, audio)
                    await self._send(record, {
                        "type": "audio_output",
                        "audio": audio,
                        "alignment": message.get("alignment"),
                    })
                if message.get("isFinal"):
                    await self._cache_utterance(record)
                    record.state = StreamState.IDLE
        except SynthesisError as e:
            logger.error(
                f"[voice] Synthesis socket failed session={record.session_id} "
                f"conversation={record.conversation_id}: {e}"
            )
            await self._fail(record, "synthesis_error", "Voice synthesis connection failed")
            return

        # Upstream closed normally: keep what was spoken, then end the stream.
        await self._cache_utterance(record)
        await self.close_stream(record.stream_id)

    def _buffer_audio(self, record: VoiceStreamSession, audio_b64: str) -> None:
        try:
            record.audio_chunks.append(base64.b64decode(audio_b64))
        except (binascii.Error, ValueError):
            logger.warning(f"[voice] Dropping undecodable audio chunk on {record.stream_id}")

    async def _cache_utterance(self, record: VoiceStreamSession) -> None:
        if not record.audio_chunks:
            return
        audio = b"".join(record.audio_chunks)
        text = " ".join(record.utterance_text).strip() or DEFAULT_UTTERANCE_TEXT
        record.audio_chunks = []
        record.utterance_text = []

        secure_token = new_secure_token()
        try:
            await asyncio.to_thread(save_audio, audio, secure_token)
            await self.storage.add_audio_entry(AudioCacheEntry(
                session_id=record.session_id,
                conversation_id=record.conversation_id,
                audio_url=audio_url_for(secure_token),
                secure_token=secure_token,
                text=text,
                duration=estimate_duration_seconds(text),
                voice_settings=dict(record.synthesis.voice_settings) if record.synthesis else None,
            ))
            logger.info(f"[voice] Cached utterance for session {record.session_id}")
        except Exception as e:
            logger.error(
                f"[voice] Failed to cache audio session={record.session_id} "
                f"conversation={record.conversation_id}: {e}"
            )
            await asyncio.to_thread(delete_audio, audio_file_name(secure_token))
