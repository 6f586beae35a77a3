"""FastAPI backend for Meera AI."""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel

from meera.audio import AudioChannel, ClientOutput
from meera.capture import ClientCapture
from meera.chat_client import ChatClient
from meera.config import Config
from meera.errors import ChatRequestError, EmptyMessageError
from meera.orchestrator import TurnOrchestrator
from meera.prompt import FALLBACK_RESPONSE
from meera.schema import ChatInput, ChatOutput, SpeechOutput, SpeechRequest
from meera.store import ConversationStore
from meera.synthesis import SpeechSynthesisClient

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable buffering for nginx
}


# Request models
class SubmitRequest(BaseModel):
    message: str


class CaptureEventRequest(BaseModel):
    event: str
    text: str = ""
    error: str = ""
    session: Optional[int] = None


class CapabilityRequest(BaseModel):
    supported: bool


class AudioEndedRequest(BaseModel):
    id: str


class DismissRequest(BaseModel):
    id: str


class EventHub:
    """Fan-out of session events to every connected SSE subscriber."""

    def __init__(self, maxsize: int = 500):
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def publish(self, event: Dict[str, Any]) -> None:
        for q in list(self._subscribers):
            if q.full():
                # Drop oldest when a subscriber falls behind
                q.get_nowait()
            q.put_nowait(event)


class Session:
    """The single conversation served by this process and everything it owns."""

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        chat: Optional[ChatClient] = None,
        synthesizer: Optional[SpeechSynthesisClient] = None,
        **orchestrator_options,
    ):
        self.hub = EventHub()
        self.store = store if store is not None else ConversationStore(Config.HISTORY_PATH)
        self.chat = chat or ChatClient()
        self.synthesizer = synthesizer or SpeechSynthesisClient()
        self.capture = ClientCapture(send_command=self.hub.publish)
        self.audio_output = ClientOutput(self.hub.publish)

        self.orchestrator = TurnOrchestrator(
            self.store,
            self.chat,
            capture=self.capture,
            synthesizer=self.synthesizer,
            audio=AudioChannel(self.audio_output),
            **orchestrator_options,
        )
        self.orchestrator.on_state = lambda s: self.hub.publish({"type": "state", "state": s.value})
        self.orchestrator.on_reveal = lambda text: self.hub.publish({"type": "reveal", "text": text})
        self.orchestrator.on_transcript = lambda text: self.hub.publish({"type": "transcript", "text": text})
        self.orchestrator.on_notify = lambda n: self.hub.publish({"type": "notification", **n.to_dict()})


def create_app(session: Optional[Session] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.session.orchestrator.close()

    app = FastAPI(title="Meera AI", lifespan=lifespan)

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.session = session or Session()
    problems = Config.validate()
    for problem in problems:
        logger.warning(f"[CONFIG] {problem}")

    def current() -> Session:
        return app.state.session

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "provider": current().chat.provider_name,
            "problems": Config.validate(),
        }

    @app.post("/chat", response_model=ChatOutput)
    async def chat(request: ChatInput):
        """Chat endpoint: history plus message in, one response string out."""
        try:
            text = await current().chat.send(request.history, request.message)
        except EmptyMessageError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ChatRequestError as e:
            logger.error(f"[CHAT] Generation failed: {e}")
            text = FALLBACK_RESPONSE
        return ChatOutput(response=text)

    @app.post("/chat/stream")
    async def chat_stream(request: ChatInput):
        """Stream response chunks via Server-Sent Events."""
        if not request.message.strip():
            raise HTTPException(status_code=400, detail="Message cannot be empty.")

        async def event_generator():
            try:
                async for chunk in current().chat.stream(request.history, request.message):
                    yield f"data: {json.dumps({'text': chunk})}\n\n"
            except ChatRequestError as e:
                logger.error(f"[CHAT] Stream failed: {e}")
                yield f"data: {json.dumps({'error': str(e)})}\n\n"
            yield f"data: {json.dumps({'done': True})}\n\n"

        return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/speech", response_model=SpeechOutput)
    async def speech(request: SpeechRequest):
        result = await current().synthesizer.synthesize(request.text)
        return SpeechOutput(media=result.media, error=result.error)

    @app.get("/session")
    async def session_state():
        return current().orchestrator.snapshot()

    @app.post("/session/submit")
    async def session_submit(request: SubmitRequest):
        orchestrator = current().orchestrator
        if not request.message.strip():
            return {"accepted": False, "reason": "empty", "state": orchestrator.state.value}
        if orchestrator.busy:
            return {"accepted": False, "reason": "busy", "state": orchestrator.state.value}
        accepted = orchestrator.submit(request.message)
        return {"accepted": accepted, "state": orchestrator.state.value}

    @app.post("/session/listen")
    async def session_listen():
        current().orchestrator.listen()
        return current().orchestrator.snapshot()

    @app.post("/session/mute")
    async def session_mute():
        current().orchestrator.mute()
        return current().orchestrator.snapshot()

    @app.post("/session/retry-capture")
    async def session_retry_capture():
        current().orchestrator.retry_capture()
        return current().orchestrator.snapshot()

    @app.post("/session/clear")
    async def session_clear():
        current().orchestrator.clear_conversation()
        return current().orchestrator.snapshot()

    @app.post("/session/notifications/dismiss")
    async def session_dismiss_notification(request: DismissRequest):
        dismissed = current().orchestrator.dismiss_notification(request.id)
        if dismissed:
            current().hub.publish({"type": "notification_dismissed", "id": request.id})
        return {"dismissed": dismissed, "notifications": [n.to_dict() for n in current().orchestrator.notifications]}

    @app.post("/capture/capability")
    async def capture_capability(request: CapabilityRequest):
        current().capture.set_supported(request.supported)
        if not request.supported:
            logger.warning("[CAPTURE] Client reports speech recognition is not supported")
        return {"capture_supported": current().orchestrator.capture_supported}

    @app.post("/capture/event")
    async def capture_event(request: CaptureEventRequest):
        applied = current().capture.feed(request.event, request.text, request.error, request.session)
        return {"applied": applied, "state": current().orchestrator.state.value}

    @app.post("/audio/ended")
    async def audio_ended(request: AudioEndedRequest):
        return {"applied": current().audio_output.ended(request.id)}

    @app.get("/session/events")
    async def session_events():
        """Stream session events (state, reveal, transcript, notifications, commands) via SSE."""
        hub = current().hub
        q = hub.subscribe()

        async def event_generator():
            try:
                yield f"data: {json.dumps({'type': 'snapshot', **current().orchestrator.snapshot()})}\n\n"
                while True:
                    try:
                        event = await asyncio.wait_for(q.get(), timeout=15.0)
                        yield f"data: {json.dumps(event)}\n\n"
                    except asyncio.TimeoutError:
                        # Send heartbeat to keep connection alive
                        yield ": heartbeat\n\n"
            finally:
                hub.unsubscribe(q)

        return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)

    return app
