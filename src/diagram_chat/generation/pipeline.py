import base64
import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field

from ..config import DEFAULT_CHART_TYPE
from ..errors import DiagramChatError, ErrorCategory
from ..history.manager import AttachmentPayload, HistoryManager, RawFile, Turn
from ..settings import SessionSettings, is_config_valid
from .client import GenerationClient, GenerationRequest, build_history
from .extractor import extract_document
from .stream import StreamConsumer

logger = logging.getLogger(__name__)

FILE_MARKER = "# from file: {name}"


@dataclass
class ChatEvent:
    """An event yielded while a turn is processed."""

    type: str  # "init", "content", "document", "error", "done"
    data: str = ""


@dataclass
class TextFile:
    name: str
    content: str
    type: str = "text/plain"
    data: bytes | None = None

    def to_payload(self) -> AttachmentPayload:
        raw = self.data if self.data is not None else self.content.encode("utf-8")
        return AttachmentPayload(file=RawFile(data=raw, name=self.name, type=self.type), name=self.name, type=self.type)


@dataclass
class TurnInput:
    message: str
    conversation_id: str | None = None
    chart_type: str = DEFAULT_CHART_TYPE
    config: dict | None = None
    images: list[AttachmentPayload] = field(default_factory=list)
    files: list[TextFile] = field(default_factory=list)
    context_xml: str | None = None


def compose_prompt(typed: str, files: list[TextFile]) -> str:
    """Typed text followed by one marked block per non-empty text file."""
    parts = [f"{FILE_MARKER.format(name=f.name)}\n\n{f.content}" for f in files if f.content]
    return "\n\n".join(p for p in [typed, *parts] if p)


def _encode_image(payload: AttachmentPayload) -> dict:
    file = payload.file
    data = file if isinstance(file, (bytes, bytearray)) else (file.data if file else b"")
    return {
        "data": base64.b64encode(data).decode("ascii"),
        "mimeType": (getattr(file, "type", None) or payload.type or "image/png"),
        "name": (getattr(file, "name", None) or payload.name or "image"),
    }


def build_user_input(prompt: str, images: list[AttachmentPayload], context_xml: str | None):
    context = context_xml if context_xml and context_xml.strip() else None
    if images:
        user_input = {"text": prompt, "images": [_encode_image(im) for im in images]}
        if context:
            user_input["contextXml"] = context
        return user_input
    if context:
        return {"text": prompt, "contextXml": context}
    return prompt


def stored_config(config: dict | None) -> dict:
    config = config or {}
    return {"name": config.get("name") or config.get("type") or "", "model": config.get("model") or ""}


class TurnPipeline:
    """Runs one turn: upstream stream, document extraction, persistence."""

    def __init__(self, client: GenerationClient, history: HistoryManager, settings: SessionSettings) -> None:
        self._client = client
        self._history = history
        self._settings = settings

    def _effective_config(self, turn: TurnInput) -> dict | None:
        if self._settings.snapshot.use_password:
            return None
        return turn.config or self._settings.snapshot.config

    async def run(self, turn: TurnInput) -> AsyncIterator[ChatEvent]:
        conversation_id = turn.conversation_id or self._history.generate_id()
        yield ChatEvent(type="init", data=json.dumps({"conversation_id": conversation_id}))

        try:
            async with aclosing(self._run(turn, conversation_id)) as events:
                async for event in events:
                    yield event
        except DiagramChatError as e:
            logger.warning("Turn failed for %s: %s", conversation_id, e.message)
            yield ChatEvent(type="error", data=json.dumps(e.to_dict()))

        yield ChatEvent(type="done", data=json.dumps({"conversation_id": conversation_id}))

    async def _run(self, turn: TurnInput, conversation_id: str) -> AsyncIterator[ChatEvent]:
        config = self._effective_config(turn)
        if not self._settings.snapshot.use_password and not is_config_valid(config):
            raise DiagramChatError(
                code="CONFIG_REQUIRED",
                message="Please configure an LLM provider or enable the access password",
                category=ErrorCategory.AUTH,
            )

        prompt = compose_prompt(turn.message, turn.files)
        prior = await self._history.get_conversation_messages(conversation_id, strict=False)
        req = GenerationRequest(
            user_input=build_user_input(prompt, turn.images, turn.context_xml),
            chart_type=turn.chart_type or DEFAULT_CHART_TYPE,
            conversation_id=conversation_id,
            config=config,
            history=build_history(prior),
        )

        consumer = StreamConsumer()
        async with aclosing(self._client.stream(req)) as chunks:
            async with aclosing(consumer.iter_content(chunks)) as fragments:
                async for fragment in fragments:
                    yield ChatEvent(type="content", data=fragment)

        document = extract_document(consumer.text)

        result = await self._history.add_history(
            Turn(
                user_input=turn.message or prompt,
                generated_code=document,
                conversation_id=conversation_id,
                chart_type=turn.chart_type or DEFAULT_CHART_TYPE,
                config=stored_config(config),
                images=turn.images,
                files=[f.to_payload() for f in turn.files],
            )
        )
        yield ChatEvent(
            type="document",
            data=json.dumps(
                {
                    "xml": document,
                    "conversation_id": result.conversation_id,
                    "user_message_id": result.user_message_id,
                    "assistant_message_id": result.assistant_message_id,
                }
            ),
        )
