import logging
from dataclasses import dataclass, field
from typing import Any

from ..config import CONVERSATION_TITLE_LENGTH, DEFAULT_CHART_TYPE, DEFAULT_CONVERSATION_TITLE
from ..data.blob_store import BlobStore
from ..data.message_store import MessageStore
from ..data.records import AttachmentRef, BlobRecord, Conversation, StoredMessage
from ..data.sqlite_store import SQLiteStore, now_ms
from ..errors import AttachmentPersistError

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_NAME = "file"
DEFAULT_ATTACHMENT_TYPE = "application/octet-stream"
PREVIEW_IMAGE_NAMES = 3


@dataclass
class RawFile:
    """Attachment bytes together with whatever metadata the upload carried."""

    data: bytes
    name: str | None = None
    type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class AttachmentPayload:
    file: RawFile | bytes | None
    name: str | None = None
    type: str | None = None
    size: int | None = None


@dataclass
class Turn:
    user_input: str
    generated_code: str
    conversation_id: str | None = None
    chart_type: str = DEFAULT_CHART_TYPE
    config: dict | None = None
    images: list[AttachmentPayload] = field(default_factory=list)
    files: list[AttachmentPayload] = field(default_factory=list)


@dataclass
class TurnResult:
    conversation_id: str
    user_message_id: str
    assistant_message_id: str


@dataclass
class HistoryPreview:
    id: str
    chart_type: str
    user_input: str
    generated_code: str
    config: dict | None
    timestamp: int


def _file_attr(file: Any, attr: str) -> Any:
    return getattr(file, attr, None) if not isinstance(file, (bytes, bytearray)) else None


def image_preview(names: list[str]) -> str:
    shown = ", ".join(names[:PREVIEW_IMAGE_NAMES])
    extra = len(names) - PREVIEW_IMAGE_NAMES
    suffix = f" +{extra} more" if extra > 0 else ""
    return f"From images: {shown}{suffix}"


class HistoryManager:
    """Persists turns and exposes conversation previews."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store
        self.blobs = BlobStore(store)
        self.messages = MessageStore(store)

    def generate_id(self) -> str:
        return self._store.generate_id()

    async def _persist_attachment(self, payload: AttachmentPayload, kind: str) -> AttachmentRef | None:
        file = payload.file
        if file is None:
            return None
        try:
            data = bytes(file) if isinstance(file, (bytes, bytearray)) else file.data
            blob_id = self.generate_id()
            name = payload.name or _file_attr(file, "name") or DEFAULT_ATTACHMENT_NAME
            type_ = payload.type or _file_attr(file, "type") or DEFAULT_ATTACHMENT_TYPE
            size = payload.size or _file_attr(file, "size") or len(data) or 0
            await self.blobs.put_blob(BlobRecord(id=blob_id, blob=data, name=name, type=type_, size=size))
        except Exception as e:
            raise AttachmentPersistError(code="ATTACHMENT_PERSIST_ERROR", message=str(e)) from e
        return AttachmentRef(blob_id=blob_id, name=name, type=type_, size=size, kind=kind)

    async def _persist_attachments(self, turn: Turn) -> list[AttachmentRef]:
        refs = []
        for kind, payloads in (("image", turn.images), ("file", turn.files)):
            for payload in payloads:
                try:
                    ref = await self._persist_attachment(payload, kind)
                except AttachmentPersistError:
                    logger.warning("Dropping %s attachment %r", kind, payload.name, exc_info=True)
                    continue
                if ref:
                    refs.append(ref)
        return refs

    async def add_history(self, turn: Turn) -> TurnResult:
        """Store a user message and its assistant diagram, creating the conversation if needed."""
        conversation_id = turn.conversation_id or self.generate_id()
        now = now_ms()

        await self.messages.add_conversation_if_missing(
            conversation_id,
            title=(turn.user_input or "")[:CONVERSATION_TITLE_LENGTH] or DEFAULT_CONVERSATION_TITLE,
            chart_type=turn.chart_type or DEFAULT_CHART_TYPE,
            config=turn.config,
        )

        attachments = await self._persist_attachments(turn)

        user_msg = StoredMessage(
            id=self.generate_id(),
            conversation_id=conversation_id,
            role="user",
            content=turn.user_input or "",
            type="text",
            attachments=attachments,
            created_at=now,
        )
        assistant_msg = StoredMessage(
            id=self.generate_id(),
            conversation_id=conversation_id,
            role="assistant",
            content=turn.generated_code or "",
            type="xml",
            attachments=[],
            created_at=now + 1,
        )
        await self.messages.put_messages([user_msg, assistant_msg])

        return TurnResult(
            conversation_id=conversation_id,
            user_message_id=user_msg.id,
            assistant_message_id=assistant_msg.id,
        )

    async def _preview(self, conv: Conversation) -> HistoryPreview:
        msgs = await self.messages.get_conversation_messages(conv.id, strict=False)
        last_xml = next(
            (m for m in reversed(msgs) if m.role == "assistant" and m.type == "xml"),
            None,
        )
        last_user = next((m for m in reversed(msgs) if m.role == "user"), None)

        user_preview = (last_user.content if last_user else "").strip()
        if not user_preview and last_user and last_user.attachments:
            names = [a.name or "image" for a in last_user.attachments if a.kind == "image"]
            if names:
                user_preview = image_preview(names)

        return HistoryPreview(
            id=conv.id,
            chart_type=conv.chart_type or DEFAULT_CHART_TYPE,
            user_input=user_preview,
            generated_code=last_xml.content if last_xml else "",
            config=conv.config,
            timestamp=conv.updated_at or conv.created_at or now_ms(),
        )

    async def get_histories(self) -> list[HistoryPreview]:
        """One preview per conversation, most recently updated first."""
        return [await self._preview(conv) for conv in await self.messages.list_conversations()]

    async def get_history(self, conversation_id: str) -> HistoryPreview | None:
        conv = await self.messages.get_conversation(conversation_id)
        return await self._preview(conv) if conv else None

    async def get_conversation_messages(self, conversation_id: str, strict: bool = True) -> list[StoredMessage]:
        return await self.messages.get_conversation_messages(conversation_id, strict)

    async def delete_history(self, conversation_id: str) -> None:
        await self.messages.delete_conversation(conversation_id)

    async def clear_all(self) -> None:
        await self._store.clear_all_stores()
