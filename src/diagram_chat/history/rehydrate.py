"""Rebuild a displayable chat from stored messages.

Messages were written by several generations of the app. Newer ones point
at blobs through ``attachments``; older ones inlined text files behind
``# from file: <name>`` markers or carried ad-hoc ``images``/``files``
fields. Each shape is handled by one tier; the first tier that returns a
DisplayMessage wins.
"""

import base64
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from ..data.blob_store import BlobStore
from ..data.message_store import MessageStore
from ..data.records import BlobRecord, StoredMessage
from ..errors import RehydrationError
from .manager import HistoryPreview

logger = logging.getLogger(__name__)

MARKER_RE = re.compile(r"^#\s*(?:来自文件|from file)\s*:\s*(.+)$", re.MULTILINE | re.IGNORECASE)
MARKER_START_RE = re.compile(r"^#\s*(?:来自文件|from file)\s*:", re.MULTILINE | re.IGNORECASE)
LEGACY_FILE_TYPE = "text/plain"


@dataclass
class DisplayImage:
    url: str
    name: str
    type: str


@dataclass
class DisplayFile:
    name: str
    type: str
    size: int


@dataclass
class DisplayMessage:
    role: str
    content: str
    type: str | None = None
    images: list[DisplayImage] = field(default_factory=list)
    files: list[DisplayFile] = field(default_factory=list)


@dataclass
class RehydratedConversation:
    conversation_id: str
    messages: list[DisplayMessage]
    current_document: str | None
    degraded: bool = False


Tier = Callable[[StoredMessage, dict[str, BlobRecord]], DisplayMessage | None]


def data_url(blob: bytes, media_type: str) -> str:
    return f"data:{media_type};base64,{base64.b64encode(blob).decode('ascii')}"


def typed_text(content: str) -> str:
    """The part of ``content`` preceding the first inline file marker."""
    match = MARKER_START_RE.search(content or "")
    if not match:
        return content
    return content[: match.start()].strip()


def marker_files(content: str) -> list[DisplayFile]:
    return [
        DisplayFile(name=name.strip() or "file", type=LEGACY_FILE_TYPE, size=0)
        for name in MARKER_RE.findall(content or "")
    ]


def attachment_tier(msg: StoredMessage, blobs: dict[str, BlobRecord]) -> DisplayMessage | None:
    images: list[DisplayImage] = []
    files: list[DisplayFile] = []
    for att in msg.attachments:
        rec = blobs.get(att.blob_id)
        name = att.name or (rec.name if rec else "") or "file"
        media_type = att.type or (rec.type if rec else "") or "application/octet-stream"
        size = att.size or (rec.size if rec else 0)
        if media_type.startswith("image/") or att.kind == "image":
            if rec is not None:
                images.append(DisplayImage(url=data_url(rec.blob, media_type), name=name, type=media_type))
        else:
            files.append(DisplayFile(name=name, type=media_type, size=size))

    if not images and not files:
        return None
    return DisplayMessage(
        role=msg.role,
        content=typed_text(msg.content),
        type=msg.type,
        images=images,
        files=files,
    )


def legacy_marker_tier(msg: StoredMessage, blobs: dict[str, BlobRecord]) -> DisplayMessage | None:
    if msg.role != "user" or msg.images or msg.files:
        return None
    files = marker_files(msg.content)
    if not files:
        return None
    return DisplayMessage(role=msg.role, content=typed_text(msg.content), type=msg.type, files=files)


def legacy_field_tier(msg: StoredMessage, blobs: dict[str, BlobRecord]) -> DisplayMessage | None:
    if msg.role != "user":
        return None
    images = [
        DisplayImage(url=im.get("url", ""), name=im.get("name", ""), type=im.get("type", ""))
        for im in msg.images or []
    ]
    files = [
        DisplayFile(name=f.get("name", ""), type=f.get("type") or LEGACY_FILE_TYPE, size=f.get("size") or 0)
        for f in msg.files or []
    ]
    if not images and not files:
        return None
    return DisplayMessage(role=msg.role, content=msg.content, type=msg.type, images=images, files=files)


TIERS: tuple[Tier, ...] = (attachment_tier, legacy_marker_tier, legacy_field_tier)


def to_display(msg: StoredMessage, blobs: dict[str, BlobRecord], tiers: tuple[Tier, ...] = TIERS) -> DisplayMessage:
    for tier in tiers:
        display = tier(msg, blobs)
        if display is not None:
            return display
    return DisplayMessage(role=msg.role, content=msg.content, type=msg.type)


def current_document(messages: list[DisplayMessage]) -> str | None:
    for msg in reversed(messages):
        if msg.role == "assistant" and msg.type == "xml":
            return msg.content or None
    return None


def fallback_from_preview(preview: HistoryPreview) -> RehydratedConversation:
    """A two-message thread built from the last known input/output pair."""
    raw = preview.user_input or ""
    messages = [
        DisplayMessage(role="user", content=typed_text(raw), files=marker_files(raw)),
        DisplayMessage(role="assistant", content=preview.generated_code, type="xml"),
    ]
    return RehydratedConversation(
        conversation_id=preview.id,
        messages=messages,
        current_document=preview.generated_code or None,
        degraded=True,
    )


class RehydrationEngine:
    def __init__(self, messages: MessageStore, blobs: BlobStore, tiers: tuple[Tier, ...] = TIERS) -> None:
        self._messages = messages
        self._blobs = blobs
        self._tiers = tiers

    async def _load_blobs(self, msgs: list[StoredMessage]) -> dict[str, BlobRecord]:
        blobs: dict[str, BlobRecord] = {}
        for msg in msgs:
            for att in msg.attachments:
                if not att.blob_id or att.blob_id in blobs:
                    continue
                try:
                    rec = await self._blobs.get_blob(att.blob_id)
                except Exception:
                    logger.warning("Could not load blob %s", att.blob_id, exc_info=True)
                    continue
                if rec is not None:
                    blobs[att.blob_id] = rec
        return blobs

    async def rehydrate(self, conversation_id: str) -> RehydratedConversation:
        try:
            msgs = await self._messages.get_conversation_messages(conversation_id)
            blobs = await self._load_blobs(msgs)
            display = [to_display(m, blobs, self._tiers) for m in msgs]
        except Exception as e:
            raise RehydrationError(code="REHYDRATION_ERROR", message=str(e)) from e
        return RehydratedConversation(
            conversation_id=conversation_id,
            messages=display,
            current_document=current_document(display),
        )

    async def rehydrate_or_fallback(self, conversation_id: str, preview: HistoryPreview) -> RehydratedConversation:
        try:
            return await self.rehydrate(conversation_id)
        except RehydrationError:
            logger.exception("Rehydration failed for %s, using last input/output pair", conversation_id)
            return fallback_from_preview(preview)
