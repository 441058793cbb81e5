import json
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class AttachmentRef:
    """Pointer from a message into the blob store."""

    blob_id: str
    name: str
    type: str
    size: int
    kind: str  # "image" or "file"

    @classmethod
    def from_dict(cls, data: dict) -> "AttachmentRef":
        # Rows written by older builds used camelCase keys
        return cls(
            blob_id=data.get("blob_id") or data.get("blobId") or "",
            name=data.get("name") or "",
            type=data.get("type") or "",
            size=int(data.get("size") or 0),
            kind=data.get("kind") or "file",
        )


@dataclass
class BlobRecord:
    id: str
    blob: bytes
    name: str
    type: str
    size: int


@dataclass
class Conversation:
    id: str
    title: str
    chart_type: str
    config: dict | None
    created_at: int
    updated_at: int


@dataclass
class StoredMessage:
    id: str
    conversation_id: str
    role: str
    content: str
    type: str = "text"
    attachments: list[AttachmentRef] = field(default_factory=list)
    created_at: int = 0
    # Ad-hoc fields carried by messages from older shapes
    images: list[dict] | None = None
    files: list[dict] | None = None

    def attachments_json(self) -> str:
        return json.dumps([asdict(a) for a in self.attachments])

    def legacy_json(self) -> str | None:
        legacy: dict[str, Any] = {}
        if self.images is not None:
            legacy["images"] = self.images
        if self.files is not None:
            legacy["files"] = self.files
        return json.dumps(legacy) if legacy else None
