import base64

import pytest

from diagram_chat.data.records import AttachmentRef, BlobRecord, StoredMessage
from diagram_chat.history.manager import AttachmentPayload, HistoryPreview, RawFile, Turn
from diagram_chat.history.rehydrate import (
    RehydrationEngine,
    attachment_tier,
    current_document,
    fallback_from_preview,
    legacy_field_tier,
    legacy_marker_tier,
    to_display,
)

XML = "<mxfile><diagram/></mxfile>"
LEGACY_TEXT = "Summarise these\n# from file: a.txt\n\nalpha\n# from file: b.txt\n\nbeta"


def _user(content="", **kwargs):
    return StoredMessage(id="m", conversation_id="c", role="user", content=content, **kwargs)


def _blob(blob_id, name, media_type, data=b"data"):
    return BlobRecord(id=blob_id, blob=data, name=name, type=media_type, size=len(data))


def test_attachment_tier_builds_images_and_files():
    msg = _user(
        "look at this\n# from file: notes.txt\n\nfull notes",
        attachments=[
            AttachmentRef(blob_id="b1", name="a.png", type="image/png", size=4, kind="image"),
            AttachmentRef(blob_id="b2", name="notes.txt", type="text/plain", size=10, kind="file"),
        ],
    )
    blobs = {"b1": _blob("b1", "a.png", "image/png", b"\x89PNG"), "b2": _blob("b2", "notes.txt", "text/plain")}

    display = attachment_tier(msg, blobs)

    assert display.content == "look at this"
    assert len(display.images) == 1
    assert display.images[0].url == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()
    assert [(f.name, f.size) for f in display.files] == [("notes.txt", 10)]


def test_attachment_tier_skips_images_without_blob():
    msg = _user("hi", attachments=[AttachmentRef(blob_id="gone", name="a.png", type="image/png", size=1, kind="image")])
    assert attachment_tier(msg, {}) is None


def test_attachment_tier_falls_back_to_blob_metadata():
    msg = _user("hi", attachments=[AttachmentRef(blob_id="b1", name="", type="", size=0, kind="file")])
    display = attachment_tier(msg, {"b1": _blob("b1", "report.csv", "text/csv", b"1,2")})
    assert [(f.name, f.type, f.size) for f in display.files] == [("report.csv", "text/csv", 3)]


def test_legacy_marker_tier_parses_file_markers():
    display = legacy_marker_tier(_user(LEGACY_TEXT), {})
    assert [f.name for f in display.files] == ["a.txt", "b.txt"]
    assert all(f.type == "text/plain" and f.size == 0 for f in display.files)
    assert display.content == "Summarise these"


def test_legacy_marker_tier_accepts_localised_marker():
    display = legacy_marker_tier(_user("# 来自文件: spec.md\n\ncontent"), {})
    assert [f.name for f in display.files] == ["spec.md"]
    assert display.content == ""


def test_legacy_marker_tier_only_for_user_messages():
    msg = StoredMessage(id="m", conversation_id="c", role="assistant", content=LEGACY_TEXT)
    assert legacy_marker_tier(msg, {}) is None


def test_legacy_field_tier_maps_old_fields():
    msg = _user(
        "old message",
        images=[{"url": "blob:abc", "name": "x.png", "type": "image/png"}],
        files=[{"name": "y.txt"}],
    )
    assert legacy_marker_tier(msg, {}) is None

    display = legacy_field_tier(msg, {})
    assert display.content == "old message"
    assert [(i.url, i.name) for i in display.images] == [("blob:abc", "x.png")]
    assert [(f.name, f.type, f.size) for f in display.files] == [("y.txt", "text/plain", 0)]


def test_to_display_defaults_to_plain_message():
    msg = StoredMessage(id="m", conversation_id="c", role="assistant", content=XML, type="xml")
    display = to_display(msg, {})
    assert (display.role, display.content, display.type) == ("assistant", XML, "xml")
    assert display.images == [] and display.files == []


def test_current_document_is_latest_assistant_xml():
    msgs = [
        to_display(StoredMessage(id="1", conversation_id="c", role="assistant", content="<a/>", type="xml"), {}),
        to_display(_user("more"), {}),
        to_display(StoredMessage(id="2", conversation_id="c", role="assistant", content="<b/>", type="xml"), {}),
        to_display(StoredMessage(id="3", conversation_id="c", role="assistant", content="error", type="text"), {}),
    ]
    assert current_document(msgs) == "<b/>"


@pytest.mark.asyncio
async def test_rehydrate_restores_stored_attachments(history, engine):
    result = await history.add_history(
        Turn(
            user_input="Make a diagram\n# from file: notes.txt\n\nnotes",
            generated_code=XML,
            images=[
                AttachmentPayload(file=RawFile(data=b"1", name="a.png", type="image/png")),
                AttachmentPayload(file=RawFile(data=b"2", name="b.png", type="image/png")),
            ],
            files=[AttachmentPayload(file=RawFile(data=b"notes", name="notes.txt", type="text/plain"))],
        )
    )

    view = await engine.rehydrate(result.conversation_id)

    user, assistant = view.messages
    assert len(user.images) == 2
    assert len(user.files) == 1
    assert user.content == "Make a diagram"
    assert assistant.type == "xml"
    assert view.current_document == XML
    assert not view.degraded


@pytest.mark.asyncio
async def test_rehydrate_legacy_messages(history, engine):
    await history.messages.add_conversation_if_missing("old", title="old", chart_type="auto")
    await history.messages.put_messages(
        [
            StoredMessage(id="u", conversation_id="old", role="user", content=LEGACY_TEXT, created_at=1),
            StoredMessage(id="a", conversation_id="old", role="assistant", content=XML, type="xml", created_at=2),
        ]
    )

    view = await engine.rehydrate("old")

    assert [f.name for f in view.messages[0].files] == ["a.txt", "b.txt"]
    assert view.messages[0].content == "Summarise these"
    assert view.current_document == XML


class BrokenMessages:
    async def get_conversation_messages(self, conversation_id):
        raise RuntimeError("corrupt row")


@pytest.mark.asyncio
async def test_rehydrate_or_fallback_uses_last_pair(history):
    engine = RehydrationEngine(BrokenMessages(), history.blobs)
    preview = HistoryPreview(
        id="c1",
        chart_type="auto",
        user_input=LEGACY_TEXT,
        generated_code=XML,
        config=None,
        timestamp=1,
    )

    view = await engine.rehydrate_or_fallback("c1", preview)

    assert view.degraded
    user, assistant = view.messages
    assert user.content == "Summarise these"
    assert [f.name for f in user.files] == ["a.txt", "b.txt"]
    assert (assistant.content, assistant.type) == (XML, "xml")
    assert view.current_document == XML


def test_fallback_without_markers_keeps_input():
    preview = HistoryPreview(id="c", chart_type="auto", user_input="plain", generated_code=XML, config=None, timestamp=1)
    view = fallback_from_preview(preview)
    assert view.messages[0].content == "plain"
    assert view.messages[0].files == []
