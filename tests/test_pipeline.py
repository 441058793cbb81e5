import base64
import json

import pytest

from conftest import Upstream, sse_body
from diagram_chat.config import HISTORY_XML_PLACEHOLDER
from diagram_chat.generation.client import GenerationClient
from diagram_chat.generation.pipeline import (
    TextFile,
    TurnInput,
    TurnPipeline,
    build_user_input,
    compose_prompt,
    stored_config,
)
from diagram_chat.history.manager import AttachmentPayload, RawFile
from diagram_chat.settings import SessionSettings, SettingsSnapshot

SCENARIO_OUTPUT = "Sure! ```xml\n<mxfile><diagram/></mxfile>\n```"


def _pipeline(upstream, history, settings):
    client = GenerationClient(settings, transport=upstream.transport)
    return TurnPipeline(client, history, settings)


async def _run(pipeline, turn):
    return [event async for event in pipeline.run(turn)]


def _split(text, size=7):
    body = sse_body(*[{"content": text[i : i + size]} for i in range(0, len(text), size)])
    return [body[i : i + 11] for i in range(0, len(body), 11)]


@pytest.mark.asyncio
async def test_turn_persists_extracted_document(history, settings):
    upstream = Upstream(_split(SCENARIO_OUTPUT))
    pipeline = _pipeline(upstream, history, settings)

    events = await _run(pipeline, TurnInput(message="draw a login flow", conversation_id="c1"))

    types = [e.type for e in events]
    assert types[0] == "init"
    assert "content" in types
    assert types[-2:] == ["document", "done"]
    assert "".join(e.data for e in events if e.type == "content") == SCENARIO_OUTPUT

    document = json.loads(events[-2].data)
    assert document["xml"] == "<mxfile><diagram/></mxfile>"

    msgs = await history.get_conversation_messages("c1")
    assert [(m.role, m.type) for m in msgs] == [("user", "text"), ("assistant", "xml")]
    assert msgs[1].content == "<mxfile><diagram/></mxfile>"
    assert msgs[1].id == document["assistant_message_id"]


@pytest.mark.asyncio
async def test_invalid_document_is_not_persisted(history, settings):
    upstream = Upstream([sse_body({"content": "not xml at all"})])
    pipeline = _pipeline(upstream, history, settings)

    events = await _run(pipeline, TurnInput(message="draw", conversation_id="c1"))

    error = json.loads(next(e for e in events if e.type == "error").data)
    assert error["category"] == "invalid_document"
    assert events[-1].type == "done"
    assert await history.get_conversation_messages("c1") == []
    assert await history.get_histories() == []


@pytest.mark.asyncio
async def test_transport_error_is_reported(history, settings):
    upstream = Upstream(status=401)
    pipeline = _pipeline(upstream, history, settings)

    events = await _run(pipeline, TurnInput(message="draw", conversation_id="c1"))

    error = json.loads(next(e for e in events if e.type == "error").data)
    assert error["category"] == "auth"
    assert await history.get_histories() == []


@pytest.mark.asyncio
async def test_error_frame_is_surfaced_verbatim(history, settings):
    upstream = Upstream([sse_body({"content": "<mxfile>"}, {"error": "context length exceeded"})])
    pipeline = _pipeline(upstream, history, settings)

    events = await _run(pipeline, TurnInput(message="draw", conversation_id="c1"))

    error = json.loads(next(e for e in events if e.type == "error").data)
    assert error["message"] == "context length exceeded"
    assert await history.get_histories() == []


@pytest.mark.asyncio
async def test_missing_config_is_rejected_before_any_request(history):
    upstream = Upstream([sse_body({"content": "<mxfile/>"})])
    pipeline = _pipeline(upstream, history, SessionSettings())

    events = await _run(pipeline, TurnInput(message="draw"))

    error = json.loads(next(e for e in events if e.type == "error").data)
    assert error["category"] == "auth"
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_password_mode_sends_no_config(history):
    upstream = Upstream([sse_body({"content": "<mxfile/>"})])
    settings = SessionSettings(SettingsSnapshot(use_password=True, access_password="pw"))
    pipeline = _pipeline(upstream, history, settings)

    await _run(pipeline, TurnInput(message="draw", conversation_id="c1", config={"model": "ignored"}))

    assert upstream.payloads()[0]["config"] is None
    conv = await history.messages.get_conversation("c1")
    assert conv.config == {"name": "", "model": ""}


@pytest.mark.asyncio
async def test_follow_up_sends_history_with_placeholder(history, settings):
    upstream = Upstream([sse_body({"content": "<mxfile/>"})])
    pipeline = _pipeline(upstream, history, settings)

    await _run(pipeline, TurnInput(message="first", conversation_id="c1"))
    await _run(pipeline, TurnInput(message="make it blue", conversation_id="c1", context_xml="<mxfile/>"))

    payload = upstream.payloads()[1]
    assert payload["history"] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": HISTORY_XML_PLACEHOLDER},
    ]
    assert payload["userInput"] == {"text": "make it blue", "contextXml": "<mxfile/>"}
    assert payload["config"]["model"] == "gpt-4o"


@pytest.mark.asyncio
async def test_text_files_are_inlined_and_stored(history, settings):
    upstream = Upstream([sse_body({"content": "<mxfile/>"})])
    pipeline = _pipeline(upstream, history, settings)

    await _run(
        pipeline,
        TurnInput(message="", conversation_id="c1", files=[TextFile(name="spec.md", content="# Spec")]),
    )

    assert upstream.payloads()[0]["userInput"] == "# from file: spec.md\n\n# Spec"
    user = (await history.get_conversation_messages("c1"))[0]
    assert user.content == "# from file: spec.md\n\n# Spec"
    assert [(a.name, a.kind) for a in user.attachments] == [("spec.md", "file")]


@pytest.mark.asyncio
async def test_cancelled_turn_closes_stream_and_persists_nothing(history, settings):
    upstream = Upstream([sse_body({"content": "<mxfile>"}), sse_body({"content": "</mxfile>"})])
    pipeline = _pipeline(upstream, history, settings)

    run = pipeline.run(TurnInput(message="draw", conversation_id="c1"))
    async for event in run:
        if event.type == "content":
            break
    await run.aclose()

    assert upstream.streams[0].closed
    assert await history.get_conversation_messages("c1") == []


def test_compose_prompt_skips_empty_files():
    files = [TextFile(name="a.txt", content="alpha"), TextFile(name="empty.txt", content="")]
    assert compose_prompt("typed", files) == "typed\n\n# from file: a.txt\n\nalpha"
    assert compose_prompt("typed", []) == "typed"


def test_build_user_input_with_images():
    image = AttachmentPayload(file=RawFile(data=b"\x89PNG", name="a.png", type="image/png"))
    user_input = build_user_input("describe", [image], "  ")
    assert user_input == {
        "text": "describe",
        "images": [{"data": base64.b64encode(b"\x89PNG").decode(), "mimeType": "image/png", "name": "a.png"}],
    }


def test_stored_config_keeps_name_and_model():
    assert stored_config({"type": "openai", "model": "gpt-4o", "apiKey": "secret"}) == {"name": "openai", "model": "gpt-4o"}
