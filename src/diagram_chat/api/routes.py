import base64
import binascii
import json
import logging
from dataclasses import asdict
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Request, Response
from sse_starlette.sse import EventSourceResponse

from ..errors import DiagramChatError, ErrorCategory
from ..generation.pipeline import TextFile, TurnInput
from ..history.manager import AttachmentPayload, RawFile
from .models import (
    ChatRequest,
    ConversationOut,
    FileIn,
    HistoryOut,
    ImageIn,
    SettingsIn,
    SettingsOut,
)
from .sse import sse_done, sse_error, sse_from_chat_event

logger = logging.getLogger(__name__)
router = APIRouter()


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid base64 attachment: {e}")


def _image_payload(image: ImageIn) -> AttachmentPayload:
    raw = RawFile(data=_b64decode(image.data), name=image.name, type=image.type)
    return AttachmentPayload(file=raw, name=image.name, type=image.type)


def _text_file(f: FileIn) -> TextFile:
    data = _b64decode(f.data) if f.data else None
    content = f.content if f.content is not None else (data or b"").decode("utf-8", errors="replace")
    return TextFile(name=f.name or "file", content=content, type=f.type or "text/plain", data=data)


def _settings_out(request: Request) -> SettingsOut:
    snap = request.app.state.settings.snapshot
    return SettingsOut(
        use_password=snap.use_password,
        has_access_password=bool(snap.access_password),
        config=snap.config,
    )


@router.post("/api/chat")
async def chat_endpoint(req: ChatRequest, request: Request):
    pipeline = request.app.state.pipeline

    turn = TurnInput(
        message=req.message,
        conversation_id=req.conversation_id,
        chart_type=req.chart_type,
        config=req.config,
        images=[_image_payload(im) for im in req.images],
        files=[_text_file(f) for f in req.files],
        context_xml=req.context_xml,
    )
    if not turn.message.strip() and not turn.images and not turn.files:
        raise HTTPException(status_code=400, detail="Message, images or files required")

    async def event_generator():
        try:
            async for event in pipeline.run(turn):
                yield sse_from_chat_event(event)
        except Exception as e:
            logger.exception("Error in chat stream")
            error = DiagramChatError(code="INTERNAL_ERROR", message=str(e), category=ErrorCategory.GENERIC)
            yield sse_error(json.dumps(error.to_dict()))
            yield sse_done(json.dumps({"error": str(e)}))

    return EventSourceResponse(event_generator(), ping=15)


@router.get("/api/histories")
async def list_histories(request: Request) -> list[HistoryOut]:
    history = request.app.state.history
    return [HistoryOut(**asdict(p)) for p in await history.get_histories()]


@router.delete("/api/histories")
async def clear_histories(request: Request):
    await request.app.state.history.clear_all()
    return {"cleared": True}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request) -> ConversationOut:
    history = request.app.state.history
    engine = request.app.state.rehydration_engine
    preview = await history.get_history(conversation_id)
    if not preview:
        raise HTTPException(status_code=404, detail="Conversation not found")
    result = await engine.rehydrate_or_fallback(conversation_id, preview)
    return ConversationOut(**asdict(result))


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    await request.app.state.history.delete_history(conversation_id)
    return {"deleted": conversation_id}


@router.get("/api/blobs/{blob_id}")
async def get_blob(blob_id: str, request: Request):
    rec = await request.app.state.history.blobs.get_blob(blob_id)
    if not rec:
        raise HTTPException(status_code=404, detail="Attachment not found")
    return Response(
        content=rec.blob,
        media_type=rec.type,
        headers={"Content-Disposition": f"inline; filename*=UTF-8''{quote(rec.name)}"},
    )


@router.get("/api/models")
async def list_models(request: Request, refresh: bool = False):
    client = request.app.state.generation_client
    try:
        return await client.list_models(refresh=refresh)
    except DiagramChatError as e:
        status = e.http_status if e.http_status >= 400 else 502
        raise HTTPException(status_code=status, detail=e.to_dict())


@router.get("/api/settings")
async def get_settings(request: Request) -> SettingsOut:
    return _settings_out(request)


@router.put("/api/settings")
async def update_settings(body: SettingsIn, request: Request) -> SettingsOut:
    changes = body.model_dump(exclude_unset=True)
    request.app.state.settings.update(**changes)
    return _settings_out(request)
