from ..generation.pipeline import ChatEvent


def format_sse_event(event_type: str, data: str) -> dict:
    """Format an SSE event for sse-starlette's EventSourceResponse."""
    return {"event": event_type, "data": data}


def sse_from_chat_event(event: ChatEvent) -> dict:
    return format_sse_event(event.type, event.data)


def sse_error(error: str) -> dict:
    return format_sse_event("error", error)


def sse_done(data: str) -> dict:
    return format_sse_event("done", data)
