import json

import httpx
import pytest
import pytest_asyncio

from diagram_chat.data.sqlite_store import SQLiteStore
from diagram_chat.history.manager import HistoryManager
from diagram_chat.history.rehydrate import RehydrationEngine
from diagram_chat.settings import SessionSettings, SettingsSnapshot

VALID_CONFIG = {"type": "openai", "name": "My OpenAI", "model": "gpt-4o", "apiKey": "sk-test"}


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered in the given chunks, recording whether it was closed."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def sse_body(*records, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(r)}\n\n" for r in records]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class Upstream:
    """Fake generation endpoint for httpx.MockTransport."""

    def __init__(self, chunks: list[bytes] | None = None, status: int = 200, json_body=None) -> None:
        self.chunks = chunks or []
        self.status = status
        self.json_body = json_body
        self.requests: list[httpx.Request] = []
        self.streams: list[ChunkStream] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            if self.json_body is not None:
                return httpx.Response(self.status, json=self.json_body)
            return httpx.Response(self.status, text="upstream failure")
        stream = ChunkStream(list(self.chunks))
        self.streams.append(stream)
        return httpx.Response(200, stream=stream, headers={"content-type": "text/event-stream"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def history(sqlite_store):
    return HistoryManager(sqlite_store)


@pytest.fixture
def engine(history):
    return RehydrationEngine(history.messages, history.blobs)


@pytest.fixture
def settings():
    return SessionSettings(SettingsSnapshot(config=dict(VALID_CONFIG)))
