from pydantic import BaseModel, Field


class ImageIn(BaseModel):
    data: str  # base64
    name: str | None = None
    type: str | None = None


class FileIn(BaseModel):
    name: str | None = None
    type: str | None = None
    size: int | None = None
    content: str | None = None
    data: str | None = None  # base64, used when the raw bytes differ from content


class ChatRequest(BaseModel):
    conversation_id: str | None = None
    message: str = ""
    chart_type: str = "auto"
    config: dict | None = None
    images: list[ImageIn] = Field(default_factory=list)
    files: list[FileIn] = Field(default_factory=list)
    context_xml: str | None = None


class SettingsIn(BaseModel):
    use_password: bool | None = None
    access_password: str | None = None
    config: dict | None = None


class SettingsOut(BaseModel):
    use_password: bool
    has_access_password: bool
    config: dict | None


class HistoryOut(BaseModel):
    id: str
    chart_type: str
    user_input: str
    generated_code: str
    config: dict | None
    timestamp: int


class DisplayImageOut(BaseModel):
    url: str
    name: str
    type: str


class DisplayFileOut(BaseModel):
    name: str
    type: str
    size: int


class DisplayMessageOut(BaseModel):
    role: str
    content: str
    type: str | None = None
    images: list[DisplayImageOut] = Field(default_factory=list)
    files: list[DisplayFileOut] = Field(default_factory=list)


class ConversationOut(BaseModel):
    conversation_id: str
    messages: list[DisplayMessageOut]
    current_document: str | None
    degraded: bool = False
