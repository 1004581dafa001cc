from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal


CONVERSATION_STARTED = "conversation_started"
CONVERSATION_ENDED = "conversation_ended"
CONVERSATION_ERROR = "conversation_error"


class ConversationNotification(BaseModel):
    # only required once the conversation has ended
    conversation_id: Optional[str] = None
    agent_id: Optional[str] = None
    user_id: Optional[str] = None
    # conversation_started | conversation_ended | conversation_error; anything else is not "ended"
    status: str
    transcript: Optional[str] = None
    audio_url: Optional[str] = None
    created_at: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ConversationTurn(BaseModel):
    index: int
    role: Literal["user", "assistant"]
    content: str
    timestamp: Optional[str] = None
    # seconds from the start of the conversation, when the provider sends offsets instead of timestamps
    offset_seconds: Optional[float] = None


class ConversationDetail(BaseModel):
    conversation_id: str
    transcript: str = ""
    audio_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    started_at: Optional[str] = None
    turns: List[ConversationTurn] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    case_id: str
    created: bool
    transcript: str
    audio_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    messages_count: int = 0


class CaseCreate(BaseModel):
    title: str
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    case_notes: Optional[str] = None


class CaseUpdate(BaseModel):
    title: Optional[str] = None
    case_notes: Optional[str] = None
    conversation_id: Optional[str] = None


class CaseMessageCreate(BaseModel):
    text: str = Field(min_length=1)
    sender: Literal["user", "ai", "system"]


class CaseMessageRead(BaseModel):
    id: str
    case_id: str
    message_text: str
    sender: str
    timestamp: Optional[str] = None
    created_at: Optional[str] = None
    turn_index: Optional[int] = None


class CaseRead(BaseModel):
    id: str
    user_id: Optional[str] = None
    title: str
    date_created: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    transcript: Optional[str] = None
    audio_file_url: Optional[str] = None
    audio_file_name: Optional[str] = None
    duration_seconds: Optional[int] = None
    case_notes: Optional[str] = None
    conversation_id: Optional[str] = None
    messages: List[CaseMessageRead] = Field(default_factory=list)
