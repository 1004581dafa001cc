import os
import httpx
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
import logging

from ..schemas.pydantic_schemas import ConversationDetail, ConversationTurn

# Set up logger
logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.elevenlabs.io"

# Candidate keys per logical field, probed in order
ROLE_KEYS = ("role", "sender")
CONTENT_KEYS = ("content", "message", "text")
TIMESTAMP_KEYS = ("timestamp", "created_at")
OFFSET_KEYS = ("time_in_call_secs",)


def _first_present(d: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = d.get(key)
        if value is not None and value != "":
            return value
    return None


def _normalize_role(raw: Any) -> str:
    return "user" if str(raw or "").strip().lower() == "user" else "assistant"


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_turns(raw_turns: List[Any]) -> List[ConversationTurn]:
    turns: List[ConversationTurn] = []
    for item in raw_turns:
        if not isinstance(item, dict):
            continue
        content = _first_present(item, CONTENT_KEYS)
        if content is None or not str(content).strip():
            continue
        timestamp = _first_present(item, TIMESTAMP_KEYS)
        turns.append(ConversationTurn(
            index=len(turns),
            role=_normalize_role(_first_present(item, ROLE_KEYS)),
            content=str(content).strip(),
            timestamp=str(timestamp) if timestamp is not None else None,
            offset_seconds=_to_float(_first_present(item, OFFSET_KEYS)),
        ))
    return turns


def transcript_from_turns(turns: List[ConversationTurn]) -> str:
    return "\n".join(f"{t.role}: {t.content}" for t in turns)


def normalize_conversation_detail(conversation_id: str, data: Dict[str, Any], base_url: str = DEFAULT_BASE_URL) -> ConversationDetail:
    """Map a loosely shaped provider conversation payload onto ConversationDetail.

    The provider has sent the transcript both as a plain string and as a list of
    turn objects, and turns themselves have used role/sender, content/message and
    timestamp/created_at interchangeably.
    """
    raw_transcript = data.get("transcript")
    raw_turns: List[Any] = []
    if isinstance(data.get("messages"), list):
        raw_turns = data["messages"]
    elif isinstance(raw_transcript, list):
        raw_turns = raw_transcript
    turns = normalize_turns(raw_turns)

    if isinstance(raw_transcript, str) and raw_transcript:
        transcript = raw_transcript
    else:
        transcript = transcript_from_turns(turns)

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    audio_url = data.get("audio_url") or data.get("recording_url")
    if not audio_url and data.get("has_audio"):
        audio_url = f"{base_url}/v1/convai/conversations/{conversation_id}/audio"

    duration = _to_int(data.get("duration_seconds"))
    if duration is None:
        duration = _to_int(metadata.get("call_duration_secs"))

    started_at = None
    start_unix = _to_float(metadata.get("start_time_unix_secs"))
    if start_unix is not None:
        started_at = datetime.fromtimestamp(start_unix, tz=timezone.utc).isoformat()

    return ConversationDetail(
        conversation_id=conversation_id,
        transcript=transcript,
        audio_url=audio_url,
        duration_seconds=duration,
        started_at=started_at,
        turns=turns,
    )


class ElevenLabsClient:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("ELEVENLABS_API_KEY")
        self.base_url = (base_url or os.getenv("ELEVENLABS_API_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationDetail]:
        """Fetch the authoritative conversation record. Returns None on any provider failure."""
        logger.info(f"Fetching conversation detail for {conversation_id}")

        headers = {
            "xi-api-key": self.api_key or "",
            "Content-Type": "application/json"
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.base_url}/v1/convai/conversations/{conversation_id}",
                    headers=headers,
                )
        except httpx.RequestError as e:
            logger.error(f"ElevenLabs request error for conversation {conversation_id}: {str(e)}")
            return None

        if not response.is_success:
            logger.error(f"Failed to fetch conversation {conversation_id}: {response.status_code} {response.reason_phrase}")
            return None

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"ElevenLabs returned a non-JSON body for conversation {conversation_id}: {str(e)}")
            return None
        if not isinstance(data, dict):
            logger.error(f"Unexpected conversation payload type for {conversation_id}: {type(data).__name__}")
            return None

        detail = normalize_conversation_detail(conversation_id, data, base_url=self.base_url)
        logger.info(f"Conversation {conversation_id}: {len(detail.turns)} turns, transcript length {len(detail.transcript)}")
        return detail
