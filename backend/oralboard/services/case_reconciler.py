from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
import logging
import os

from ..db import ConversationConflictError
from ..schemas.pydantic_schemas import ConversationDetail, ConversationNotification, ConversationTurn, ReconcileResult

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 60
DEFAULT_CASE_OWNER = "system"


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def build_case_title(transcript: str, now: Optional[datetime] = None) -> str:
    """Title from the first transcript line, or a timestamped fallback when there is nothing to quote."""
    for line in (transcript or "").splitlines():
        text = line.strip()
        if not text:
            continue
        head, sep, rest = text.partition(": ")
        if sep and head.lower() in ("user", "assistant", "agent", "ai"):
            text = rest.strip()
        if not text:
            continue
        if len(text) > TITLE_MAX_LENGTH:
            text = text[:TITLE_MAX_LENGTH - 3].rstrip() + "..."
        return text
    now = now or datetime.now(timezone.utc)
    return f"Voice Conversation {now.isoformat()}"


def resolve_case_owner(notification: ConversationNotification) -> str:
    if notification.user_id:
        return notification.user_id
    meta_user = (notification.metadata or {}).get("user_id")
    if meta_user:
        return str(meta_user)
    return os.getenv("WEBHOOK_CASE_OWNER_ID") or DEFAULT_CASE_OWNER


def _turn_timestamp(turn: ConversationTurn, started_at: Optional[datetime]) -> Optional[str]:
    parsed = _parse_iso(turn.timestamp)
    if parsed:
        return parsed.isoformat()
    if turn.offset_seconds is not None and started_at:
        return (started_at + timedelta(seconds=turn.offset_seconds)).isoformat()
    return None


def turns_to_message_rows(turns: List[ConversationTurn], started_at: Optional[datetime] = None) -> List[Dict[str, Any]]:
    rows = []
    for turn in turns:
        rows.append({
            "message_text": turn.content,
            "sender": "user" if turn.role == "user" else "ai",
            "timestamp": _turn_timestamp(turn, started_at),
            "turn_index": turn.index,
        })
    return rows


def reconcile_conversation(db, notification: ConversationNotification, detail: Optional[ConversationDetail]) -> ReconcileResult:
    conversation_id = notification.conversation_id
    if detail is None:
        logger.warning(f"No provider detail for {conversation_id}, falling back to webhook transcript")

    fetched_transcript = detail.transcript if detail else None
    audio_url = (detail.audio_url if detail else None) or notification.audio_url
    duration = detail.duration_seconds if detail else None
    turns = detail.turns if detail else []
    # offsets are only anchored to the provider's own start time; the webhook created_at may be the end time
    started_at = _parse_iso(detail.started_at if detail else None)

    created = False
    case = db.get_case_by_conversation_id(conversation_id)
    if not case:
        transcript = fetched_transcript or notification.transcript or ""
        fields = {
            "title": build_case_title(transcript),
            "user_id": resolve_case_owner(notification),
            "conversation_id": conversation_id,
            "transcript": transcript,
            "audio_file_url": audio_url,
            "duration_seconds": duration,
        }
        try:
            case = db.create_case(fields)
            created = True
            logger.info(f"Created case {case['id']} for conversation {conversation_id}")
        except ConversationConflictError:
            # A concurrent delivery created it first; continue as an update
            case = db.get_case_by_conversation_id(conversation_id)
            if not case:
                raise
            logger.info(f"Case for conversation {conversation_id} appeared concurrently, updating {case['id']}")

    case_id = case["id"]
    if created:
        inserted = db.insert_case_messages(case_id, turns_to_message_rows(turns, started_at)) if turns else []
    else:
        transcript = fetched_transcript or notification.transcript or case.get("transcript") or ""
        updates: Dict[str, Any] = {
            "transcript": transcript,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if audio_url:
            updates["audio_file_url"] = audio_url
        if duration is not None:
            updates["duration_seconds"] = duration
        logger.info(f"Updating case {case_id} with transcript length: {len(transcript)}")
        db.update_case(case_id, updates)

        inserted = []
        if turns and not db.has_case_messages(case_id):
            inserted = db.insert_case_messages(case_id, turns_to_message_rows(turns, started_at))
        elif turns:
            logger.info(f"Case {case_id} already has messages, skipping turn insert")

    return ReconcileResult(
        case_id=str(case_id),
        created=created,
        transcript=transcript,
        audio_url=audio_url,
        duration_seconds=duration,
        messages_count=len(inserted),
    )
