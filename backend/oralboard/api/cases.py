from fastapi import APIRouter, HTTPException, Request
from typing import List, Optional
from ..schemas.pydantic_schemas import CaseCreate, CaseRead, CaseUpdate, CaseMessageCreate, CaseMessageRead, ConversationDetail
from ..db import get_db, ConversationConflictError, AUDIO_URL_EXPIRY
from ..services.elevenlabs_client import ElevenLabsClient
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_case_or_404(db, case_id: str):
    case = db.get_case(case_id)
    if not case:
        raise HTTPException(status_code=404, detail="Case not found")
    return case


@router.get("/", response_model=List[CaseRead])
async def list_cases(user_id: Optional[str] = None):
    db = get_db()
    return db.list_cases(user_id=user_id)


@router.post("/", response_model=CaseRead, status_code=201)
async def create_case(body: CaseCreate):
    db = get_db()
    try:
        case = db.create_case(body.model_dump(exclude_none=True))
    except ConversationConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"Created case {case['id']}")
    case.setdefault("messages", [])
    return case


@router.get("/{case_id}", response_model=CaseRead)
async def get_case(case_id: str):
    return _get_case_or_404(get_db(), case_id)


@router.patch("/{case_id}", response_model=CaseRead)
async def update_case(case_id: str, body: CaseUpdate):
    db = get_db()
    case = _get_case_or_404(db, case_id)
    fields = body.model_dump(exclude_none=True)
    new_conversation = fields.get("conversation_id")
    if new_conversation and case.get("conversation_id") and case["conversation_id"] != new_conversation:
        raise HTTPException(status_code=409, detail="Case is already linked to a different conversation")
    if not fields:
        return case
    try:
        db.update_case(case_id, fields)
    except ConversationConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if new_conversation and not case.get("conversation_id"):
        logger.info(f"Linked case {case_id} to conversation {new_conversation}")
    return db.get_case(case_id)


@router.delete("/{case_id}")
async def delete_case(case_id: str):
    db = get_db()
    if not db.delete_case(case_id):
        raise HTTPException(status_code=404, detail="Case not found")
    return {"deleted": True}


@router.get("/{case_id}/messages", response_model=List[CaseMessageRead])
async def list_messages(case_id: str):
    db = get_db()
    _get_case_or_404(db, case_id)
    return db.list_case_messages(case_id)


@router.post("/{case_id}/messages", response_model=CaseMessageRead, status_code=201)
async def add_message(case_id: str, body: CaseMessageCreate):
    db = get_db()
    _get_case_or_404(db, case_id)
    return db.add_case_message(case_id, body.text, body.sender)


@router.post("/{case_id}/audio", status_code=201)
async def upload_audio(case_id: str, file_name: str, request: Request):
    # raw body upload; content-type is passed through to storage
    if not file_name or "/" in file_name or "\\" in file_name:
        raise HTTPException(status_code=422, detail="Invalid file_name")
    data = await request.body()
    if not data:
        raise HTTPException(status_code=422, detail="Empty audio upload")
    db = get_db()
    _get_case_or_404(db, case_id)
    content_type = request.headers.get("content-type") or "application/octet-stream"
    path = db.upload_case_audio(case_id, file_name, data, content_type)
    if path is None:
        raise HTTPException(status_code=404, detail="Case not found")
    logger.info(f"Uploaded audio for case {case_id} to {path}")
    return {"path": path, "audio_file_name": file_name}


@router.get("/{case_id}/audio")
async def get_audio_url(case_id: str):
    db = get_db()
    case = _get_case_or_404(db, case_id)
    path = case.get("audio_file_url")
    if not path:
        raise HTTPException(status_code=404, detail="Case has no audio")
    url = db.get_audio_signed_url(path, AUDIO_URL_EXPIRY)
    if not url:
        raise HTTPException(status_code=404, detail="Audio file not available")
    return {"url": url, "expires_in": AUDIO_URL_EXPIRY}


@router.get("/{case_id}/conversation", response_model=ConversationDetail)
async def get_case_conversation(case_id: str):
    case = _get_case_or_404(get_db(), case_id)
    conversation_id = case.get("conversation_id")
    if not conversation_id:
        raise HTTPException(status_code=404, detail="Case is not linked to a conversation")
    provider = ElevenLabsClient()
    if not provider.configured:
        raise HTTPException(status_code=503, detail="ElevenLabs API key not configured")
    detail = await provider.get_conversation(conversation_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Conversation not available from provider")
    return detail
