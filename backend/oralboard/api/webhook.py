from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError
from typing import Optional
from ..db import get_db
from ..schemas.pydantic_schemas import CONVERSATION_ENDED, ConversationNotification
from ..services.elevenlabs_client import ElevenLabsClient
from ..services.case_reconciler import reconcile_conversation
import os, hmac, hashlib, json
import logging

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "x-elevenlabs-signature"
SIGNATURE_PREFIX = "sha256="

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def verify_signature(request_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    try:
        received = signature.strip()
        if received.startswith(SIGNATURE_PREFIX):
            received = received[len(SIGNATURE_PREFIX):]
        digest = hmac.new(secret.encode(), request_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(digest, received)
    except Exception as e:
        logger.error(f"Error verifying signature: {str(e)}")
        return False


def _json(body: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=body, status_code=status_code, headers=CORS_HEADERS)


@router.options("/webhook")
async def webhook_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.api_route("/webhook", methods=["GET", "HEAD", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def webhook_method_not_allowed():
    return PlainTextResponse("Method not allowed", status_code=405, headers=CORS_HEADERS)


@router.post("/webhook")
async def elevenlabs_webhook(request: Request):
    logger.info("ElevenLabs conversation webhook received")

    body = await request.body()
    sig = request.headers.get(SIGNATURE_HEADER)

    if not sig:
        logger.warning("Missing signature header")
        return PlainTextResponse("Missing signature", status_code=401, headers=CORS_HEADERS)

    if not verify_signature(body, sig, os.getenv("ELEVENLABS_WEBHOOK_SECRET")):
        logger.warning("Webhook signature verification failed")
        return PlainTextResponse("Invalid signature", status_code=401, headers=CORS_HEADERS)

    try:
        try:
            notification = ConversationNotification.model_validate(json.loads(body.decode("utf-8")))
        except (ValueError, ValidationError) as e:
            raise ValueError(f"Malformed webhook payload: {str(e)}") from e
        conversation_id = notification.conversation_id
        logger.info(f"Webhook event received: {notification.status} for conversation {conversation_id}")

        if notification.status != CONVERSATION_ENDED:
            logger.info(f"Conversation {conversation_id} status: {notification.status}, skipping transcript processing")
            return _json({
                "success": True,
                "message": "Status not conversation_ended, skipping processing",
                "conversation_id": conversation_id,
            })

        if not conversation_id:
            raise ValueError("Malformed webhook payload: conversation_id is required for conversation_ended")

        provider = ElevenLabsClient()
        if not provider.configured:
            logger.error("ELEVENLABS_API_KEY not found in environment")
            raise RuntimeError("Missing ElevenLabs API key")

        detail = await provider.get_conversation(conversation_id)
        result = reconcile_conversation(get_db(), notification, detail)
        logger.info(f"Successfully processed conversation completion for: {conversation_id}")

        body_out = {
            "success": True,
            "message": "New case created with conversation data" if result.created else "Conversation transcript processed and stored",
            "conversation_id": conversation_id,
            "case_id": result.case_id,
            "transcript_length": len(result.transcript),
            "messages_count": result.messages_count,
        }
        if result.audio_url:
            body_out["audio_url"] = result.audio_url
        if result.duration_seconds is not None:
            body_out["duration_seconds"] = result.duration_seconds
        return _json(body_out)
    except Exception as e:
        logger.exception(f"Error processing ElevenLabs conversation webhook: {str(e)}")
        return _json({"success": False, "error": str(e)}, status_code=500)
