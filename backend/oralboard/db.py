from typing import Any, Dict, List, Optional
from uuid import uuid4
from datetime import datetime, timezone
import logging
import os

# Lightweight adapter over Supabase client. Falls back to an in-memory store when SUPABASE_URL is missing.
from supabase import create_client, Client

logger = logging.getLogger(__name__)

CASE_FIELDS = [
    "user_id",
    "title",
    "date_created",
    "transcript",
    "audio_file_url",
    "audio_file_name",
    "duration_seconds",
    "case_notes",
    "conversation_id",
]


AUDIO_BUCKET = "case-audio"
AUDIO_URL_EXPIRY = 3600


class ConversationConflictError(Exception):
    """Raised when a conversation id is already linked to another case."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def audio_object_path(case: Dict[str, Any], file_name: str) -> str:
    # <owner>/<case id>/<file name> inside the case-audio bucket
    return f"{case.get('user_id') or 'unassigned'}/{case['id']}/{file_name}"


def _is_unique_violation(exc: Exception) -> bool:
    # PostgREST surfaces unique violations as 23505 / "duplicate key value ..."
    text = str(exc).lower()
    return getattr(exc, "code", None) == "23505" or "duplicate" in text or "unique" in text


class InMemoryDB:
    def __init__(self) -> None:
        self.cases: Dict[str, Dict[str, Any]] = {}
        self.case_messages: List[Dict[str, Any]] = []
        self.audio_files: Dict[str, Any] = {}

    # Cases
    def list_cases(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        items = list(self.cases.values())
        if user_id:
            items = [c for c in items if c.get("user_id") == user_id]
        items.sort(key=lambda c: c.get("date_created") or "", reverse=True)
        return [self._with_messages(c) for c in items]

    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]:
        case = self.cases.get(str(case_id))
        if not case:
            return None
        return self._with_messages(case)

    def get_case_by_conversation_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        for case in self.cases.values():
            if conversation_id and case.get("conversation_id") == conversation_id:
                return dict(case)
        return None

    def create_case(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        self._ensure_conversation_free(fields.get("conversation_id"), None)
        now = _now_iso()
        cid = str(uuid4())
        obj: Dict[str, Any] = {k: None for k in CASE_FIELDS}
        obj.update({
            "id": cid,
            "title": fields.get("title") or "Untitled Case",
            "date_created": now,
            "transcript": "",
            "created_at": now,
            "updated_at": now,
        })
        for k in CASE_FIELDS:
            if fields.get(k) is not None:
                obj[k] = fields[k]
        self.cases[cid] = obj
        return dict(obj)

    def update_case(self, case_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        case_id = str(case_id)
        if case_id not in self.cases:
            return None
        if "conversation_id" in fields:
            self._ensure_conversation_free(fields.get("conversation_id"), case_id)
        obj = self.cases[case_id]
        for k in CASE_FIELDS:
            if k in fields:
                obj[k] = fields[k]
        obj["updated_at"] = fields.get("updated_at") or _now_iso()
        return dict(obj)

    def delete_case(self, case_id: str) -> bool:
        case_id = str(case_id)
        removed = self.cases.pop(case_id, None) is not None
        if removed:
            self.case_messages = [m for m in self.case_messages if m["case_id"] != case_id]
        return removed

    # Messages
    def list_case_messages(self, case_id: str) -> List[Dict[str, Any]]:
        rows = [dict(m) for m in self.case_messages if m["case_id"] == str(case_id)]
        rows.sort(key=lambda m: m.get("timestamp") or "")
        return rows

    def has_case_messages(self, case_id: str) -> bool:
        return any(m["case_id"] == str(case_id) for m in self.case_messages)

    def add_case_message(self, case_id: str, text: str, sender: str) -> Dict[str, Any]:
        now = _now_iso()
        row = {
            "id": str(uuid4()),
            "case_id": str(case_id),
            "message_text": text,
            "sender": sender,
            "timestamp": now,
            "created_at": now,
            "turn_index": None,
        }
        self.case_messages.append(row)
        return dict(row)

    def insert_case_messages(self, case_id: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert turn rows, skipping any (case_id, turn_index) already stored."""
        case_id = str(case_id)
        taken = {m.get("turn_index") for m in self.case_messages if m["case_id"] == case_id}
        inserted: List[Dict[str, Any]] = []
        for r in rows:
            if r.get("turn_index") is not None and r["turn_index"] in taken:
                continue
            now = _now_iso()
            row = {
                "id": str(uuid4()),
                "case_id": case_id,
                "message_text": r["message_text"],
                "sender": r["sender"],
                "timestamp": r.get("timestamp") or now,
                "created_at": now,
                "turn_index": r.get("turn_index"),
            }
            self.case_messages.append(row)
            taken.add(row["turn_index"])
            inserted.append(dict(row))
        return inserted

    # Audio
    def upload_case_audio(self, case_id: str, file_name: str, data: bytes, content_type: str = "audio/mpeg") -> Optional[str]:
        case = self.cases.get(str(case_id))
        if not case:
            return None
        path = audio_object_path(case, file_name)
        self.audio_files[path] = (data, content_type)
        self.update_case(case["id"], {"audio_file_url": path, "audio_file_name": file_name})
        return path

    def get_audio_signed_url(self, path: str, expiry: int = AUDIO_URL_EXPIRY) -> Optional[str]:
        if not path:
            return None
        if path.startswith("http"):
            return path
        if path not in self.audio_files:
            return None
        return f"memory://{AUDIO_BUCKET}/{path}?expires_in={expiry}"

    def _with_messages(self, case: Dict[str, Any]) -> Dict[str, Any]:
        obj = dict(case)
        obj["messages"] = self.list_case_messages(case["id"])
        return obj

    def _ensure_conversation_free(self, conversation_id: Optional[str], case_id: Optional[str]) -> None:
        if not conversation_id:
            return
        owner = self.get_case_by_conversation_id(conversation_id)
        if owner and owner["id"] != case_id:
            raise ConversationConflictError(f"Conversation {conversation_id} already linked to case {owner['id']}")


class SupabaseDB:
    def __init__(self, client: Client) -> None:
        self.client = client

    # Cases
    def list_cases(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.client.table("cases").select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        res = query.order("date_created", desc=True).execute()
        cases = res.data or []
        if not cases:
            return []
        ids = [c["id"] for c in cases]
        msg_res = self.client.table("case_messages").select("*").in_("case_id", ids).order("timestamp", desc=False).execute()
        by_case: Dict[str, List[Dict[str, Any]]] = {}
        for m in (msg_res.data or []):
            by_case.setdefault(m["case_id"], []).append(m)
        for c in cases:
            c["messages"] = by_case.get(c["id"], [])
        return cases

    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("cases").select("*").eq("id", str(case_id)).limit(1).execute()
        rows = res.data or []
        if not rows:
            return None
        case = rows[0]
        case["messages"] = self.list_case_messages(case["id"])
        return case

    def get_case_by_conversation_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("cases").select("*").eq("conversation_id", conversation_id).limit(1).execute()
        rows = res.data or []
        return rows[0] if rows else None

    def create_case(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = {k: fields[k] for k in CASE_FIELDS if fields.get(k) is not None}
        payload.setdefault("transcript", "")
        try:
            res = self.client.table("cases").insert(payload).execute()
        except Exception as e:
            if payload.get("conversation_id") and _is_unique_violation(e):
                raise ConversationConflictError(f"Conversation {payload['conversation_id']} already linked") from e
            raise
        return (res.data or [])[0]

    def update_case(self, case_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = {k: fields[k] for k in CASE_FIELDS if k in fields}
        payload["updated_at"] = fields.get("updated_at") or _now_iso()
        try:
            res = self.client.table("cases").update(payload).eq("id", str(case_id)).execute()
        except Exception as e:
            if payload.get("conversation_id") and _is_unique_violation(e):
                raise ConversationConflictError(f"Conversation {payload['conversation_id']} already linked") from e
            raise
        return (res.data or [None])[0]

    def delete_case(self, case_id: str) -> bool:
        # case_messages rows go with it (ON DELETE CASCADE)
        res = self.client.table("cases").delete().eq("id", str(case_id)).execute()
        return bool(res.data)

    # Messages
    def list_case_messages(self, case_id: str) -> List[Dict[str, Any]]:
        res = self.client.table("case_messages").select("*").eq("case_id", str(case_id)).order("timestamp", desc=False).execute()
        return res.data or []

    def has_case_messages(self, case_id: str) -> bool:
        res = self.client.table("case_messages").select("id").eq("case_id", str(case_id)).limit(1).execute()
        return bool(res.data)

    def add_case_message(self, case_id: str, text: str, sender: str) -> Dict[str, Any]:
        res = self.client.table("case_messages").insert({
            "case_id": str(case_id),
            "message_text": text,
            "sender": sender,
        }).execute()
        return (res.data or [])[0]

    def insert_case_messages(self, case_id: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Bulk insert turn rows; the (case_id, turn_index) unique key makes repeats a no-op."""
        if not rows:
            return []
        payload = [{
            "case_id": str(case_id),
            "message_text": r["message_text"],
            "sender": r["sender"],
            "timestamp": r.get("timestamp") or _now_iso(),
            "turn_index": r.get("turn_index"),
        } for r in rows]
        res = self.client.table("case_messages").upsert(
            payload,
            on_conflict="case_id,turn_index",
            ignore_duplicates=True,
        ).execute()
        return res.data or []

    # Audio
    def upload_case_audio(self, case_id: str, file_name: str, data: bytes, content_type: str = "audio/mpeg") -> Optional[str]:
        """Store the recording in the case-audio bucket and point the case at it."""
        res = self.client.table("cases").select("id,user_id").eq("id", str(case_id)).limit(1).execute()
        rows = res.data or []
        if not rows:
            return None
        path = audio_object_path(rows[0], file_name)
        self.client.storage.from_(AUDIO_BUCKET).upload(
            path=path,
            file=data,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        self.update_case(case_id, {"audio_file_url": path, "audio_file_name": file_name})
        return path

    def get_audio_signed_url(self, path: str, expiry: int = AUDIO_URL_EXPIRY) -> Optional[str]:
        if not path:
            return None
        # provider-hosted recordings are stored as full URLs
        if path.startswith("http"):
            return path
        res = self.client.storage.from_(AUDIO_BUCKET).create_signed_url(path, expiry)
        if isinstance(res, dict):
            return res.get("signedURL") or res.get("signedUrl")
        if isinstance(res, str):
            return res
        return None


_client: Optional[Client] = None
_db_instance: Optional[Any] = None


def get_db():
    global _client, _db_instance

    # Ensure environment variables are loaded
    from dotenv import load_dotenv
    load_dotenv()

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if url and key:
        if _client is None:
            _client = create_client(url, key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            _db_instance = SupabaseDB(_client)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        logger.info("SUPABASE_URL not configured, using in-memory case store")
        _db_instance = InMemoryDB()
    return _db_instance
