from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from ..models import PersistedMessage


# For MVP: in-memory; replace with a database keyed by user
class SessionStore:
    def __init__(self):
        self._sessions: Dict[str, dict] = {}

    def create(self, username: str, agent: Optional[str] = None, title: Optional[str] = None) -> str:
        sid = uuid4().hex
        self._sessions[sid] = {
            "username": username,
            "agent": agent,
            "title": title,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "messages": [],
        }
        return sid

    def list(self, username: str) -> List[dict]:
        """Sessions for a user, newest first."""
        mine = [(sid, s) for sid, s in self._sessions.items() if s["username"] == username]
        mine.sort(key=lambda item: item[1]["createdAt"], reverse=True)
        return [
            {
                "id": sid,
                "agent": s["agent"],
                "title": s["title"],
                "createdAt": s["createdAt"],
                "messageCount": len(s["messages"]),
            }
            for sid, s in mine
        ]

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def rename(self, session_id: str, title: str):
        self._get(session_id)["title"] = title

    def append(self, session_id: str, message: PersistedMessage):
        self._get(session_id)["messages"].append(message)

    def messages(self, session_id: str) -> List[dict]:
        return [
            {"id": f"{session_id}-{i}", **m.to_wire()}
            for i, m in enumerate(self._get(session_id)["messages"])
        ]

    def _get(self, session_id: str) -> dict:
        if session_id not in self._sessions:
            raise KeyError(f"Unknown session_id: {session_id}")
        return self._sessions[session_id]
