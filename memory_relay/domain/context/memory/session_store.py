from typing import Optional
import asyncio
import hashlib
import os
import re
import tempfile

import structlog
from pydantic import ValidationError

from memory_relay.domain.models.session_state import Session

logger = structlog.get_logger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class ConversationStore:
    """File-backed store holding one JSON record per conversation id"""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def record_path(self, conversation_id: str) -> str:
        """Path of the record for an id; unsafe ids are hashed"""

        if _SAFE_ID.match(conversation_id):
            name = conversation_id
        else:
            name = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()
        return os.path.join(self.base_dir, f"{name}.json")

    async def load(self, conversation_id: str) -> Session:
        """Load a session, falling back to an empty one"""

        return await asyncio.to_thread(self._load_sync, conversation_id)

    async def save(self, conversation_id: str, session: Session) -> None:
        """Persist the full session record atomically"""

        await asyncio.to_thread(self._save_sync, conversation_id, session)

    async def delete(self, conversation_id: str) -> bool:
        """Delete a session record; returns whether one existed"""

        return await asyncio.to_thread(self._delete_sync, conversation_id)

    def _load_sync(self, conversation_id: str) -> Session:
        path = self.record_path(conversation_id)
        raw: Optional[str] = None

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return Session(id=conversation_id)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Unreadable session record", conversation_id=conversation_id, error=str(e))
            return Session(id=conversation_id)

        try:
            session = Session.model_validate_json(raw)
        except ValidationError as e:
            # Fail closed: a corrupt record behaves like a fresh conversation
            logger.warning(
                "Corrupt session record, using empty session",
                conversation_id=conversation_id,
                errors=e.error_count()
            )
            return Session(id=conversation_id)

        session.id = conversation_id
        return session

    def _save_sync(self, conversation_id: str, session: Session) -> None:
        path = self.record_path(conversation_id)
        session.id = conversation_id
        payload = session.model_dump_json(indent=2)

        # Write to a sibling temp file, then swap it in with a single rename
        fd, tmp_path = tempfile.mkstemp(dir=self.base_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def _delete_sync(self, conversation_id: str) -> bool:
        try:
            os.unlink(self.record_path(conversation_id))
            return True
        except FileNotFoundError:
            return False
