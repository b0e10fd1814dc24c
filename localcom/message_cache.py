"""
On-disk chat history.

Records are kept in a single JSON list, in first-insertion order, and upserted
by id. The peer connector reads the whole list once at startup and appends
after every sent or received message.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"

_id_lock = threading.Lock()
_last_id = 0


def next_record_id() -> int:
    """Millisecond wall-clock id, bumped so ids never repeat within a process."""
    global _last_id
    with _id_lock:
        _last_id = max(int(time.time() * 1000), _last_id + 1)
        return _last_id


class ChatRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    text: str
    sender: Literal["local", "remote"]
    sendTime: str = ""

    @classmethod
    def create(cls, text: str, sender: str, now: Optional[datetime] = None) -> "ChatRecord":
        now = now or datetime.now()
        return cls(id=next_record_id(), text=text, sender=sender, sendTime=now.strftime("%H:%M:%S"))


class MessageCache:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._records: Dict[int, ChatRecord] = {}
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            for item in raw:
                record = ChatRecord.model_validate(item)
                self._records.setdefault(record.id, record)
            logger.info("Loaded %d chat records from %s", len(self._records), self.path)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Ignoring unreadable chat cache %s: %s", self.path, e)
            self._records = {}

    def _save(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".localcom-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump([r.model_dump() for r in self._records.values()], f, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def append(self, record: ChatRecord) -> None:
        """Insert or replace the record with this id; the first insertion keeps its slot."""
        with self._lock:
            self._records[record.id] = record
            self._save()

    def read_all(self) -> List[ChatRecord]:
        with self._lock:
            return list(self._records.values())

    def __len__(self):
        with self._lock:
            return len(self._records)
