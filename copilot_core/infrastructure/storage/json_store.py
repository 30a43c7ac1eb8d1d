import json
import logging
import os
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from copilot_core.config.settings import settings
from copilot_core.domain.conversation import Conversation, ConversationLog, MessageRecord, StreamSink
from copilot_core.domain.exceptions import BusinessError, NotFound
from copilot_core.infrastructure.logging.logger import logger


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonConversationLog(ConversationLog):
    """会话持久化日志：每个会话一个目录，meta.json + messages.jsonl（一行一条消息）。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def create_conversation(self, meta: Dict[str, Any], conversation_id: Optional[str] = None) -> Conversation:
        cid = conversation_id or f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        cdir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        meta_copy = dict(meta)
        title = meta_copy.pop("title", "")
        conv = Conversation(id=cid, title=title, created_at=now, updated_at=now, meta=meta_copy)
        self._write_meta(cdir, conv)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation:
        meta_path = self._conv_root / conversation_id / "meta.json"
        if not meta_path.exists():
            raise NotFound(code="CONVERSATION_NOT_FOUND", message=f"Conversation not found: {conversation_id}")
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return self._to_conversation(data)

    def ensure_conversation(self, conversation_id: str, meta: Optional[Dict[str, Any]] = None) -> Conversation:
        if (self._conv_root / conversation_id / "meta.json").exists():
            return self.get_conversation(conversation_id)
        return self.create_conversation(meta or {}, conversation_id=conversation_id)

    def list_conversations(self) -> List[Conversation]:
        items: List[Conversation] = []
        for cdir in sorted(self._conv_root.glob("*/")):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                items.append(self._to_conversation(json.loads(meta_path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as e:
                logger.log(
                    logging.WARNING,
                    "Skipping unreadable conversation",
                    extra={"extra": {"path": str(meta_path), "error": str(e)}},
                )
        return items

    def add_message(self, message: MessageRecord) -> None:
        cdir = self._conv_root / message.conversation_id
        conv = self.get_conversation(message.conversation_id)
        payload = asdict(message)
        payload["created_at"] = _iso(message.created_at)
        try:
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        conv.updated_at = datetime.now(timezone.utc)
        for key in ("provider", "model"):
            if message.meta.get(key):
                conv.meta[key] = message.meta[key]
        self._write_meta(cdir, conv)

    def list_messages(self, conversation_id: str, final_only: bool = False) -> List[MessageRecord]:
        """按写入顺序返回消息；final_only=True 时只返回完整消息，跳过流式片段。"""

        msgs_path = self._conv_root / conversation_id / "messages.jsonl"
        items: List[MessageRecord] = []
        if not msgs_path.exists():
            return items
        for line in msgs_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                record = self._to_message(json.loads(line))
            except (ValueError, KeyError):
                continue
            if final_only and not record.is_final:
                continue
            items.append(record)
        return items

    def delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise NotFound(code="CONVERSATION_NOT_FOUND", message=f"Conversation not found: {conversation_id}")
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": conv.id,
            "title": conv.title,
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(conv.updated_at),
            "meta": conv.meta,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            title=data.get("title") or "",
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            meta=data.get("meta") or {},
        )

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> MessageRecord:
        chunk_index = data.get("chunk_index")
        return MessageRecord(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data.get("content") or "",
            is_final=bool(data.get("is_final", True)),
            created_at=_parse_dt(data["created_at"]),
            chunk_index=int(chunk_index) if chunk_index is not None else None,
            meta=data.get("meta") or {},
        )


class ConversationLogSink(StreamSink):
    """把流式输出逐块写入会话日志。

    - 每个增量写一行 is_final=False，chunk_index 从 0 递增；
      连接中途断开时，已写入的 N 个片段仍然保留。
    - 完成时写一行 is_final=True 的完整文本（文本为空则不写）。
    - 出错只记录日志，错误本身由调用方处理。
    """

    def __init__(self, log: ConversationLog, conversation_id: str, meta: Optional[Dict[str, Any]] = None):
        self._log = log
        self._conversation_id = conversation_id
        self._meta = dict(meta or {})
        self._next_index = 0

    @property
    def chunks_written(self) -> int:
        return self._next_index

    async def on_chunk(self, text: str) -> None:
        self._log.add_message(self._record(text, is_final=False, chunk_index=self._next_index))
        self._next_index += 1

    async def on_complete(self, full_text: str) -> None:
        if not full_text.strip():
            return
        self._log.add_message(self._record(full_text, is_final=True))

    async def on_error(self, error: Exception) -> None:
        logger.log(
            logging.ERROR,
            "Streaming response failed",
            extra={
                "extra": {
                    "conversation_id": self._conversation_id,
                    "chunks_written": self._next_index,
                    "error": str(error),
                }
            },
        )

    def _record(self, content: str, is_final: bool, chunk_index: Optional[int] = None) -> MessageRecord:
        return MessageRecord(
            id=f"m-{uuid4().hex}",
            conversation_id=self._conversation_id,
            role="assistant",
            content=content,
            is_final=is_final,
            created_at=datetime.now(timezone.utc),
            chunk_index=chunk_index,
            meta=dict(self._meta),
        )
