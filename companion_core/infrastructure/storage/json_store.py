import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from companion_core.config.settings import settings
from companion_core.domain.conversation import Conversation, ConversationSummary
from companion_core.domain.exceptions import BusinessError, ConversationNotFoundError
from companion_core.domain.models import Message


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(value: Any) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore:
    """基于文件系统的会话存储。

    目录结构：<root>/conversations/<conversation_id>/
    - meta.json: 会话元数据，通过临时文件 + os.replace 原子写入。
    - messages.jsonl: 每行一条消息，按会话顺序排列。
    - summaries.jsonl: 每行一条摘要，最后一行是最新摘要。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def save_conversation(self, conversation: Conversation) -> None:
        cdir = self._conv_root / conversation.id
        try:
            cdir.mkdir(parents=True, exist_ok=True)
            lines = [json.dumps(self._message_to_dict(m), ensure_ascii=False) for m in conversation.messages]
            self._atomic_write(cdir / "messages.jsonl", "".join(line + "\n" for line in lines))
        except BusinessError:
            raise
        except (OSError, TypeError, ValueError) as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        self._write_meta(cdir, conversation)

    def load_conversation(self, conversation_id: str) -> Conversation:
        cdir = self._conv_root / conversation_id
        meta_path = cdir / "meta.json"
        if not meta_path.exists():
            raise ConversationNotFoundError(conversation_id)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            conv = Conversation(
                id=data["id"],
                title=data.get("title") or "",
                created_at=_parse_dt(data["created_at"]),
            )
        except (OSError, KeyError, ValueError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        conv.messages = self._read_messages(cdir / "messages.jsonl")
        return conv

    def list_conversations(self) -> List[Conversation]:
        """列出全部会话，损坏的会话目录直接跳过，按创建时间排序。"""

        items: List[Conversation] = []
        for cdir in sorted(self._conv_root.glob("*/")):
            if not (cdir / "meta.json").exists():
                continue
            try:
                items.append(self.load_conversation(cdir.name))
            except BusinessError:
                continue
        items.sort(key=lambda c: c.created_at)
        return items

    def delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise ConversationNotFoundError(conversation_id)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def save_summary(self, summary: ConversationSummary) -> None:
        cdir = self._conv_root / summary.conversation_id
        payload = {
            "id": summary.id,
            "conversation_id": summary.conversation_id,
            "content": summary.content,
            "summarized_message_ids": sorted(summary.summarized_message_ids),
            "token_count": summary.token_count,
            "created_at": _iso(summary.created_at),
        }
        try:
            cdir.mkdir(parents=True, exist_ok=True)
            with (cdir / "summaries.jsonl").open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def latest_summary(self, conversation_id: str) -> Optional[ConversationSummary]:
        path = self._conv_root / conversation_id / "summaries.jsonl"
        if not path.exists():
            return None
        latest: Optional[ConversationSummary] = None
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        for line in text.splitlines():
            try:
                data = json.loads(line)
                latest = ConversationSummary(
                    id=data["id"],
                    conversation_id=data["conversation_id"],
                    content=data.get("content") or "",
                    summarized_message_ids=frozenset(data.get("summarized_message_ids") or ()),
                    token_count=int(data.get("token_count", 0)),
                    created_at=_parse_dt(data["created_at"]),
                )
            except (KeyError, TypeError, ValueError):
                continue
        return latest

    def _read_messages(self, path: Path) -> List[Message]:
        items: List[Message] = []
        if not path.exists():
            return items
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        for line in text.splitlines():
            try:
                data = json.loads(line)
                items.append(
                    Message(
                        id=data["id"],
                        role=data["role"],
                        content=data.get("content") or "",
                        timestamp=_parse_dt(data["timestamp"]),
                    )
                )
            except (KeyError, ValueError):
                continue
        return items

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        obj = {
            "id": conv.id,
            "title": conv.title,
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(datetime.now(timezone.utc)),
            "message_count": len(conv.messages),
        }
        try:
            self._atomic_write(cdir / "meta.json", json.dumps(obj, ensure_ascii=False))
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _atomic_write(path: Path, text: str) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.tmp")
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, path)

    @staticmethod
    def _message_to_dict(message: Message) -> Dict[str, Any]:
        return {
            "id": message.id,
            "role": message.role,
            "content": message.content,
            "timestamp": _iso(message.timestamp),
        }
