"""会话与摘要的领域模型。

本模块定义：
- Conversation：只追加的消息序列及其标题。
- ConversationSummary：覆盖历史连续前缀的摘要。
- ConversationStore：会话持久化协议，具体实现见 infrastructure/storage。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, List, Optional, Protocol
from uuid import uuid4

from .models import Message


DEFAULT_TITLE = "New Conversation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    """一段会话。messages 只追加，不修改、不删除。"""

    id: str = field(default_factory=lambda: f"c-{uuid4().hex}")
    title: str = DEFAULT_TITLE
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ConversationSummary:
    """会话摘要。

    summarized_message_ids 按会话消息顺序排列时总是构成历史的连续前缀；
    新摘要覆盖旧摘要的全部 id，旧摘要被取代而不是被修改。
    """

    conversation_id: str
    content: str
    summarized_message_ids: FrozenSet[str]
    token_count: int = 0
    id: str = field(default_factory=lambda: f"s-{uuid4().hex}")
    created_at: datetime = field(default_factory=_utcnow)

    def covers(self, message: Message) -> bool:
        return message.id in self.summarized_message_ids


class ConversationStore(Protocol):
    def save_conversation(self, conversation: Conversation) -> None:
        ...

    def load_conversation(self, conversation_id: str) -> Conversation:
        ...

    def list_conversations(self) -> List[Conversation]:
        ...

    def delete_conversation(self, conversation_id: str) -> None:
        ...

    def save_summary(self, summary: ConversationSummary) -> None:
        ...

    def latest_summary(self, conversation_id: str) -> Optional[ConversationSummary]:
        ...
