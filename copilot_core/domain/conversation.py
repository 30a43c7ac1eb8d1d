from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import ChatMessage, Role


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    meta: Dict[str, Any]


@dataclass
class MessageRecord:
    """持久化的一行消息。

    流式输出时每个增量写一行 is_final=False（chunk_index 递增），
    结束后再写一行 is_final=True 的完整文本。
    """

    id: str
    conversation_id: str
    role: Role
    content: str
    is_final: bool
    created_at: datetime
    chunk_index: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)


class SessionStore(Protocol):
    """按会话 ID 保存内存历史。

    - get/append/clear 均为同步调用，在事件循环内天然原子。
    - lock(key) 返回该会话专属的 asyncio.Lock，用于串行化“读-算-写”。
    """

    def get(self, key: str) -> List[ChatMessage]:
        ...

    def append(self, key: str, messages: Sequence[ChatMessage], limit: int) -> List[ChatMessage]:
        ...

    def clear(self, key: str) -> None:
        ...

    def lock(self, key: str):
        ...


class StreamSink(Protocol):
    """流式输出的旁路接收者，持久化与网络发送解耦。"""

    async def on_chunk(self, text: str) -> None:
        ...

    async def on_complete(self, full_text: str) -> None:
        ...

    async def on_error(self, error: Exception) -> None:
        ...


class ConversationLog(Protocol):
    def create_conversation(self, meta: Dict[str, Any]) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    def list_conversations(self) -> List[Conversation]:
        ...

    def add_message(self, message: MessageRecord) -> None:
        ...

    def list_messages(self, conversation_id: str, final_only: bool = False) -> List[MessageRecord]:
        ...

    def delete_conversation(self, conversation_id: str) -> None:
        ...
