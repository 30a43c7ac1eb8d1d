import asyncio
from typing import Dict, List, Sequence

from copilot_core.domain.conversation import SessionStore
from copilot_core.domain.models import ChatMessage


class InMemorySessionStore(SessionStore):
    """进程内会话历史。

    每个会话 ID 对应一段消息列表，首次访问时惰性创建，进程结束或 clear 时消失。
    append 在事件循环内一次完成“读-拼接-截断-写回”，不会丢失并发追加；
    需要跨 await 保持一致性的调用方使用 lock(key)。
    """

    def __init__(self) -> None:
        self._histories: Dict[str, List[ChatMessage]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> List[ChatMessage]:
        return list(self._histories.setdefault(key, []))

    def append(self, key: str, messages: Sequence[ChatMessage], limit: int) -> List[ChatMessage]:
        history = self._histories.get(key, []) + list(messages)
        if limit > 0 and len(history) > limit:
            # 只从头部（最旧的消息）开始丢弃
            history = history[-limit:]
        self._histories[key] = history
        return list(history)

    def clear(self, key: str) -> None:
        self._histories.pop(key, None)

    def clear_all(self) -> None:
        self._histories.clear()

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock
