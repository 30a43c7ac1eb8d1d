"""对外 API 服务模块。

提供简化的异步函数接口供上层 HTTP 服务调用；
路由、SSE 帧格式与鉴权由上层负责，这里只返回普通 dict / 迭代器。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from copilot_core.agents.conversation_agent import AgentStream, ConversationAgent, RespondOptions
from copilot_core.config.settings import settings
from copilot_core.domain.conversation import MessageRecord
from copilot_core.domain.exceptions import ValidationError
from copilot_core.domain.models import ChatMessage, ImagePart, TextPart
from copilot_core.infrastructure.logging.logger import logger
from copilot_core.infrastructure.storage.json_store import ConversationLogSink, JsonConversationLog
from copilot_core.knowledge.base import KnowledgeStore
from copilot_core.knowledge.local_store import LocalKnowledgeBase
from copilot_core.knowledge.supabase_store import SupabaseKnowledgeBase
from copilot_core.providers.registry import ProviderRegistry
from copilot_core.services.image_analysis import ImageAnalysisService


_agent: Optional[ConversationAgent] = None
_log: Optional[JsonConversationLog] = None


def build_knowledge_store(registry: ProviderRegistry, settings_obj=None) -> KnowledgeStore:
    """按 knowledge_base_type 选择知识库后端。

    supabase 后端会挑选第一个已配置且支持图片的 Provider 用于图片分析；
    没有可用 Provider 时图片分析功能不可用，但检索照常工作。
    """

    cfg = settings_obj or settings
    if cfg.knowledge_base_type == "supabase":
        analysis = None
        for caps in registry.list_configured():
            if caps.supports_images:
                analysis = ImageAnalysisService(registry.resolve(caps.name))
                break
        return SupabaseKnowledgeBase(settings=cfg, image_analysis=analysis)
    return LocalKnowledgeBase(settings=cfg)


def get_default_agent() -> ConversationAgent:
    """获取默认的 ConversationAgent 实例（单例）。"""
    global _agent
    if _agent is None:
        registry = ProviderRegistry(settings)
        _agent = ConversationAgent(knowledge=build_knowledge_store(registry), registry=registry)
    return _agent


def get_conversation_log() -> JsonConversationLog:
    global _log
    if _log is None:
        _log = JsonConversationLog(root=settings.storage_root)
    return _log


def message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    if isinstance(message.content, str):
        return {"role": message.role, "content": message.content}
    parts: List[Dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            parts.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            parts.append({"type": "image_url", "image_url": {"url": part.url}})
    return {"role": message.role, "content": parts}


def _require_message(message: Any) -> None:
    if message is None or (isinstance(message, (str, list, tuple)) and not message):
        raise ValidationError(code="MESSAGE_REQUIRED", message="Message is required")


def _record_user_message(conversation_id: str, message: Any, meta: Dict[str, Any]) -> None:
    log = get_conversation_log()
    log.ensure_conversation(conversation_id, meta)
    content = message if isinstance(message, str) else " ".join(
        p.get("text") or "" for p in message if isinstance(p, dict) and p.get("type") == "text"
    )
    log.add_message(
        MessageRecord(
            id=f"m-{uuid4().hex}",
            conversation_id=conversation_id,
            role="user",
            content=content,
            is_final=True,
            created_at=datetime.now(timezone.utc),
            meta=dict(meta),
        )
    )


async def run_chat(
    message: Any,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    session_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """运行一轮阻塞式对话。

    Args:
        message: 字符串或多模态分段列表
        session_id: 会话ID（可选，不提供则生成新的 uuid4）
        conversation_id: 持久化会话ID（可选，提供时把本轮问答写入会话日志）

    Returns:
        包含回答、usage、模型、Provider、相关文档与 session_id 的字典
    """
    _require_message(message)
    session_id = session_id or str(uuid4())
    agent = get_default_agent()
    try:
        result = await agent.respond(
            message,
            RespondOptions(
                provider=provider,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                session_id=session_id,
            ),
        )
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {"session_id": session_id, "error": str(e)}})
        raise
    completion = result.completion
    if conversation_id:
        meta = {"provider": completion.provider, "model": completion.model}
        _record_user_message(conversation_id, message, meta)
        await ConversationLogSink(get_conversation_log(), conversation_id, meta).on_complete(completion.text)
    return {
        "response": completion.text,
        "usage": vars(completion.usage),
        "model": completion.model,
        "provider": completion.provider,
        "relevant_documents": [vars(f) for f in result.fragments],
        "session_id": result.session_id,
    }


async def run_chat_stream(
    message: Any,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    session_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> AgentStream:
    """运行一轮流式对话，返回尚未消费的 AgentStream。

    提供 conversation_id 时，每个增量都会立即写入会话日志（is_final=False），
    结束后再写入完整回答（is_final=True）。
    """
    _require_message(message)
    session_id = session_id or str(uuid4())
    sink = None
    meta = {"provider": provider or settings.default_provider, "model": model}
    if conversation_id:
        sink = ConversationLogSink(get_conversation_log(), conversation_id, meta)
    stream = await get_default_agent().respond_stream(
        message,
        RespondOptions(
            provider=provider,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            session_id=session_id,
        ),
        sink=sink,
    )
    # Provider 解析成功后才记录用户消息
    if conversation_id:
        _record_user_message(conversation_id, message, meta)
    return stream


def list_providers(configured_only: bool = True) -> List[Dict[str, Any]]:
    registry = get_default_agent().registry
    caps = registry.list_configured() if configured_only else registry.list_all()
    return [c.to_dict() for c in caps]


async def search_knowledge(query: str, limit: int = 10) -> List[Dict[str, Any]]:
    fragments = await get_default_agent().search_knowledge(query, limit)
    return [
        {
            "id": f.id,
            "filename": f.display_name,
            "type": f.kind,
            "text": f.text_excerpt,
            "score": f.score,
            "relevance": f.relevance,
        }
        for f in fragments
    ]


def clear_history(session_id: Optional[str] = None) -> None:
    get_default_agent().clear_history(session_id)
    logger.log(logging.INFO, "History cleared", extra={"extra": {"session_id": session_id}})


def get_history(session_id: Optional[str] = None) -> List[Dict[str, Any]]:
    return [message_to_dict(m) for m in get_default_agent().get_history(session_id)]


def list_conversations() -> List[Dict[str, Any]]:
    """列出所有持久化会话。"""
    return [
        {
            "id": c.id,
            "title": c.title,
            "created_at": c.created_at.isoformat(),
            "updated_at": c.updated_at.isoformat(),
            "meta": c.meta,
        }
        for c in get_conversation_log().list_conversations()
    ]


def get_conversation_messages(conversation_id: str, final_only: bool = True) -> List[Dict[str, Any]]:
    """获取会话消息；默认只返回完整消息，不含流式片段。"""
    return [
        {
            "id": m.id,
            "role": m.role,
            "content": m.content,
            "is_final": m.is_final,
            "chunk_index": m.chunk_index,
            "created_at": m.created_at.isoformat(),
            "meta": m.meta,
        }
        for m in get_conversation_log().list_messages(conversation_id, final_only=final_only)
    ]
