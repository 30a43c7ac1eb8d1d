"""对话编排核心。

ConversationAgent 负责一次问答的完整流程：

1. 从用户消息中提取检索文本（只取文本分段）。
2. 在知识库中检索最多 5 个片段。
3. 用片段扩充系统提示词。
4. 读取会话历史（按 session_id，缺省为默认会话）。
5. 组装 [system] + 历史 + [user]。
6. 通过 ProviderRegistry 解析 Provider。
7. 调用 complete / complete_stream。
8. 把本轮问答追加进历史并截断到最近 N 条。

步骤 2–7 的任何失败都会被包装成单一的 AgentError。
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from copilot_core.config.settings import settings as default_settings
from copilot_core.domain.conversation import SessionStore, StreamSink
from copilot_core.domain.exceptions import AgentError, BusinessError
from copilot_core.domain.models import (
    ChatMessage,
    CompletionOptions,
    FragmentSummary,
    KnowledgeFragment,
    NormalizedCompletion,
    StreamChunk,
    coerce_content,
)
from copilot_core.infrastructure.logging.logger import logger
from copilot_core.infrastructure.storage.session_store import InMemorySessionStore
from copilot_core.knowledge.base import KnowledgeDocument, KnowledgeStore
from copilot_core.prompts import load_system_prompt
from copilot_core.providers.base import ProviderAdapter
from copilot_core.providers.registry import ProviderRegistry, canonical_name

DEFAULT_SESSION = "__default__"
KNOWLEDGE_LIMIT = 5
EXCERPT_CHARS = 500
KNOWLEDGE_HEADER = "\n\nRelevant knowledge:\n"


@dataclass
class RespondOptions:
    """单轮调用参数；None 表示使用配置中的默认值。"""

    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    session_id: Optional[str] = None


@dataclass
class AgentResponse:
    completion: NormalizedCompletion
    fragments: List[FragmentSummary]
    session_id: str


@dataclass
class AgentStream:
    """流式结果。

    chunks 只能被消费一次：依次产出文本增量，最后一个为结束标记。
    完整消费后本轮问答才会写入历史；中途放弃则不写。
    """

    chunks: AsyncIterator[StreamChunk]
    fragments: List[FragmentSummary]
    session_id: str
    provider: str
    model: str


@dataclass
class _PreparedTurn:
    user_message: ChatMessage
    fragments: List[KnowledgeFragment]
    messages: List[ChatMessage]
    adapter: ProviderAdapter
    options: CompletionOptions
    log_ctx: Dict[str, Any] = field(default_factory=dict)


def build_augmented_prompt(base_prompt: str, fragments: Sequence[KnowledgeFragment]) -> str:
    """把检索到的片段拼接到系统提示词之后；没有片段时原样返回。"""

    if not fragments:
        return base_prompt
    lines = [base_prompt, KNOWLEDGE_HEADER]
    for fragment in fragments:
        if fragment.kind == "image":
            lines.append(f"[Image: {fragment.display_name}]\n")
        else:
            excerpt = (fragment.text_excerpt or "")[:EXCERPT_CHARS]
            lines.append(f"[{fragment.display_name}]: {excerpt}...\n")
    return "".join(lines)


class ConversationAgent:
    def __init__(
        self,
        knowledge: KnowledgeStore,
        registry: Optional[ProviderRegistry] = None,
        sessions: Optional[SessionStore] = None,
        system_prompt: Optional[str] = None,
        settings=None,
    ):
        self._settings = settings or default_settings
        self._knowledge = knowledge
        self._registry = registry or ProviderRegistry(self._settings)
        self._sessions = sessions or InMemorySessionStore()
        self._system_prompt = system_prompt if system_prompt is not None else load_system_prompt()

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def set_system_prompt(self, text: str) -> None:
        self._system_prompt = text

    # ---- 对话 ----

    async def respond(self, user_message: Any, options: Optional[RespondOptions] = None) -> AgentResponse:
        """阻塞式问答：返回完整结果与所用片段摘要。

        同一会话的“读历史-调用-写历史”在会话锁内串行执行，
        并发请求不会丢失轮次；不同会话之间互不阻塞。
        """

        opts = options or RespondOptions()
        key = opts.session_id or DEFAULT_SESSION
        user_msg = ChatMessage(role="user", content=coerce_content(user_message))
        start_time = time.time()
        async with self._sessions.lock(key):
            turn = await self._prepare(user_msg, opts, key)
            try:
                completion = await turn.adapter.complete(turn.messages, turn.options)
            except Exception as e:
                raise self._wrap(e, turn.log_ctx) from e
            history = self._sessions.append(
                key,
                [user_msg, ChatMessage(role="assistant", content=completion.text)],
                self._settings.max_history_messages,
            )
        self._log(
            logging.INFO,
            "Completed agent turn",
            turn.log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            history_size=len(history),
            usage=vars(completion.usage),
        )
        return AgentResponse(
            completion=completion,
            fragments=[f.summary() for f in turn.fragments],
            session_id=key,
        )

    async def respond_stream(
        self,
        user_message: Any,
        options: Optional[RespondOptions] = None,
        sink: Optional[StreamSink] = None,
    ) -> AgentStream:
        """流式问答：在流被消费之前就返回片段摘要与 chunk 迭代器。

        sink 会按到达顺序收到每个增量（on_chunk），
        完整结束后收到 on_complete(full_text)，失败时收到 on_error。
        """

        opts = options or RespondOptions()
        key = opts.session_id or DEFAULT_SESSION
        user_msg = ChatMessage(role="user", content=coerce_content(user_message))
        turn = await self._prepare(user_msg, opts, key)
        try:
            source = turn.adapter.complete_stream(turn.messages, turn.options)
        except Exception as e:
            raise self._wrap(e, turn.log_ctx) from e
        return AgentStream(
            chunks=self._drain(source, key, turn, sink),
            fragments=[f.summary() for f in turn.fragments],
            session_id=key,
            provider=turn.adapter.name,
            model=turn.options.model or "",
        )

    # ---- 历史 ----

    def clear_history(self, session_id: Optional[str] = None) -> None:
        self._sessions.clear(session_id or DEFAULT_SESSION)

    def get_history(self, session_id: Optional[str] = None) -> List[ChatMessage]:
        return self._sessions.get(session_id or DEFAULT_SESSION)

    # ---- 知识库透传 ----

    async def add_knowledge(
        self,
        content: bytes,
        filename: str,
        size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeDocument:
        return await self._knowledge.add_document(content, filename, size=size, metadata=metadata)

    async def search_knowledge(self, query: str, limit: int = 10) -> List[KnowledgeFragment]:
        return await self._knowledge.search(query, limit)

    async def get_knowledge(self, document_id: str) -> KnowledgeDocument:
        return await self._knowledge.get_document(document_id)

    async def get_all_knowledge(self) -> List[KnowledgeDocument]:
        return await self._knowledge.list_documents()

    async def delete_knowledge(self, document_id: str) -> None:
        await self._knowledge.delete_document(document_id)

    async def get_knowledge_stats(self) -> Dict[str, Any]:
        return await self._knowledge.get_stats()

    # ---- 内部实现 ----

    async def _prepare(self, user_msg: ChatMessage, opts: RespondOptions, key: str) -> _PreparedTurn:
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "session_id": key}
        try:
            fragments = await self._knowledge.search(user_msg.text(), KNOWLEDGE_LIMIT)
            system = build_augmented_prompt(self._system_prompt, fragments)
            history = self._sessions.get(key)
            messages = [ChatMessage(role="system", content=system)] + history + [user_msg]
            adapter, completion_options = self._resolve_provider(opts)
        except Exception as e:
            raise self._wrap(e, log_ctx) from e
        log_ctx.update(provider=adapter.name, model=completion_options.model)
        self._log(
            logging.INFO,
            "Prepared agent turn",
            log_ctx,
            fragments=[f.id for f in fragments],
            history_size=len(history),
            has_images=user_msg.has_images(),
        )
        return _PreparedTurn(
            user_message=user_msg,
            fragments=fragments,
            messages=messages,
            adapter=adapter,
            options=completion_options,
            log_ctx=log_ctx,
        )

    def _resolve_provider(self, opts: RespondOptions) -> Tuple[ProviderAdapter, CompletionOptions]:
        default_provider = self._settings.default_provider
        adapter = self._registry.resolve(opts.provider or default_provider)
        model = opts.model
        if not model and adapter.name == canonical_name(default_provider):
            model = self._settings.default_model
        temperature = opts.temperature
        if temperature is None:
            temperature = self._settings.temperature
        return adapter, CompletionOptions(
            model=model or adapter.default_model(),
            max_tokens=opts.max_tokens or self._settings.max_tokens,
            temperature=temperature,
        )

    async def _drain(
        self,
        source: AsyncIterator[StreamChunk],
        key: str,
        turn: _PreparedTurn,
        sink: Optional[StreamSink],
    ) -> AsyncIterator[StreamChunk]:
        parts: List[str] = []
        try:
            async for chunk in source:
                if chunk.done:
                    break
                if not chunk.delta_text:
                    continue
                parts.append(chunk.delta_text)
                if sink is not None:
                    await sink.on_chunk(chunk.delta_text)
                yield chunk
        except Exception as e:
            error = self._wrap(e, turn.log_ctx)
            if sink is not None:
                await sink.on_error(error)
            raise error from e
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
        full_text = "".join(parts)
        history = self._sessions.append(
            key,
            [turn.user_message, ChatMessage(role="assistant", content=full_text)],
            self._settings.max_history_messages,
        )
        if sink is not None:
            await sink.on_complete(full_text)
        self._log(
            logging.INFO,
            "Completed streaming agent turn",
            turn.log_ctx,
            chunks=len(parts),
            history_size=len(history),
        )
        yield StreamChunk.end()

    def _wrap(self, error: Exception, log_ctx: Dict[str, Any]) -> AgentError:
        if isinstance(error, AgentError):
            return error
        self._log(
            logging.ERROR,
            "Agent turn failed",
            log_ctx,
            error=str(error),
            error_type=type(error).__name__,
        )
        if isinstance(error, BusinessError):
            return AgentError(
                code=error.code,
                message=f"Agent error: {error.message}",
                http_status=error.http_status,
                cause=type(error).__name__,
            )
        return AgentError(code="AGENT_ERROR", message=f"Agent error: {error}", cause=type(error).__name__)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
