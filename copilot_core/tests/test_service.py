import uuid

import pytest

from copilot_core.agents.conversation_agent import ConversationAgent
from copilot_core.api import service
from copilot_core.domain.exceptions import AgentError, ValidationError
from copilot_core.domain.models import NormalizedCompletion, StreamChunk, TokenUsage
from copilot_core.infrastructure.storage.json_store import JsonConversationLog
from copilot_core.knowledge.local_store import LocalKnowledgeBase
from copilot_core.knowledge.supabase_store import SupabaseKnowledgeBase
from copilot_core.providers.registry import ProviderRegistry


class EchoAdapter:
    name = "openai"

    def supports_images(self):
        return True

    def supports_streaming(self):
        return True

    def default_model(self):
        return "gpt-4o"

    async def complete(self, messages, options):
        return NormalizedCompletion(
            text=f"echo: {messages[-1].text()}",
            usage=TokenUsage(4, 2, 6),
            model=options.model,
            provider=self.name,
        )

    def complete_stream(self, messages, options):
        return self._stream(messages[-1].text())

    async def _stream(self, text):
        for piece in ("echo: ", text):
            yield StreamChunk(delta_text=piece)
        yield StreamChunk.end()


@pytest.fixture
def wired(monkeypatch, tmp_path, settings_stub):
    settings_stub.storage_root = str(tmp_path / ".storage")
    knowledge = LocalKnowledgeBase(root=tmp_path / "kb", settings=settings_stub)
    registry = ProviderRegistry(settings_stub, factories={"openai": lambda s, c: EchoAdapter()})
    agent = ConversationAgent(knowledge=knowledge, registry=registry, system_prompt="sys", settings=settings_stub)
    monkeypatch.setattr(service, "settings", settings_stub)
    monkeypatch.setattr(service, "_agent", agent)
    monkeypatch.setattr(service, "_log", JsonConversationLog(root=settings_stub.storage_root))
    return agent


@pytest.mark.asyncio
async def test_run_chat_returns_plain_dict(wired):
    await wired.add_knowledge(b"Our premium plan costs $20/month", "pricing.md")

    result = await service.run_chat("premium price?")

    assert result["response"] == "echo: premium price?"
    assert result["usage"] == {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}
    assert result["provider"] == "openai"
    assert result["model"] == "gpt-4o"
    assert [d["display_name"] for d in result["relevant_documents"]] == ["pricing.md"]
    assert uuid.UUID(result["session_id"])
    assert service.get_history(result["session_id"]) == [
        {"role": "user", "content": "premium price?"},
        {"role": "assistant", "content": "echo: premium price?"},
    ]


@pytest.mark.asyncio
async def test_run_chat_requires_a_message(wired):
    with pytest.raises(ValidationError) as excinfo:
        await service.run_chat("")
    assert excinfo.value.code == "MESSAGE_REQUIRED"


@pytest.mark.asyncio
async def test_run_chat_records_conversation(wired):
    await service.run_chat("hello", session_id="s1", conversation_id="c-1")

    messages = service.get_conversation_messages("c-1")
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hello"), ("assistant", "echo: hello")]
    assert [c["id"] for c in service.list_conversations()] == ["c-1"]


@pytest.mark.asyncio
async def test_run_chat_stream_logs_chunks(wired):
    stream = await service.run_chat_stream("hi", session_id="s1", conversation_id="c-2")
    text = "".join([c.delta_text async for c in stream.chunks])

    assert text == "echo: hi"
    rows = service.get_conversation_messages("c-2", final_only=False)
    assert [(r["role"], r["is_final"], r["chunk_index"]) for r in rows] == [
        ("user", True, None),
        ("assistant", False, 0),
        ("assistant", False, 1),
        ("assistant", True, None),
    ]
    assert len(service.get_history("s1")) == 2
    service.clear_history("s1")
    assert service.get_history("s1") == []


@pytest.mark.asyncio
async def test_run_chat_stream_unknown_provider_records_nothing(wired):
    with pytest.raises(AgentError) as excinfo:
        await service.run_chat_stream("hi", provider="nope", session_id="s1", conversation_id="c-3")
    assert excinfo.value.code == "UNSUPPORTED_PROVIDER"
    assert service.list_conversations() == []


@pytest.mark.asyncio
async def test_search_knowledge_and_providers(wired):
    await wired.add_knowledge(b"Brand colors are teal and navy", "brand.txt")

    hits = await service.search_knowledge("teal navy")

    assert [(h["filename"], h["score"], h["relevance"]) for h in hits] == [("brand.txt", 2, 1.0)]
    assert [p["name"] for p in service.list_providers()] == ["openai", "anthropic", "google", "mistral", "fireworks"]


@pytest.mark.asyncio
async def test_history_serialises_image_parts(wired):
    message = [{"type": "text", "text": "see"}, {"type": "image", "url": "https://x/a.png"}]
    await service.run_chat(message, session_id="img")

    assert service.get_history("img")[0] == {
        "role": "user",
        "content": [
            {"type": "text", "text": "see"},
            {"type": "image_url", "image_url": {"url": "https://x/a.png"}},
        ],
    }


def test_build_knowledge_store_selects_backend(tmp_path, settings_stub):
    registry = ProviderRegistry(settings_stub)
    settings_stub.knowledge_base_type = "file"
    settings_stub.knowledge_path = str(tmp_path / "kb")
    assert isinstance(service.build_knowledge_store(registry, settings_stub), LocalKnowledgeBase)

    settings_stub.knowledge_base_type = "supabase"
    store = service.build_knowledge_store(registry, settings_stub)
    assert isinstance(store, SupabaseKnowledgeBase)
