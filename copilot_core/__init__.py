"""Copilot Core 顶层包。

该包提供“知识库增强 + 多 Provider”对话 Agent 的核心实现，
包括配置加载、领域模型、Provider 适配、知识检索、
对话编排、流式持久化与图片分析等能力。
"""

from copilot_core.agents.conversation_agent import AgentResponse, AgentStream, ConversationAgent, RespondOptions

__all__ = ["AgentResponse", "AgentStream", "ConversationAgent", "RespondOptions"]
