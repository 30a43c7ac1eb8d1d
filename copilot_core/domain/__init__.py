"""领域层模型与协议。

包含：
- models: 中立的 ChatMessage / NormalizedCompletion / KnowledgeFragment 等模型。
- conversation: 会话存储、流式 Sink 与持久化日志的协议。
- exceptions: 业务异常类型定义。
"""
