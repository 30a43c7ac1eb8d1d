"""知识库检索层。

- base: KnowledgeStore 协议、关键字打分与上传校验。
- extractors: 入库时的文本/元数据提取。
- local_store: 本地文件系统知识库。
- supabase_store: 基于 Supabase Storage 的远端知识库。
"""

from copilot_core.knowledge.base import KnowledgeStore, rank_fragments, tokenize_query, validate_upload

__all__ = ["KnowledgeStore", "rank_fragments", "tokenize_query", "validate_upload"]
