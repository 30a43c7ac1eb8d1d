import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from copilot_core.config.settings import settings as default_settings
from copilot_core.domain.exceptions import BusinessError, NotFound, ValidationError
from copilot_core.domain.models import KnowledgeFragment
from copilot_core.infrastructure.logging.logger import logger
from copilot_core.knowledge.base import (
    KnowledgeDocument,
    file_extension,
    kind_for_filename,
    rank_fragments,
    summarize_documents,
    validate_upload,
)
from copilot_core.knowledge.extractors import extract_content

INDEX_FILE = "_index.json"


class LocalKnowledgeBase:
    """本地文件系统知识库。

    - 上传文件保存为 <root>/<uuid>.<ext>，原始文件名与调用方元数据记录在 _index.json。
    - 文本/元数据在入库时提取并常驻内存，检索只读内存索引。
    - 启动时重新索引目录下所有文件，单个文件失败只记录日志并跳过。
    """

    def __init__(self, root: str | Path | None = None, settings=None):
        self._settings = settings or default_settings
        self._root = Path(root or self._settings.knowledge_path).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._documents: Dict[str, KnowledgeDocument] = {}
        self._load_existing()

    @property
    def root(self) -> Path:
        return self._root

    # ---- 检索 ----

    async def search(self, query: str, limit: int = 5) -> List[KnowledgeFragment]:
        return rank_fragments(query, list(self._documents.values()), limit)

    # ---- 文档管理 ----

    async def add_document(
        self,
        content: bytes,
        filename: str,
        size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeDocument:
        ext = validate_upload(
            filename,
            max(len(content), size or 0),
            self._settings.max_file_size,
            self._settings.allowed_file_types,
        )
        doc_id = str(uuid4())
        path = self._root / f"{doc_id}.{ext}"
        path.write_bytes(content)
        try:
            doc = self._build_document(doc_id, path, filename, metadata or {}, datetime.now(timezone.utc))
        except Exception as e:
            path.unlink(missing_ok=True)
            raise ValidationError(
                code="EXTRACTION_FAILED",
                message=f"Failed to extract content from {filename}: {e}",
                filename=filename,
            ) from e
        self._documents[doc_id] = doc
        self._write_index()
        logger.log(
            logging.INFO,
            "Knowledge document added",
            extra={"extra": {"document_id": doc_id, "filename": filename, "size": doc.size, "type": ext}},
        )
        return doc

    async def get_document(self, document_id: str) -> KnowledgeDocument:
        doc = self._documents.get(document_id)
        if doc is None:
            raise NotFound(code="DOCUMENT_NOT_FOUND", message=f"Document not found: {document_id}")
        return doc

    async def list_documents(self) -> List[KnowledgeDocument]:
        return list(self._documents.values())

    async def update_document(self, document_id: str, metadata: Dict[str, Any]) -> KnowledgeDocument:
        doc = await self.get_document(document_id)
        doc.metadata.update(metadata)
        self._write_index()
        return doc

    async def delete_document(self, document_id: str) -> None:
        doc = self._documents.get(document_id)
        if doc is None:
            raise NotFound(code="DOCUMENT_NOT_FOUND", message=f"Document not found: {document_id}")
        try:
            Path(doc.path).unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=f"Failed to delete document: {e}")
        del self._documents[document_id]
        self._write_index()
        logger.log(logging.INFO, "Knowledge document deleted", extra={"extra": {"document_id": document_id}})

    async def get_stats(self) -> Dict[str, Any]:
        return summarize_documents(self._documents.values())

    # ---- 内部实现 ----

    def _build_document(
        self,
        doc_id: str,
        path: Path,
        filename: str,
        metadata: Dict[str, Any],
        created_at: datetime,
    ) -> KnowledgeDocument:
        extracted = extract_content(path.read_bytes(), file_extension(path.name))
        merged = dict(extracted.metadata)
        merged.update(metadata)
        return KnowledgeDocument(
            id=doc_id,
            filename=filename,
            kind=kind_for_filename(path.name),
            size=path.stat().st_size,
            text=extracted.text or None,
            metadata=merged,
            created_at=created_at,
            path=str(path),
        )

    def _load_existing(self) -> None:
        index = self._read_index()
        for path in sorted(self._root.iterdir()):
            if not path.is_file() or path.name == INDEX_FILE or path.name.endswith(".tmp"):
                continue
            doc_id = path.stem
            entry = index.get(doc_id)
            if not isinstance(entry, dict):
                entry = {}
            try:
                doc = self._build_document(
                    doc_id,
                    path,
                    entry.get("filename") or path.name,
                    entry.get("metadata") or {},
                    self._created_at(entry.get("created_at"), path),
                )
            except Exception as e:
                # 单个文件失败不影响其他文件入库
                logger.log(
                    logging.WARNING,
                    "Skipping unreadable knowledge file",
                    extra={"extra": {"path": str(path), "error": str(e)}},
                )
                continue
            self._documents[doc_id] = doc

    @staticmethod
    def _created_at(raw: Any, path: Path) -> datetime:
        """索引中的时间无法解析时退回文件 mtime。"""

        if raw:
            try:
                return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            except ValueError:
                logger.log(
                    logging.WARNING,
                    "Invalid created_at in knowledge index",
                    extra={"extra": {"path": str(path), "created_at": str(raw)}},
                )
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

    def _read_index(self) -> Dict[str, Dict[str, Any]]:
        index_path = self._root / INDEX_FILE
        if not index_path.exists():
            return {}
        try:
            data = json.loads(index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.log(logging.WARNING, "Knowledge index unreadable", extra={"extra": {"error": str(e)}})
            return {}
        return data if isinstance(data, dict) else {}

    def _write_index(self) -> None:
        index_path = self._root / INDEX_FILE
        tmp_path = self._root / f"_index.{uuid4().hex}.json.tmp"
        obj = {
            doc.id: {
                "filename": doc.filename,
                "created_at": doc.created_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
                "metadata": _user_metadata(doc),
            }
            for doc in self._documents.values()
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp_path, index_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))


_EXTRACTED_KEYS = frozenset({"width", "height", "format", "pages", "title", "links"})


def _user_metadata(doc: KnowledgeDocument) -> Dict[str, Any]:
    # 提取出的元数据在启动时会重新生成，这里只持久化调用方传入的部分
    return {k: v for k, v in doc.metadata.items() if k not in _EXTRACTED_KEYS}
