"""KnowledgeStore 协议与公共检索逻辑。

两个后端（本地文件、Supabase Storage）共用同一套打分规则：

1. 查询按空白切分并转小写；空查询直接返回空列表。
2. 对每个文档，score = 出现在其可检索文本（小写）中的查询词个数（子串匹配）。
3. score 为 0 的文档不返回；relevance = min(score / 词数, 1.0)。
4. 按 score 降序稳定排序（同分保持遍历顺序），截断到 limit。

这里刻意保持朴素的关键字匹配，调用方可能依赖其精确排序。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from copilot_core.domain.exceptions import ValidationError
from copilot_core.domain.models import FragmentKind, KnowledgeFragment

IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif"})


@dataclass
class KnowledgeDocument:
    """知识库中的一条文档记录。

    - text: 入库时提取的文本，图片或远端对象可能为空。
    - searchable_text: 参与打分的文本；没有提取文本时退回文件名/路径。
    """

    id: str
    filename: str
    kind: FragmentKind
    size: int = 0
    text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    path: Optional[str] = None
    url: Optional[str] = None
    search_text: Optional[str] = None

    @property
    def extension(self) -> str:
        return file_extension(self.filename)

    @property
    def searchable_text(self) -> str:
        if self.search_text:
            return self.search_text
        if self.text:
            return self.text
        return " ".join(p for p in (self.filename, self.path) if p)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "type": self.kind,
            "size": self.size,
            "text": self.text,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "path": self.path,
            "url": self.url,
        }


class KnowledgeStore(Protocol):
    """知识库后端协议。"""

    async def search(self, query: str, limit: int = 5) -> List[KnowledgeFragment]:
        ...

    async def add_document(
        self,
        content: bytes,
        filename: str,
        size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeDocument:
        ...

    async def get_document(self, document_id: str) -> KnowledgeDocument:
        ...

    async def list_documents(self) -> List[KnowledgeDocument]:
        ...

    async def delete_document(self, document_id: str) -> None:
        ...

    async def get_stats(self) -> Dict[str, Any]:
        ...


def file_extension(filename: str) -> str:
    return PurePosixPath(filename or "").suffix.lower().lstrip(".")


def kind_for_filename(filename: str) -> FragmentKind:
    return "image" if file_extension(filename) in IMAGE_EXTENSIONS else "text"


def tokenize_query(query: Optional[str]) -> List[str]:
    return (query or "").lower().split()


def rank_fragments(query: str, documents: Iterable[KnowledgeDocument], limit: int) -> List[KnowledgeFragment]:
    """对文档按关键字命中数打分并排序。"""

    terms = tokenize_query(query)
    if not terms or limit <= 0:
        return []
    scored: List[KnowledgeFragment] = []
    for doc in documents:
        haystack = doc.searchable_text.lower()
        score = sum(1 for term in terms if term in haystack)
        if score == 0:
            continue
        scored.append(
            KnowledgeFragment(
                id=doc.id,
                display_name=doc.filename,
                kind=doc.kind,
                text_excerpt=doc.text,
                relevance=min(score / len(terms), 1.0),
                score=score,
            )
        )
    # sorted 是稳定排序，同分保持遍历顺序
    scored = sorted(scored, key=lambda f: f.score, reverse=True)
    return scored[:limit]


def validate_upload(filename: str, size: int, max_file_size: int, allowed_types: Sequence[str]) -> str:
    """上传边界校验，返回小写扩展名；不合法时抛出 ValidationError。"""

    if not filename:
        raise ValidationError(code="MISSING_FILENAME", message="Filename is required")
    ext = file_extension(filename)
    allowed = {t.lower().lstrip(".") for t in allowed_types}
    if ext not in allowed:
        raise ValidationError(
            code="FILE_TYPE_NOT_ALLOWED",
            message=f"File type .{ext or '?'} is not allowed. Allowed types: {', '.join(sorted(allowed))}",
            filename=filename,
        )
    if size > max_file_size:
        raise ValidationError(
            code="FILE_TOO_LARGE",
            message=f"File {filename} is {size} bytes, exceeding the limit of {max_file_size} bytes",
            filename=filename,
        )
    return ext


def summarize_documents(documents: Iterable[KnowledgeDocument]) -> Dict[str, Any]:
    total_documents = 0
    total_size = 0
    by_type: Dict[str, int] = {}
    by_date: Dict[str, int] = {}
    for doc in documents:
        total_documents += 1
        total_size += doc.size or 0
        ext = doc.extension or "unknown"
        by_type[ext] = by_type.get(ext, 0) + 1
        day = doc.created_at.date().isoformat()
        by_date[day] = by_date.get(day, 0) + 1
    return {
        "total_documents": total_documents,
        "total_size": total_size,
        "by_type": by_type,
        "by_date": by_date,
    }
