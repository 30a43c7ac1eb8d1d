"""基于 Supabase Storage 的远端知识库。

- 通过 Storage REST API 递归列出 bucket 中的对象：
  带 mimetype 元数据或名字中含 "." 的条目视为文件，其余视为文件夹并递归。
- 每个对象的结构化分析结果存放在 image_analysis 表（PostgREST）。
  有分析记录时，检索文本 = text + description + ui_elements；
  否则退回到 文件名 + 完整路径。
- 文档 ID 即对象完整路径。
"""

import json
import logging
import mimetypes
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx

from copilot_core.config.settings import settings as default_settings
from copilot_core.domain.exceptions import NotFound, ValidationError, VendorCallFailure
from copilot_core.domain.models import KnowledgeFragment
from copilot_core.infrastructure.logging.logger import logger
from copilot_core.knowledge.base import (
    KnowledgeDocument,
    kind_for_filename,
    rank_fragments,
    summarize_documents,
    validate_upload,
)
from copilot_core.services.image_analysis import ImageAnalysisService

LIST_PAGE_SIZE = 1000


class SupabaseKnowledgeBase:
    def __init__(self, settings=None, image_analysis: Optional[ImageAnalysisService] = None):
        self._settings = settings or default_settings
        url = (self._settings.supabase_url or "").rstrip("/")
        key = self._settings.supabase_key
        if not url or not key:
            raise ValidationError(code="SUPABASE_NOT_CONFIGURED", message="Supabase URL and key are required")
        if not url.startswith("http"):
            raise ValidationError(code="SUPABASE_NOT_CONFIGURED", message=f"Invalid Supabase URL: {url}")
        self._url = url
        self._key = key
        self._bucket = self._settings.supabase_bucket
        self._table = self._settings.supabase_analysis_table
        self._image_analysis = image_analysis

    # ---- 检索 ----

    async def search(self, query: str, limit: int = 5) -> List[KnowledgeFragment]:
        if not query or not query.strip():
            return []
        documents = await self.list_documents()
        return rank_fragments(query, documents, limit)

    # ---- 文档管理 ----

    async def list_documents(self) -> List[KnowledgeDocument]:
        async with self._client() as client:
            files = await self._list_recursive(client, "")
            analysis = await self._analysis_rows(client)
        return [self._to_document(item, analysis.get(item["full_path"])) for item in files]

    async def get_document(self, document_id: str) -> KnowledgeDocument:
        for doc in await self.list_documents():
            if doc.id == document_id:
                return doc
        raise NotFound(code="DOCUMENT_NOT_FOUND", message=f"Document not found: {document_id}")

    async def add_document(
        self,
        content: bytes,
        filename: str,
        size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeDocument:
        """上传到 bucket；metadata["folder"] 可指定目标文件夹（如所属 flow）。"""

        metadata = dict(metadata or {})
        validate_upload(
            filename,
            max(len(content), size or 0),
            self._settings.max_file_size,
            self._settings.allowed_file_types,
        )
        folder = str(metadata.pop("folder", "") or "").strip("/")
        full_path = f"{folder}/{filename}" if folder else filename
        mimetype = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        async with self._client() as client:
            resp = await client.post(
                f"{self._url}/storage/v1/object/{self._bucket}/{quote(full_path)}",
                content=content,
                headers={**self._headers(), "Content-Type": mimetype, "x-upsert": "false"},
            )
            self._check(resp, "upload object")
        logger.log(
            logging.INFO,
            "Knowledge object uploaded",
            extra={"extra": {"path": full_path, "bucket": self._bucket, "size": len(content)}},
        )
        item = {
            "name": filename,
            "full_path": full_path,
            "metadata": {"size": len(content), "mimetype": mimetype},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        doc = self._to_document(item, None)
        doc.metadata.update(metadata)
        return doc

    async def delete_document(self, document_id: str) -> None:
        async with self._client() as client:
            resp = await client.request(
                "DELETE",
                f"{self._url}/storage/v1/object/{self._bucket}",
                json={"prefixes": [document_id]},
                headers=self._headers(),
            )
            self._check(resp, "delete object")
            removed = resp.json() or []
            if not removed:
                raise NotFound(code="DOCUMENT_NOT_FOUND", message=f"Document not found: {document_id}")
            resp = await client.delete(
                f"{self._url}/rest/v1/{self._table}",
                params={"file_path": f"eq.{document_id}"},
                headers=self._headers(),
            )
            self._check(resp, "delete analysis")
        logger.log(logging.INFO, "Knowledge object deleted", extra={"extra": {"path": document_id}})

    async def get_stats(self) -> Dict[str, Any]:
        stats = summarize_documents(await self.list_documents())
        stats["source"] = "supabase"
        stats["storage_bucket"] = self._bucket
        return stats

    # ---- 图片分析 ----

    async def process_images(self, batch_size: int = 5, delay: float = 2.0) -> Dict[str, Any]:
        """分析尚未分析过的图片并写入分析表，返回 processed / failed / total。"""

        service = self._require_analysis()
        async with self._client() as client:
            files = await self._list_recursive(client, "")
            existing = await self._analysis_rows(client)
        images = [f for f in files if kind_for_filename(f["name"]) == "image"]
        pending = [f for f in images if f["full_path"] not in existing]
        logger.log(
            logging.INFO,
            "Image processing started",
            extra={"extra": {"total": len(images), "pending": len(pending)}},
        )
        processed = 0
        failed: List[Dict[str, str]] = []
        results = await service.process_batch(
            [self.public_url(f["full_path"]) for f in pending],
            batch_size=batch_size,
            delay=delay,
        )
        rows = []
        for item, result in zip(pending, results):
            if not result.ok:
                failed.append({"path": item["full_path"], "error": result.error or ""})
                continue
            rows.append(self._analysis_row(item["full_path"], result.analysis.to_record()))
        if rows:
            async with self._client() as client:
                resp = await client.post(
                    f"{self._url}/rest/v1/{self._table}",
                    json=rows,
                    headers={**self._headers(), "Prefer": "return=minimal"},
                )
                self._check(resp, "store analysis")
            processed = len(rows)
        return {"processed": processed, "failed": failed, "total": len(images)}

    async def process_single_image(self, file_path: str) -> Dict[str, Any]:
        service = self._require_analysis()
        analysis = await service.analyze_image(self.public_url(file_path))
        row = self._analysis_row(file_path, analysis.to_record())
        async with self._client() as client:
            resp = await client.post(
                f"{self._url}/rest/v1/{self._table}",
                json=row,
                params={"on_conflict": "file_path"},
                headers={**self._headers(), "Prefer": "resolution=merge-duplicates,return=minimal"},
            )
            self._check(resp, "store analysis")
        return row

    def public_url(self, full_path: str) -> str:
        return f"{self._url}/storage/v1/object/public/{self._bucket}/{quote(full_path)}"

    # ---- 内部实现 ----

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        try:
            async with httpx.AsyncClient(
                timeout=getattr(self._settings, "http_timeout", None), trust_env=False
            ) as client:
                yield client
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接中断等
            raise VendorCallFailure(
                code="NETWORK_ERROR",
                message=f"Supabase network error: {e}",
            ) from e

    def _headers(self) -> Dict[str, str]:
        return {"apikey": self._key, "Authorization": f"Bearer {self._key}"}

    def _require_analysis(self) -> ImageAnalysisService:
        if self._image_analysis is None:
            raise ValidationError(
                code="IMAGE_ANALYSIS_UNAVAILABLE",
                message="Image analysis requires an image-capable provider",
            )
        return self._image_analysis

    @staticmethod
    def _check(resp: httpx.Response, action: str) -> None:
        if resp.status_code >= 400:
            raise VendorCallFailure(
                code="SUPABASE_ERROR",
                message=f"Supabase {action} failed ({resp.status_code}): {resp.text}",
                http_status=resp.status_code,
            )

    async def _list_recursive(self, client: httpx.AsyncClient, prefix: str) -> List[Dict[str, Any]]:
        resp = await client.post(
            f"{self._url}/storage/v1/object/list/{self._bucket}",
            json={
                "prefix": prefix,
                "limit": LIST_PAGE_SIZE,
                "offset": 0,
                "sortBy": {"column": "name", "order": "asc"},
            },
            headers=self._headers(),
        )
        self._check(resp, f"list folder '{prefix}'")
        files: List[Dict[str, Any]] = []
        for item in resp.json() or []:
            name = item.get("name") or ""
            if not name:
                continue
            full_path = f"{prefix}/{name}" if prefix else name
            meta = item.get("metadata") or {}
            if meta.get("mimetype") or "." in name:
                files.append({**item, "full_path": full_path})
            else:
                files.extend(await self._list_recursive(client, full_path))
        return files

    async def _analysis_rows(self, client: httpx.AsyncClient) -> Dict[str, Dict[str, Any]]:
        resp = await client.get(
            f"{self._url}/rest/v1/{self._table}",
            params={"select": "*"},
            headers=self._headers(),
        )
        self._check(resp, "read analysis")
        return {row["file_path"]: row for row in resp.json() or [] if row.get("file_path")}

    @staticmethod
    def _analysis_row(file_path: str, record: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        return {
            "file_path": file_path,
            "filename": file_path.rsplit("/", 1)[-1],
            "flow": file_path.split("/", 1)[0],
            **record,
            "created_at": now,
            "updated_at": now,
        }

    def _to_document(self, item: Dict[str, Any], analysis: Optional[Dict[str, Any]]) -> KnowledgeDocument:
        full_path = item["full_path"]
        name = item.get("name") or full_path.rsplit("/", 1)[-1]
        meta = item.get("metadata") or {}
        metadata: Dict[str, Any] = {
            "mimetype": meta.get("mimetype"),
            "flow": full_path.split("/", 1)[0],
        }
        text: Optional[str] = None
        search_text: Optional[str] = None
        if analysis:
            text = analysis.get("text") or None
            ui_elements = analysis.get("ui_elements")
            if not isinstance(ui_elements, str):
                ui_elements = json.dumps(ui_elements or [], ensure_ascii=False)
            search_text = " ".join(
                p for p in (analysis.get("text") or "", analysis.get("description") or "", ui_elements) if p
            )
            metadata["analysis"] = {
                "description": analysis.get("description"),
                "ui_elements": analysis.get("ui_elements"),
                "colors": analysis.get("colors"),
            }
        created_raw = item.get("created_at")
        created_at = (
            datetime.fromisoformat(str(created_raw).replace("Z", "+00:00"))
            if created_raw
            else datetime.now(timezone.utc)
        )
        return KnowledgeDocument(
            id=full_path,
            filename=name,
            kind=kind_for_filename(name),
            size=int(meta.get("size") or 0),
            text=text,
            metadata=metadata,
            created_at=created_at,
            path=full_path,
            url=self.public_url(full_path),
            search_text=search_text,
        )
