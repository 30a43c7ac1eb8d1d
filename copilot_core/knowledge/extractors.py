"""入库时的内容提取。

按扩展名分派：

- txt / md: 按 UTF-8 读取全文。
- html: 去掉 script/style/注释与标签，另外提取 <title> 与链接 href。
- docx: 直接解析 zip 包内的 word/document.xml，按段落拼接。
- pdf: PyPDF2 逐页 extract_text。
- 图片: Pillow 读取宽高与格式，不产生文本。

提取失败时直接抛出异常，由调用方决定跳过还是上报。
"""

import io
import re
import zipfile
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from xml.etree import ElementTree

from PIL import Image
from PyPDF2 import PdfReader

from copilot_core.knowledge.base import IMAGE_EXTENSIONS

_WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"

_SCRIPT_RE = re.compile(r"(?is)<script[^>]*>.*?</script>")
_STYLE_RE = re.compile(r"(?is)<style[^>]*>.*?</style>")
_COMMENT_RE = re.compile(r"(?is)<!--.*?-->")
_TAG_RE = re.compile(r"(?is)<[^>]+>")
_TITLE_RE = re.compile(r"(?is)<title[^>]*>(.*?)</title>")
_HREF_RE = re.compile(r"""(?is)<a\b[^>]*?\bhref\s*=\s*["']([^"']*)["']""")
_WS_RE = re.compile(r"\s+")


@dataclass
class ExtractedContent:
    text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def extract_plain_text(content: bytes) -> ExtractedContent:
    return ExtractedContent(text=content.decode("utf-8", errors="replace"))


def extract_html(content: bytes) -> ExtractedContent:
    html = content.decode("utf-8", errors="replace")
    title_match = _TITLE_RE.search(html)
    links = _HREF_RE.findall(html)
    stripped = _SCRIPT_RE.sub(" ", html)
    stripped = _STYLE_RE.sub(" ", stripped)
    stripped = _COMMENT_RE.sub(" ", stripped)
    text = _WS_RE.sub(" ", _TAG_RE.sub(" ", stripped)).strip()
    metadata: Dict[str, Any] = {"links": links}
    if title_match:
        metadata["title"] = _WS_RE.sub(" ", title_match.group(1)).strip()
    return ExtractedContent(text=text, metadata=metadata)


def extract_docx(content: bytes) -> ExtractedContent:
    with zipfile.ZipFile(io.BytesIO(content)) as zf:
        xml_bytes = zf.read("word/document.xml")
    root = ElementTree.fromstring(xml_bytes)
    paragraphs: List[str] = []
    for para in root.iter(f"{_WORD_NS}p"):
        texts = [node.text or "" for node in para.iter(f"{_WORD_NS}t")]
        line = "".join(texts).strip()
        if line:
            paragraphs.append(line)
    return ExtractedContent(text="\n".join(paragraphs))


def extract_pdf(content: bytes) -> ExtractedContent:
    reader = PdfReader(io.BytesIO(content))
    pages = [page.extract_text() or "" for page in reader.pages]
    metadata: Dict[str, Any] = {"pages": len(reader.pages)}
    info = reader.metadata
    if info is not None and info.title:
        metadata["title"] = str(info.title)
    return ExtractedContent(text="\n".join(pages).strip(), metadata=metadata)


def extract_image(content: bytes) -> ExtractedContent:
    with Image.open(io.BytesIO(content)) as img:
        width, height = img.size
        fmt = (img.format or "").lower()
    return ExtractedContent(metadata={"width": width, "height": height, "format": fmt})


_EXTRACTORS: Dict[str, Callable[[bytes], ExtractedContent]] = {
    "txt": extract_plain_text,
    "md": extract_plain_text,
    "html": extract_html,
    "htm": extract_html,
    "docx": extract_docx,
    "pdf": extract_pdf,
}


def extract_content(content: bytes, extension: str) -> ExtractedContent:
    """按扩展名提取文本与元数据；未知扩展名按纯文本处理。"""

    ext = (extension or "").lower().lstrip(".")
    if ext in IMAGE_EXTENSIONS:
        return extract_image(content)
    extractor = _EXTRACTORS.get(ext, extract_plain_text)
    return extractor(content)
