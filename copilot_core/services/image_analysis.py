"""图片分析服务。

借助支持图片输入的 Provider 对界面截图做四类分析：
可见文字、整体描述、UI 元素（JSON 数组）、主色（JSON 数组）。

process_batch 按批并发处理，单张失败只标记该项失败，不中断整批。
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from copilot_core.domain.exceptions import CapabilityError
from copilot_core.domain.models import ChatMessage, CompletionOptions, ImagePart, TextPart
from copilot_core.infrastructure.logging.logger import logger
from copilot_core.providers.base import ProviderAdapter

TEXT_PROMPT = (
    "Transcribe all text visible in this screenshot, top to bottom. "
    "Return only the transcribed text, without commentary."
)
DESCRIPTION_PROMPT = (
    "Analyze this mobile app screenshot and provide a detailed description focusing on: "
    "1) What type of screen this is (login, onboarding, feed, etc.), 2) Key UI elements visible, "
    "3) App name/branding, 4) User actions possible, 5) Visual design elements. Be specific and detailed."
)
UI_ELEMENTS_PROMPT = (
    "Analyze this mobile app screenshot and extract all UI elements. Return a JSON array with objects "
    "containing: {type: 'button|input|text|image|icon', text: 'visible text', "
    "position: 'top|middle|bottom|left|right|center', color: 'primary color'}. "
    "Focus on interactive elements and important text."
)
COLORS_PROMPT = (
    "Analyze this mobile app screenshot and identify the 5 most dominant colors. Return a JSON array "
    "with hex color codes like ['#FF5733', '#3498DB', '#2ECC71']. "
    "Focus on background colors, primary UI colors, and accent colors."
)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_BARE_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


@dataclass
class ImageAnalysis:
    text: str = ""
    description: str = ""
    ui_elements: List[Any] = field(default_factory=list)
    colors: List[Any] = field(default_factory=list)

    def to_record(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "description": self.description,
            "ui_elements": list(self.ui_elements),
            "colors": list(self.colors),
        }


@dataclass
class ImageAnalysisResult:
    """批处理中单张图片的结果；ok=False 时 error 给出失败原因。"""

    url: str
    ok: bool
    analysis: Optional[ImageAnalysis] = None
    error: Optional[str] = None


def parse_json_array(raw: str) -> List[Any]:
    """从模型输出中提取 JSON 数组：优先 ```json 代码块，其次裸数组；解析失败返回空列表。"""

    match = _FENCED_JSON_RE.search(raw or "")
    candidate = match.group(1) if match else None
    if candidate is None:
        bare = _BARE_ARRAY_RE.search(raw or "")
        candidate = bare.group(0) if bare else raw
    try:
        data = json.loads(candidate)
    except (TypeError, ValueError):
        return []
    return data if isinstance(data, list) else []


class ImageAnalysisService:
    def __init__(self, provider: ProviderAdapter, model: Optional[str] = None):
        if not provider.supports_images():
            raise CapabilityError(
                code="IMAGES_NOT_SUPPORTED",
                message=f"Provider {provider.name} does not support image input",
                provider=provider.name,
            )
        self._provider = provider
        self._model = model

    async def analyze_image(
        self,
        image_url: str,
        extract_ui_elements: bool = True,
        extract_colors: bool = True,
    ) -> ImageAnalysis:
        text, description = await asyncio.gather(
            self._ask(image_url, TEXT_PROMPT, 1000),
            self._ask(image_url, DESCRIPTION_PROMPT, 500),
        )
        analysis = ImageAnalysis(text=text.strip(), description=description.strip())
        if extract_ui_elements:
            analysis.ui_elements = parse_json_array(await self._ask(image_url, UI_ELEMENTS_PROMPT, 1000))
        if extract_colors:
            analysis.colors = parse_json_array(await self._ask(image_url, COLORS_PROMPT, 200))
        return analysis

    async def process_batch(
        self,
        image_urls: Sequence[str],
        batch_size: int = 5,
        extract_ui_elements: bool = True,
        extract_colors: bool = True,
        delay: float = 0.0,
    ) -> List[ImageAnalysisResult]:
        """按 batch_size 分批并发分析，返回与输入顺序一致的结果列表。"""

        batch_size = max(1, batch_size)
        results: List[ImageAnalysisResult] = []
        for start in range(0, len(image_urls), batch_size):
            batch = list(image_urls[start:start + batch_size])
            outcomes = await asyncio.gather(
                *(self.analyze_image(url, extract_ui_elements, extract_colors) for url in batch),
                return_exceptions=True,
            )
            for url, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.log(
                        logging.WARNING,
                        "Image analysis failed",
                        extra={"extra": {"url": url, "error": str(outcome)}},
                    )
                    results.append(ImageAnalysisResult(url=url, ok=False, error=str(outcome)))
                else:
                    results.append(ImageAnalysisResult(url=url, ok=True, analysis=outcome))
            if delay and start + batch_size < len(image_urls):
                await asyncio.sleep(delay)
        return results

    async def _ask(self, image_url: str, prompt: str, max_tokens: int) -> str:
        message = ChatMessage(role="user", content=(TextPart(prompt), ImagePart(url=image_url)))
        completion = await self._provider.complete(
            [message],
            CompletionOptions(model=self._model, max_tokens=max_tokens),
        )
        return completion.text or ""
