"""系统提示词加载工具。

按 Agent 类型与语言(locale) 从 prompts/<locale> 目录读取 system prompt 文本，
作为 ConversationAgent 的基础提示词（检索片段会追加在其后）。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(agent_type: str = "design-copilot", locale: str = "en") -> str:
    """根据 Agent 类型和语言加载系统提示词文本，去掉末尾换行。"""

    fname = PROMPTS_DIR / locale / f"{agent_type.replace('-', '_')}_system.md"
    return fname.read_text(encoding="utf-8").rstrip("\n")
