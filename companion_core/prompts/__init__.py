"""系统提示词加载工具。

按名称和语言(locale) 从 prompts/<locale> 目录读取 system prompt 文本，
用于摘要生成和标题生成请求的 RequestOptions.system_prompt。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent

SUMMARIZE = "summarize"
TITLE = "title"


def load_system_prompt(name: str, locale: str = "en") -> str:
    """根据提示词名称和语言加载系统提示词文本。

    name 对应 prompts/<locale>/<name>_system.md，去掉首尾空白。
    """

    fname = PROMPTS_DIR / locale / f"{name}_system.md"
    return fname.read_text(encoding="utf-8").strip()
