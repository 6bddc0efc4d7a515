"""Token 数量估算。

这里的 token 只是预算单位，不是真实分词器的输出。
两个实现可以互换：上下文裁剪、摘要触发和用量估算必须使用同一个实例，
否则它们对会话大小的判断会不一致。
"""

import math
import re
import string
from typing import Iterable

from companion_core.domain.models import Message


class TokenEstimator:
    """估算器基类，子类只需实现 estimate_text。"""

    name = "base"

    # 每条消息的角色等元数据开销
    ROLE_OVERHEAD = 4

    def estimate_text(self, text: str) -> int:
        raise NotImplementedError

    def estimate_message(self, message: Message) -> int:
        return self.ROLE_OVERHEAD + self.estimate_text(message.content)

    def estimate_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)

    def exceeds_limit(self, messages: Iterable[Message], limit: int) -> bool:
        return self.estimate_messages(messages) > limit


class HeuristicTokenEstimator(TokenEstimator):
    """平均 4 个字符一个 token，向上取整。"""

    name = "heuristic"

    CHARS_PER_TOKEN = 4.0

    def estimate_text(self, text: str) -> int:
        return int(math.ceil(len(text) / self.CHARS_PER_TOKEN))


class RegexTokenEstimator(TokenEstimator):
    """按词、标点、空白段、数字段分类计数，再加 5% 的长度修正。

    数字同时计入词和数字两类，因为它们通常被切成更多 token。
    """

    name = "regex"

    _WORD = re.compile(r"\b\w+\b")
    _PUNCTUATION = re.compile("[" + re.escape(string.punctuation) + "]")
    _WHITESPACE = re.compile(r"\s+")
    _NUMBER = re.compile(r"\d+")

    SPECIAL_ADJUSTMENT = 0.05

    def estimate_text(self, text: str) -> int:
        words = len(self._WORD.findall(text))
        punctuation = len(self._PUNCTUATION.findall(text))
        whitespace = len(self._WHITESPACE.findall(text))
        numbers = len(self._NUMBER.findall(text))
        adjustment = int(len(text) * self.SPECIAL_ADJUSTMENT)
        return words + punctuation + whitespace + numbers + adjustment


_ESTIMATORS = {
    HeuristicTokenEstimator.name: HeuristicTokenEstimator,
    RegexTokenEstimator.name: RegexTokenEstimator,
}


def create_estimator(name: str = "heuristic") -> TokenEstimator:
    """根据名称创建估算器，名称不区分大小写。"""

    key = name.lower()
    if key not in _ESTIMATORS:
        raise ValueError(f"Unknown token estimator: {name!r}")
    return _ESTIMATORS[key]()
