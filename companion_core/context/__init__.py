"""会话上下文：token 预算内的历史视图、摘要与标题。"""

from companion_core.context.manager import SUMMARY_PREFIX, ContextManager, naive_title

__all__ = ["SUMMARY_PREFIX", "ContextManager", "naive_title"]
