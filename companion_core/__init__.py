"""Companion Core 顶层包。

该包提供 AI 助手的 Provider 编排与会话上下文管理，
包括配置加载、领域模型、Provider 适配与注册表、带 fallback 的路由、
token 预算内的上下文裁剪与摘要，以及持久化存储等能力。
"""

from companion_core.api.service import Services, build_services, send_chat

__all__ = ["Services", "build_services", "send_chat"]
