"""请求路由：主 Provider 调用与一次性 fallback。"""

from companion_core.routing.router import FALLBACK_NOTICE, FALLBACK_PRIORITY, RequestState, RequestTracker, Router

__all__ = ["FALLBACK_NOTICE", "FALLBACK_PRIORITY", "RequestState", "RequestTracker", "Router"]
