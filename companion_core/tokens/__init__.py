"""Token 估算策略。"""

from companion_core.tokens.estimator import (
    HeuristicTokenEstimator,
    RegexTokenEstimator,
    TokenEstimator,
    create_estimator,
)

__all__ = ["HeuristicTokenEstimator", "RegexTokenEstimator", "TokenEstimator", "create_estimator"]
