"""领域层模型与协议。

包含：
- models: 统一的 Message / AIModel / RequestOptions / Response 模型。
- conversation: 会话、摘要以及 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
