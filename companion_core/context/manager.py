"""会话上下文管理。

ContextManager 持有全部会话状态，并保证发给模型的消息列表不超过模型的 token 预算：

- 未超预算时原样返回历史。
- 超预算时从最新消息往回保留，开头的 system 消息优先计入。
- 历史超过上下文窗口的一定比例（默认 70%）后，在后台生成摘要，
  之后用一条 "Previous conversation summary" 系统消息替代已摘要的前缀。

写操作按会话串行（每个会话一把 asyncio.Lock），不同会话互不影响。
摘要与标题生成在后台任务中运行，失败只记日志，不影响对话。
"""

import asyncio
import logging
from typing import Any, Coroutine, Dict, List, Optional, Sequence, Set

from companion_core.config.settings import settings
from companion_core.domain.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationStore,
    ConversationSummary,
)
from companion_core.domain.exceptions import (
    BusinessError,
    ConversationNotFoundError,
    NoMessagesToSummarizeError,
    SummaryGenerationFailedError,
)
from companion_core.domain.models import AIModel, Message, RequestOptions
from companion_core.infrastructure.logging.logger import log_event, logger
from companion_core.prompts import SUMMARIZE, TITLE, load_system_prompt
from companion_core.routing.router import Router
from companion_core.tokens import TokenEstimator


SUMMARY_PREFIX = "Previous conversation summary:\n\n"
SUMMARIZE_REQUEST = "Please summarize this conversation:\n\n"

# 朴素标题取前几个词
NAIVE_TITLE_WORDS = 4


def naive_title(content: str) -> str:
    """取前四个空白分隔的词，后面还有内容时追加 "..."。"""

    words = content.split()
    if not words:
        return DEFAULT_TITLE
    title = " ".join(words[:NAIVE_TITLE_WORDS])
    if len(words) > NAIVE_TITLE_WORDS:
        title += "..."
    return title


class ContextManager:
    def __init__(
        self,
        router: Router,
        estimator: TokenEstimator,
        cfg=settings,
        store: Optional[ConversationStore] = None,
    ):
        self._router = router
        self._estimator = estimator
        self._settings = cfg
        self._store = store

        self._conversations: Dict[str, Conversation] = {}
        self._summaries: Dict[str, ConversationSummary] = {}
        self._current_id: Optional[str] = None

        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._pending_summaries: Dict[str, asyncio.Task] = {}
        # 会话每次被清空或删除时加一，后台结果按它判断是否过期
        self._generations: Dict[str, int] = {}

        self._summarize_prompt = load_system_prompt(SUMMARIZE)
        self._title_prompt = load_system_prompt(TITLE)

    # ---- 会话生命周期 ----

    def load(self) -> List[Conversation]:
        """从存储加载全部会话及其最新摘要，已在内存中的会话不会被覆盖。"""

        if self._store is None:
            return self.conversations
        for conv in self._store.list_conversations():
            if conv.id in self._conversations:
                continue
            self._conversations[conv.id] = conv
            summary = self._store.latest_summary(conv.id)
            if summary is not None:
                self._summaries[conv.id] = summary
        if self._current_id is None and self._conversations:
            latest = max(self._conversations.values(), key=lambda c: c.created_at)
            self._current_id = latest.id
        logger.info("Loaded conversations", extra={"extra": {"count": len(self._conversations)}})
        return self.conversations

    def create_conversation(self, title: str = DEFAULT_TITLE) -> Conversation:
        """创建新会话并设为当前会话。"""

        conv = Conversation(title=title)
        self._conversations[conv.id] = conv
        self._current_id = conv.id
        self._persist(conv)
        log_event(logging.INFO, "Created new conversation", {"conversation_id": conv.id})
        return conv

    def set_current_conversation(self, conversation_id: str) -> Conversation:
        conv = self._get(conversation_id)
        self._current_id = conv.id
        return conv

    @property
    def current_conversation(self) -> Conversation:
        """当前会话；还没有任何会话时自动创建一个。"""

        if self._current_id is None or self._current_id not in self._conversations:
            return self.create_conversation()
        return self._conversations[self._current_id]

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations.values())

    def latest_summary(self, conversation_id: Optional[str] = None) -> Optional[ConversationSummary]:
        return self._summaries.get(self._resolve(conversation_id).id)

    def delete_conversation(self, conversation_id: str) -> None:
        """删除会话。删除的是当前会话时切到剩下的第一个，全部删完则新建一个。"""

        conv = self._get(conversation_id)
        del self._conversations[conv.id]
        self._bump_generation(conv.id)
        self._summaries.pop(conv.id, None)
        self._locks.pop(conv.id, None)
        if self._store is not None:
            self._store.delete_conversation(conv.id)
        log_event(logging.INFO, "Deleted conversation", {"conversation_id": conv.id})

        if self._current_id == conv.id:
            self._current_id = None
            if self._conversations:
                self._current_id = next(iter(self._conversations))
            else:
                self.create_conversation()

    def clear_current_conversation(self) -> Conversation:
        """清空当前会话的消息与摘要，标题恢复默认。"""

        conv = self.current_conversation
        conv.messages = []
        conv.title = DEFAULT_TITLE
        self._bump_generation(conv.id)
        self._summaries.pop(conv.id, None)
        self._persist(conv)
        return conv

    # ---- 消息 ----

    async def add_message(self, message: Message, conversation_id: Optional[str] = None) -> Conversation:
        """追加一条消息并持久化。

        追加后会话恰好有两条消息且新消息来自用户时，
        立即设置朴素标题，并在后台请求模型生成更好的标题。
        """

        conv = self._resolve(conversation_id)
        async with self._lock_for(conv.id):
            conv.messages.append(message)
            needs_title = len(conv.messages) == 2 and message.role == "user"
            generation = self._generations.get(conv.id, 0)
            if needs_title:
                conv.title = naive_title(message.content)
            self._persist(conv)

        if needs_title:
            self._spawn(self._refine_title(message.content, conv, generation), "title", conv.id)
        return conv

    # ---- 上下文窗口 ----

    def get_context_window(self, model: AIModel, conversation_id: Optional[str] = None) -> List[Message]:
        """在模型上下文窗口内的消息列表，超出时按从新到旧保留。"""

        history = list(self._resolve(conversation_id).messages)
        if not self._estimator.exceeds_limit(history, model.context_window):
            return history
        return self.truncate(history, model.context_window)

    def truncate(self, messages: Sequence[Message], max_tokens: int) -> List[Message]:
        """裁剪到 max_tokens 以内。

        开头的 system 消息先计入预算；其余消息从最新往回保留，
        遇到第一条放不下的就停止。结果保持原有时间顺序，
        并且只要输入里有非 system 消息，结果里至少有最新的一条。
        """

        if not messages:
            return []
        rest = list(messages)
        head: List[Message] = []
        budget = max_tokens
        if rest[0].role == "system":
            system = rest.pop(0)
            head.append(system)
            budget -= self._estimator.estimate_message(system)

        kept: List[Message] = []
        for message in reversed(rest):
            cost = self._estimator.estimate_message(message)
            if cost > budget:
                break
            kept.append(message)
            budget -= cost
        kept.reverse()

        if not kept and rest:
            kept = [rest[-1]]
        return head + kept

    def conversation_needs_summarization(self, model: AIModel, conversation_id: Optional[str] = None) -> bool:
        conv = self._resolve(conversation_id)
        return self._estimator.exceeds_limit(conv.messages, self._summary_threshold(model))

    async def get_context_window_with_summary(
        self,
        model: AIModel,
        conversation_id: Optional[str] = None,
    ) -> List[Message]:
        """带摘要的上下文窗口。

        阈值只按原始历史判断一次；用摘要替换前缀之后不再和阈值比较，
        只在超出上下文窗口时再裁剪。
        """

        conv = self._resolve(conversation_id)
        async with self._lock_for(conv.id):
            history = list(conv.messages)
            summary = self._summaries.get(conv.id)

        if not self._estimator.exceeds_limit(history, self._summary_threshold(model)):
            return self.get_context_window(model, conv.id)

        if summary is None:
            self._schedule_summary(conv.id)
            return self.get_context_window(model, conv.id)

        combined = [Message(role="system", content=SUMMARY_PREFIX + summary.content)]
        combined.extend(m for m in history if not summary.covers(m))
        if not self._estimator.exceeds_limit(combined, model.context_window):
            return combined
        return self.truncate(combined, model.context_window)

    def _summary_threshold(self, model: AIModel) -> int:
        return int(model.context_window * self._settings.summary_trigger_ratio)

    # ---- 摘要 ----

    async def summarize_conversation(self, conversation_id: Optional[str] = None) -> ConversationSummary:
        """让模型为尚未摘要的消息生成摘要。

        第一次摘要时保留最近 summary_keep_recent 条消息不摘要；
        新摘要覆盖旧摘要的全部消息，旧摘要内容会作为上下文一并发给模型。
        生成期间若已有其他摘要提交，本次结果丢弃，返回已提交的摘要；
        会话在生成期间被清空或删除时同样丢弃。
        """

        conv = self._resolve(conversation_id)
        log_ctx: Dict[str, Any] = {"conversation_id": conv.id}
        async with self._lock_for(conv.id):
            history = list(conv.messages)
            prior = self._summaries.get(conv.id)
            generation = self._generations.get(conv.id, 0)

        selected = self._messages_to_summarize(history, prior)
        if not selected:
            raise NoMessagesToSummarizeError(conv.id)

        request_text = ""
        if prior is not None:
            request_text += SUMMARY_PREFIX + prior.content + "\n\n"
        request_text += SUMMARIZE_REQUEST
        for m in selected:
            request_text += f"[{m.role.capitalize()}]: {m.content}\n\n"

        options = RequestOptions(
            model=self._router.registry.default_model(),
            temperature=0.7,
            max_tokens=self._settings.summary_max_tokens,
            system_prompt=self._summarize_prompt,
        )
        log_event(logging.INFO, "Summarizing conversation", log_ctx, message_count=len(selected))
        response = await self._router.send_message([Message(role="user", content=request_text)], options)
        content = response.message.content.strip()
        if not content:
            raise SummaryGenerationFailedError(conv.id)

        covered = set(prior.summarized_message_ids) if prior is not None else set()
        covered.update(m.id for m in selected)
        summary = ConversationSummary(
            conversation_id=conv.id,
            content=content,
            summarized_message_ids=frozenset(covered),
            token_count=self._estimator.estimate_text(content),
        )

        async with self._lock_for(conv.id):
            current = self._summaries.get(conv.id)
            if current is not prior:
                log_event(logging.INFO, "Discarded stale summary", log_ctx, summary_id=summary.id)
                return current if current is not None else summary
            if self._is_reset(conv.id, generation):
                log_event(logging.INFO, "Discarded summary of a reset conversation", log_ctx)
                return summary
            self._summaries[conv.id] = summary
            if self._store is not None:
                self._store.save_summary(summary)

        log_event(
            logging.INFO,
            "Stored conversation summary",
            log_ctx,
            summary_id=summary.id,
            covered=len(covered),
            token_count=summary.token_count,
        )
        return summary

    def _messages_to_summarize(
        self,
        history: Sequence[Message],
        prior: Optional[ConversationSummary],
    ) -> List[Message]:
        if prior is None:
            keep = self._settings.summary_keep_recent
            return list(history[:-keep]) if len(history) > keep else []
        return [m for m in history if not prior.covers(m)]

    def _schedule_summary(self, conversation_id: str) -> None:
        """每个会话最多只有一个摘要任务在运行。"""

        pending = self._pending_summaries.get(conversation_id)
        if pending is not None and not pending.done():
            return
        task = self._spawn(self.summarize_conversation(conversation_id), "summary", conversation_id)
        self._pending_summaries[conversation_id] = task

    # ---- 标题 ----

    async def generate_title(self, content: str, conversation_id: Optional[str] = None) -> str:
        """请求模型生成标题并写入会话。

        模型失败、返回空文本或超过 title_max_length 时使用朴素标题。
        请求期间会话被清空或删除时不写回。
        """

        conv = self._resolve(conversation_id)
        return await self._refine_title(content, conv, self._generations.get(conv.id, 0))

    async def _refine_title(self, content: str, conv: Conversation, generation: int) -> str:
        title = naive_title(content)
        options = RequestOptions(
            model=self._router.registry.default_model(),
            temperature=0.7,
            max_tokens=self._settings.title_max_tokens,
            system_prompt=self._title_prompt,
        )
        try:
            response = await self._router.send_message([Message(role="user", content=content)], options)
        except BusinessError as e:
            log_event(logging.WARNING, "Title generation failed", {"conversation_id": conv.id}, error=e.message)
        else:
            refined = response.message.content.strip()
            if refined and len(refined) <= self._settings.title_max_length:
                title = refined

        async with self._lock_for(conv.id):
            if self._is_reset(conv.id, generation):
                log_event(logging.INFO, "Discarded title of a reset conversation", {"conversation_id": conv.id})
                return title
            conv.title = title
            self._persist(conv)
        return title

    # ---- 导出 ----

    def export_conversation(self, conversation_id: Optional[str] = None) -> str:
        """导出为 Markdown：标题 + 每条消息一节。"""

        conv = self._resolve(conversation_id)
        parts = [f"# {conv.title}\n\n"]
        for m in conv.messages:
            stamp = m.timestamp.strftime("%Y-%m-%d %H:%M")
            parts.append(f"## {m.role.capitalize()} ({stamp})\n\n")
            parts.append(m.content + "\n\n")
        return "".join(parts)

    # ---- 后台任务 ----

    async def drain(self) -> None:
        """等待全部后台任务结束（测试与退出时使用）。"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any], kind: str, conversation_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if self._pending_summaries.get(conversation_id) is t:
                del self._pending_summaries[conversation_id]
            if t.cancelled():
                return
            error = t.exception()
            if error is None:
                return
            log_ctx = {"conversation_id": conversation_id, "task": kind}
            if isinstance(error, NoMessagesToSummarizeError):
                log_event(logging.INFO, "Nothing to summarize", log_ctx)
            elif isinstance(error, BusinessError):
                log_event(logging.WARNING, "Background task failed", log_ctx, error_code=error.code, error=error.message)
            else:
                logger.error(
                    "Background task crashed",
                    exc_info=(type(error), error, error.__traceback__),
                    extra={"extra": log_ctx},
                )

        task.add_done_callback(_done)
        return task

    # ---- 内部辅助 ----

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def _bump_generation(self, conversation_id: str) -> None:
        self._generations[conversation_id] = self._generations.get(conversation_id, 0) + 1

    def _is_reset(self, conversation_id: str, generation: int) -> bool:
        return conversation_id not in self._conversations or self._generations.get(conversation_id, 0) != generation

    def _get(self, conversation_id: str) -> Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(conversation_id)
        return conv

    def _resolve(self, conversation_id: Optional[str]) -> Conversation:
        if conversation_id is None:
            return self.current_conversation
        return self._get(conversation_id)

    def _persist(self, conv: Conversation) -> None:
        if self._store is not None:
            self._store.save_conversation(conv)
