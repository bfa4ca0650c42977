"""ContextManager - conversation history inside a token budget."""

from __future__ import annotations

import logging
from typing import Callable

from agent.exceptions import ContextOverflowError
from agent.response import Message
from providers.base import estimate_tokens


OPTIMIZE_AT_PERCENT = 80
TARGET_PERCENT = 70
KEEP_FIRST = 1
KEEP_LAST = 4


class ContextManager:
    """
    Owns the ordered message history for one session.

    Token usage is the full system prompt (with injected memory) plus every
    message body, counted with the active backend's counter. When usage
    reaches 80% of the ceiling, ``optimized_messages`` returns a trimmed
    copy aimed at 70%; the stored history is left untouched.
    """

    def __init__(
        self,
        max_context_tokens: int = 100000,
        reserve_tokens_for_response: int = 4096,
        system_prompt: str = "",
        strict: bool = False,
        logger: logging.Logger | None = None,
    ):
        self.max_context_tokens = max_context_tokens
        self.reserve_tokens_for_response = reserve_tokens_for_response
        self.strict = strict
        self._system_prompt = system_prompt
        self._memory = ""
        self._messages: list[Message] = []
        self._counter: Callable[[str], int] = estimate_tokens
        self._logger = logger or logging.getLogger("tiered_agents.context")

    # ── Configuration ────────────────────────────────────────────────

    def set_backend(self, backend) -> None:
        """Adopt a backend's token counter and never exceed its window."""
        self._counter = backend.count_tokens
        window = backend.context_window_size()
        if window < self.max_context_tokens:
            self._logger.info(
                "Lowering context ceiling from %d to %d for %s",
                self.max_context_tokens, window, backend.backend_id,
            )
            self.max_context_tokens = window

    def set_system_prompt(self, prompt: str) -> None:
        self._system_prompt = prompt

    def set_memory(self, memory: str) -> None:
        self._memory = memory or ""

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def full_system_prompt(self) -> str:
        if not self._memory:
            return self._system_prompt
        return f"{self._system_prompt}\n\n<persistent_memory>\n{self._memory}\n</persistent_memory>"

    # ── History ──────────────────────────────────────────────────────

    def add_message(self, role: str, content: str) -> Message:
        if role not in ("user", "assistant", "system"):
            raise ValueError(f"Unknown message role: {role}")
        message = Message(role=role, content=content)
        self._messages.append(message)
        return message

    def add_messages(self, messages: list[Message]) -> None:
        for message in messages:
            self._messages.append(message)

    def messages(self) -> list[Message]:
        return list(self._messages)

    def last_messages(self, count: int) -> list[Message]:
        if count <= 0:
            return []
        return self._messages[-count:]

    def pop_last_message(self) -> Message | None:
        return self._messages.pop() if self._messages else None

    def clear_messages(self) -> None:
        """Drop the conversation but keep system prompt and memory."""
        self._messages = []

    def reset(self) -> None:
        self._messages = []
        self._memory = ""

    # ── Accounting ───────────────────────────────────────────────────

    def count_tokens(self, text: str) -> int:
        return self._counter(text)

    def total_tokens(self, messages: list[Message] | None = None) -> int:
        messages = self._messages if messages is None else messages
        total = self.count_tokens(self.full_system_prompt())
        for message in messages:
            total += self.count_tokens(message.content)
        return total

    def usage_percent(self) -> float:
        return self.total_tokens() / self.max_context_tokens * 100

    def stats(self) -> dict:
        system_tokens = self.count_tokens(self.full_system_prompt())
        conversation_tokens = sum(self.count_tokens(m.content) for m in self._messages)
        total = system_tokens + conversation_tokens
        available = self.max_context_tokens - self.reserve_tokens_for_response - total
        return {
            "message_count": len(self._messages),
            "total_tokens": total,
            "system_prompt_tokens": system_tokens,
            "memory_tokens": self.count_tokens(self._memory) if self._memory else 0,
            "conversation_tokens": conversation_tokens,
            "available_tokens": max(0, available),
            "usage_percent": round(total / self.max_context_tokens * 100, 2),
        }

    def would_overflow(self, additional_tokens: int) -> bool:
        limit = self.max_context_tokens - self.reserve_tokens_for_response
        return self.total_tokens() + additional_tokens > limit

    # ── Optimization ─────────────────────────────────────────────────

    def optimized_messages(self) -> list[Message]:
        """History as it should be sent to the backend this turn."""
        total = self.total_tokens()
        if total / self.max_context_tokens * 100 < OPTIMIZE_AT_PERCENT:
            return self.messages()

        target = int(self.max_context_tokens * TARGET_PERCENT / 100)
        trimmed = self._trim(total - target)

        if self.total_tokens(trimmed) > target:
            self._logger.warning(
                "Context still over target after trimming (%d tokens, target %d)",
                self.total_tokens(trimmed), target,
            )
            if self.strict and self.total_tokens(trimmed) > self.max_context_tokens - self.reserve_tokens_for_response:
                raise ContextOverflowError(
                    f"Kept messages need {self.total_tokens(trimmed)} tokens, "
                    f"budget is {self.max_context_tokens - self.reserve_tokens_for_response}"
                )
        return trimmed

    def _trim(self, tokens_to_free: int) -> list[Message]:
        messages = self.messages()
        middle = messages[KEEP_FIRST:-KEEP_LAST] if len(messages) > KEEP_FIRST + KEEP_LAST else []
        if not middle:
            return messages

        freed = 0
        trim_count = 0
        for message in middle:
            if freed >= tokens_to_free:
                break
            freed += self.count_tokens(message.content)
            trim_count += 1

        if trim_count == 0 or freed < tokens_to_free:
            # the keep-window alone is over target; never evict inside it
            return messages

        marker = Message(
            role="system",
            content=f"[{trim_count} earlier messages summarized to save context]",
        )
        self._logger.info("Trimmed %d messages, freed ~%d tokens", trim_count, freed)
        return messages[:KEEP_FIRST] + [marker] + messages[KEEP_FIRST + trim_count:]
