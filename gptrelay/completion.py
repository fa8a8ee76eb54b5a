"""Completion provider client and invoker — pydantic-ai behind a continuation-id API.

This module owns everything between "a prompt for this chat" and "an answer
or an error":

  - CompletionClient  — submits a prompt through a pydantic-ai Agent, streams
                        text deltas, and keeps recent answers' message
                        history under an opaque id. Passing that id back as
                        ``parent_id`` continues the conversation; passing None
                        starts a new one.
  - invoke_completion — the per-chat policy on top: which system message and
                        parameters apply, the partial-answer buffer, the typing
                        indicator, and whether the answer is remembered.

Architecture decisions reflected here:
- Agent is instantiated at module level with model=None and defer_model_check=True,
  so importing this module never needs provider credentials. The model string
  is resolved per call from the chat's completion parameters.
- The system prompt is dynamic — it comes from the per-call deps and is
  re-evaluated even when a continuation's message history is replayed, so a
  changed persona applies to the next turn.
- Function schemas from the config become tools built with Tool.from_schema.
  The tool body hands the arguments straight back as JSON for the model to
  word an answer from; the bot has no side effects to run.
- Every failure (timeout, HTTP error, transport error) surfaces as
  CompletionError. Retry policy belongs to the dispatcher.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import logfire
from pydantic_ai import Agent, RunContext, Tool
from pydantic_ai.toolsets import FunctionToolset

from gptrelay.config import get_settings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from pydantic_ai.messages import ModelMessage
    from pydantic_ai.settings import ModelSettings

    from gptrelay.chat.threads import ThreadState
    from gptrelay.models import ChatConfig, CompletionParams, FunctionSchema, RelayConfig

logger = logging.getLogger(__name__)

# logfire.configure() is called in gptrelay/chat/__main__.py with the real token.
logfire.instrument_pydantic_ai()

DEFAULT_SYSTEM_MESSAGE = (
    "You answer as concisely as possible for each response. "
    "If you are generating a list, do not have too many items.\n"
    "Current date: {date}\n\n"
)

DATE_PLACEHOLDER = "{date}"

# Minimum seconds between two typing indicators for one completion.
TYPING_INTERVAL_SECONDS: float = 4.0

# Answers kept for continuation before the least recently used is dropped.
MAX_STORED_ANSWERS: int = 1000

# Streamed deltas are grouped for this long before being handed on.
STREAM_DEBOUNCE_SECONDS: float = 0.1

CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"


class CompletionError(Exception):
    """A completion call failed. ``message`` is fit to show the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def is_context_length_exceeded(self) -> bool:
        return CONTEXT_LENGTH_EXCEEDED in self.message


@dataclass(frozen=True)
class CompletionAnswer:
    """A final answer plus what is needed to continue after it."""

    id: str
    text: str
    parent_id: str | None = None
    messages: list[ModelMessage] = field(default_factory=list, repr=False)


# ── Agent ──────────────────────────────────────────────────────────────────────


@dataclass
class RelayDeps:
    """Per-call inputs read by the dynamic system prompt."""

    system_message: str
    username: str | None = None


agent: Agent[RelayDeps, str] = Agent(
    model=None,
    deps_type=RelayDeps,
    output_type=str,
    defer_model_check=True,
)


@agent.system_prompt(dynamic=True)
def system_prompt(ctx: RunContext[RelayDeps]) -> str:
    if ctx.deps.username:
        return f"{ctx.deps.system_message}\n\nThe user's name is {ctx.deps.username}."
    return ctx.deps.system_message


def _function_tool(schema: FunctionSchema) -> Tool:
    def echo_arguments(**kwargs: Any) -> str:
        return json.dumps(kwargs, ensure_ascii=False)

    return Tool.from_schema(
        function=echo_arguments,
        name=schema.name,
        description=schema.description,
        json_schema=schema.parameters,
    )


def model_settings_for(params: CompletionParams, timeout_seconds: float) -> ModelSettings:
    """pydantic-ai ModelSettings for the configured sampling parameters."""
    settings: dict[str, Any] = {"timeout": timeout_seconds}
    for key in ("temperature", "top_p", "presence_penalty", "max_tokens"):
        value = getattr(params, key)
        if value is not None:
            settings[key] = value
    return settings  # type: ignore[return-value]


# ── Client ─────────────────────────────────────────────────────────────────────


class CompletionClient:
    """Prompt submission with id-based continuation.

    Answers are kept in memory, least recently used first out once there are
    more than ``max_answers``. An unknown ``parent_id`` (evicted, or from
    before a restart) silently starts a new context.
    """

    def __init__(self, max_answers: int = MAX_STORED_ANSWERS) -> None:
        self._max_answers = max_answers
        self._answers: OrderedDict[str, CompletionAnswer] = OrderedDict()

    def __len__(self) -> int:
        return len(self._answers)

    def get_answer(self, answer_id: str) -> CompletionAnswer | None:
        answer = self._answers.get(answer_id)
        if answer is not None:
            self._answers.move_to_end(answer_id)
        return answer

    def _remember(self, answer: CompletionAnswer) -> None:
        self._answers[answer.id] = answer
        while len(self._answers) > self._max_answers:
            self._answers.popitem(last=False)

    async def send_message(
        self,
        text: str,
        *,
        system_message: str,
        params: CompletionParams,
        timeout_seconds: float,
        username: str | None = None,
        parent_id: str | None = None,
        on_delta: Callable[[str], None] | None = None,
        remember: bool = True,
    ) -> CompletionAnswer:
        """Submit ``text`` and stream the answer.

        Args:
            text: The user prompt.
            system_message: Instruction text for this call.
            params: Model name and sampling parameters.
            timeout_seconds: Upper bound for the whole call, streaming included.
            username: Sender name passed to the model.
            parent_id: Id of the answer to continue from; None for a new context.
            on_delta: Called with each streamed text fragment, in order.
            remember: Keep the answer so a later call can continue from it.

        Returns:
            The final answer, remembered under its id when ``remember`` is set.

        Raises:
            CompletionError: The call failed or timed out.
        """
        parent = self.get_answer(parent_id) if parent_id else None
        history = list(parent.messages) if parent is not None else []
        toolsets = (
            [FunctionToolset([_function_tool(f) for f in params.functions])]
            if params.functions
            else None
        )
        deps = RelayDeps(system_message=system_message, username=username)
        fragments: list[str] = []

        async def _stream() -> list[ModelMessage]:
            async with agent.run_stream(
                text,
                model=get_settings().model_string(params.model),
                deps=deps,
                message_history=history,
                model_settings=model_settings_for(params, timeout_seconds),
                toolsets=toolsets,
            ) as result:
                async for delta in result.stream_text(
                    delta=True, debounce_by=STREAM_DEBOUNCE_SECONDS
                ):
                    fragments.append(delta)
                    if on_delta is not None:
                        on_delta(delta)
                return result.all_messages()

        with logfire.span("completion", model=params.model, continued=parent is not None):
            try:
                messages = await asyncio.wait_for(_stream(), timeout=timeout_seconds)
            except TimeoutError:
                raise CompletionError(
                    f"Completion timed out after {timeout_seconds:g}s"
                ) from None
            except Exception as e:
                raise CompletionError(str(e) or type(e).__name__) from e

        answer = CompletionAnswer(
            id=str(uuid.uuid4()),
            text="".join(fragments),
            parent_id=parent_id,
            messages=messages,
        )
        if remember:
            self._remember(answer)
        return answer


# ── Per-chat policy ───────────────────────────────────────────────────────────


def effective_system_message(thread: ThreadState | None, chat: ChatConfig, config: RelayConfig) -> str:
    """The standing system message for a chat, without any one-shot override."""
    if thread is not None and thread.custom_system_message:
        return thread.custom_system_message
    return chat.system_message or config.system_message or DEFAULT_SYSTEM_MESSAGE


def resolve_system_message(
    thread: ThreadState,
    chat: ChatConfig,
    config: RelayConfig,
    now: datetime | None = None,
) -> str:
    """System message for the next call, consuming a pending one-shot override.

    ``{date}`` is replaced with the current ISO timestamp.
    """
    message = thread.take_next_system_message() or effective_system_message(thread, chat, config)
    date = (now or datetime.now().astimezone()).isoformat()
    return message.replace(DATE_PLACEHOLDER, date)


def resolve_completion_params(
    thread: ThreadState, chat: ChatConfig, config: RelayConfig
) -> CompletionParams:
    return thread.completion_params or chat.completion_params or config.completion_params


class TypingThrottle:
    """Bounded-rate typing indicator, fed by streaming progress.

    The first notify() signals immediately; later ones at most once per
    ``interval`` seconds. Sends are fire-and-forget and their failures are
    logged, never raised.
    """

    def __init__(
        self,
        send: Callable[[], Awaitable[object]],
        interval: float = TYPING_INTERVAL_SECONDS,
    ) -> None:
        self._send = send
        self._interval = interval
        self._last: float | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    def notify(self) -> None:
        now = time.monotonic()
        if self._last is not None and now - self._last < self._interval:
            return
        self._last = now
        task = asyncio.get_running_loop().create_task(self._signal())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _signal(self) -> None:
        try:
            await self._send()
        except Exception:
            logger.warning("Typing indicator failed", exc_info=True)


async def invoke_completion(
    client: CompletionClient,
    thread: ThreadState,
    chat: ChatConfig,
    config: RelayConfig,
    text: str,
    *,
    username: str | None = None,
    on_typing: Callable[[], Awaitable[object]] | None = None,
) -> CompletionAnswer:
    """Run one completion for a chat and update its thread.

    The thread's partial-answer buffer collects streamed text while the call
    runs and is cleared again on success; after a failure it still holds
    whatever arrived, for the dispatcher to salvage.

    Raises:
        CompletionError: Propagated from the client, buffer left as-is.
    """
    system_message = resolve_system_message(thread, chat, config)
    params = resolve_completion_params(thread, chat, config)
    typing = TypingThrottle(on_typing) if on_typing is not None else None

    def on_delta(delta: str) -> None:
        thread.partial_answer += delta
        if typing is not None:
            typing.notify()

    thread.partial_answer = ""
    answer = await client.send_message(
        text,
        system_message=system_message,
        params=params,
        timeout_seconds=config.timeout_ms / 1000,
        username=username,
        parent_id=thread.continuation_id,
        on_delta=on_delta,
        remember=not chat.memoryless,
    )
    thread.partial_answer = ""
    if config.debug:
        logger.info("Completion result: %r", answer)
    if not chat.memoryless:
        thread.last_answer = answer
    return answer
