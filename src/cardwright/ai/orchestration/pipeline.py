"""Chat pipeline: the per-session tool-calling turn loop.

A turn moves through ``BUILDING_CONTEXT -> AWAITING_COMPLETION ->
(EXECUTING_TOOLS)* -> DONE | FAILED``. Tool calls from one response run
sequentially in array order because tools mutate the character profile that
the next context build reads.

History is only extended when a turn succeeds. A user message sent with
:meth:`ChatPipeline.send_message` is committed (and flushed) before the first
completion request and survives a failed turn; the assistant tool-call and
tool reply messages produced along the way are committed together with the
final answer, never on their own.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence

from ...characters.models import CharacterProfile
from ...errors import (
    CompletionEndpointError,
    InvalidHistoryOperation,
    ToolLoopExceeded,
    TurnTimeoutError,
)
from ...events import (
    ContextBuilt,
    Event,
    EventSink,
    MessageReceived,
    MessageSent,
    TokenStats,
    ToolExecuted,
    TurnFailed,
)
from ...sessions.manager import SessionManager
from ...sessions.session import Session, SessionStatus
from ...utils.logging import session_context
from ..ai_types import PipelineConfig
from .context_builder import ContextBuilder, ContextBuildResult
from .tools.executor import ToolExecutor
from .types import (
    FailureKind,
    Message,
    ModelResponse,
    ToolCallRecord,
    TurnFailure,
    TurnResult,
    TurnState,
)

__all__ = ["ModelClient", "ChatPipeline"]

LOGGER = logging.getLogger(__name__)


class ModelClient(Protocol):
    """What the pipeline needs from a completion endpoint client."""

    async def chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: str | Mapping[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        ...


@dataclass(slots=True)
class _TurnView:
    """Session snapshot handed to the context builder for one round."""

    profile: CharacterProfile
    history: Sequence[Message]
    token_budget: int


class ChatPipeline:
    """Runs chat turns against resident sessions."""

    def __init__(
        self,
        manager: SessionManager,
        builder: ContextBuilder,
        client: ModelClient,
        executor: ToolExecutor,
        *,
        events: EventSink | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self._manager = manager
        self._builder = builder
        self._client = client
        self._executor = executor
        self._events = events
        self._config = (config or PipelineConfig()).clamp()

    @property
    def config(self) -> PipelineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Turn operations
    # ------------------------------------------------------------------
    async def send_message(self, session: Session, user_text: str) -> TurnResult:
        """Append a user message and run a turn answering it."""

        if not user_text or not user_text.strip():
            raise InvalidHistoryOperation("Cannot send an empty message")
        async with self._locked(session) as active:
            message = Message.user(user_text)
            active.history.append(message)
            self._persist(active)
            self._publish(
                MessageSent(character_id=active.id, content=user_text, index=len(active.history) - 1)
            )
            return await self._run_turn(active, len(active.history))

    async def regenerate_last_message(self, session: Session) -> TurnResult:
        """Replace the trailing assistant reply with a fresh one for the same user message.

        The old reply stays in history until the new turn succeeds.
        """

        async with self._locked(session) as active:
            history = active.history
            if not history or history[-1].role != "assistant":
                raise InvalidHistoryOperation("The last message is not an assistant reply")
            user_index = _last_index_of(history, "user")
            if user_index is None:
                raise InvalidHistoryOperation("No user message to regenerate a reply for")
            return await self._run_turn(active, user_index + 1)

    async def continue_chat(self, session: Session) -> TurnResult:
        """Answer a trailing user message that has no reply yet."""

        async with self._locked(session) as active:
            last = active.last_message
            if last is None or last.role != "user":
                raise InvalidHistoryOperation("continue requires the last message to be a user message")
            return await self._run_turn(active, len(active.history))

    # ------------------------------------------------------------------
    # History edits
    # ------------------------------------------------------------------
    async def edit_message(self, session: Session, index: int, new_content: str) -> Message:
        async with self._locked(session) as active:
            if not 0 <= index < len(active.history):
                raise InvalidHistoryOperation(
                    f"Message index {index} out of range ({len(active.history)} message(s))"
                )
            updated = replace(active.history[index], content=new_content)
            self._manager.replace_message(active, index, updated)
            LOGGER.debug("Edited message %d in session %s", index, active.id)
            return updated

    async def delete_message(self, session: Session, index: int) -> Message:
        async with self._locked(session) as active:
            removed = self._manager.delete_message(active, index)
            LOGGER.debug("Deleted message %d from session %s", index, active.id)
            return removed

    async def clear_history(self, session: Session) -> int:
        async with self._locked(session) as active:
            return self._manager.clear_history(active)

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------
    async def _run_turn(self, active: Session, base_length: int) -> TurnResult:
        """Run the tool loop answering ``active.history[:base_length]``."""

        result = TurnResult(session_id=active.id, state=TurnState.BUILDING_CONTEXT)
        tools = self._executor.registry.get_openai_tools()
        turn_messages: list[Message] = []
        last_content = ""
        max_iterations = self._config.max_iterations

        for iteration in range(1, max_iterations + 1):
            result.state = TurnState.BUILDING_CONTEXT
            context = self._build_context(active, base_length, turn_messages, tools)
            result.context_tokens = context.total_tokens

            result.state = TurnState.AWAITING_COMPLETION
            try:
                response = await self._request_completion(context, tools)
            except asyncio.TimeoutError:
                timeout = self._config.completion_timeout or 0.0
                return self._fail(active, result, FailureKind.TIMEOUT, TurnTimeoutError(timeout))
            except CompletionEndpointError as exc:
                return self._fail(active, result, FailureKind.ENDPOINT_ERROR, exc)

            result.iterations = iteration
            result.usage = result.usage + response.usage
            if response.content.strip():
                last_content = response.content

            if not response.has_tool_calls:
                final = Message.assistant(response.content)
                return self._finish(active, result, base_length, turn_messages, final, context)
            if iteration == max_iterations:
                LOGGER.warning(
                    "Session %s reached the tool iteration cap (%d); skipping %d tool call(s)",
                    active.id,
                    max_iterations,
                    len(response.tool_calls),
                )
                break

            result.state = TurnState.EXECUTING_TOOLS
            turn_messages.append(Message.assistant(response.content, tool_calls=response.tool_calls))
            for call in response.tool_calls:
                tool_result = await self._executor.execute(
                    call, active.id, timeout=self._config.tool_timeout
                )
                turn_messages.append(
                    Message.tool(tool_result.to_content(), tool_call_id=call.id, name=call.name)
                )
                result.tool_calls.append(ToolCallRecord(call=call, result=tool_result))
                self._publish(
                    ToolExecuted(
                        character_id=active.id,
                        tool_name=call.name,
                        tool_call_id=call.id,
                        success=tool_result.success,
                        result=tool_result.data,
                        error=tool_result.error,
                        execution_time_ms=tool_result.execution_time_ms,
                    )
                )

        if last_content:
            final = Message.assistant(last_content, max_iterations_reached=True)
            return self._finish(active, result, base_length, turn_messages, final, None)
        return self._fail(
            active, result, FailureKind.TOOL_LOOP_EXCEEDED, ToolLoopExceeded(max_iterations)
        )

    def _build_context(
        self,
        active: Session,
        base_length: int,
        turn_messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]],
    ) -> ContextBuildResult:
        view = _TurnView(
            profile=active.profile,
            history=active.history[:base_length],
            token_budget=active.token_budget,
        )
        context = self._builder.build_full_context(view, turn_messages=turn_messages, tools=tools)
        active.last_context_tokens = context.total_tokens
        self._publish(
            ContextBuilt(
                character_id=active.id,
                total_tokens=context.total_tokens,
                token_budget=context.token_budget,
                allocation=context.token_allocation.to_dict(),
                was_truncated=context.was_truncated,
                history_messages=len(context.history_messages),
            )
        )
        return context

    async def _request_completion(
        self,
        context: ContextBuildResult,
        tools: Sequence[Mapping[str, Any]],
    ) -> ModelResponse:
        request = self._client.chat(
            context.to_chat_params(),
            tools=list(tools) or None,
            tool_choice=self._config.tool_choice if tools else None,
            temperature=self._config.temperature,
            max_tokens=self._config.max_response_tokens,
        )
        timeout = self._config.completion_timeout
        if timeout is None:
            return await request
        return await asyncio.wait_for(request, timeout=timeout)

    def _finish(
        self,
        active: Session,
        result: TurnResult,
        base_length: int,
        turn_messages: list[Message],
        final: Message,
        context: ContextBuildResult | None,
    ) -> TurnResult:
        if len(active.history) > base_length:
            self._manager.truncate_history(active, base_length)
        active.history.extend(turn_messages)
        active.history.append(final)
        self._persist(active)
        active.last_usage = result.usage
        active.touch()

        result.state = TurnState.DONE
        result.message = final
        result.intermediate_messages = list(turn_messages)
        LOGGER.debug(
            "Turn finished for %s after %d iteration(s), %d tool call(s)",
            active.id,
            result.iterations,
            len(result.tool_calls),
        )
        self._publish(
            MessageReceived(
                character_id=active.id,
                content=final.content,
                index=len(active.history) - 1,
                intermediate_messages=tuple(turn_messages),
            )
        )
        budget = context.token_budget if context is not None else active.token_budget
        self._publish(
            TokenStats(
                character_id=active.id,
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
                context_tokens=result.context_tokens,
                budget_utilization=(result.context_tokens / budget) if budget else 0.0,
            )
        )
        return result

    def _fail(
        self,
        active: Session,
        result: TurnResult,
        kind: FailureKind,
        error: Exception,
    ) -> TurnResult:
        result.state = TurnState.FAILED
        result.failure = TurnFailure(kind=kind, message=str(error), error=error)
        active.touch()
        LOGGER.warning("Turn failed for session %s (%s): %s", active.id, kind.value, error)
        self._publish(TurnFailed(character_id=active.id, failure=kind.value, message=str(error)))
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _locked(self, session: Session) -> AsyncIterator[Session]:
        """Hold the session lock, following the character into a fresh session if evicted."""

        current = session
        while True:
            await current.lock.acquire()
            if not current.closed:
                break
            current.lock.release()
            LOGGER.debug("Session %s was evicted; reloading before the operation", current.id)
            current = await self._manager.load_session(current.id)
        try:
            current.touch()
            with session_context(current.id):
                yield current
        finally:
            current.lock.release()

    def _persist(self, active: Session) -> bool:
        """Flush unsaved history; a write failure parks the session in ``ERROR``."""

        try:
            self._manager.flush(active)
        except OSError as exc:
            LOGGER.error(
                "Failed to write chat log for %s; %d message(s) stay queued: %s",
                active.id,
                active.unsaved_count,
                exc,
            )
            active.mark_error(f"Chat log write failed: {exc}")
            return False
        if active.status is SessionStatus.ERROR:
            active.status = SessionStatus.ACTIVE
            active.error = None
        return True

    def _publish(self, event: Event) -> None:
        if self._events is not None:
            self._events.publish(event)


def _last_index_of(history: Sequence[Message], role: str) -> int | None:
    for index in range(len(history) - 1, -1, -1):
        if history[index].role == role:
            return index
    return None
