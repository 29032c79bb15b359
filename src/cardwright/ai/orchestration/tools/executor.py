"""Tool executor that turns every outcome into a :class:`ToolResult`.

Unknown tools, malformed JSON, schema violations, timeouts and exceptions
raised by the tool are all reported as failed results. Nothing raised by a
tool escapes :meth:`ToolExecutor.execute`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ....errors import ToolExecutionError
from ..types import ToolCall
from .registry import ToolRegistry
from .types import ToolResult, ToolSpec

__all__ = [
    "ToolExecutor",
    "ExecutorConfig",
    "parse_tool_arguments",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Timeout for a single tool execution in seconds.
        validate_arguments: Check arguments against the tool's JSON schema.
        log_arguments: Whether to log tool arguments (may contain card text).
    """

    default_timeout: float | None = 30.0
    validate_arguments: bool = True
    log_arguments: bool = False


def parse_tool_arguments(raw: str | Mapping[str, Any] | None) -> dict[str, Any]:
    """Decode a tool-call argument payload into a dict.

    Raises:
        ToolExecutionError: If the payload is not a JSON object.
    """

    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    text = raw.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(f"Invalid JSON arguments: {exc.msg}", cause=exc) from exc
    if not isinstance(parsed, dict):
        raise ToolExecutionError(
            f"Tool arguments must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed


class ToolExecutor:
    """Executes tool calls from a registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or ExecutorConfig()
        self._validators: dict[str, Draft202012Validator | None] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(
        self,
        call: ToolCall,
        character_id: str,
        *,
        timeout: float | None = None,
    ) -> ToolResult:
        """Execute ``call`` on behalf of ``character_id``."""

        start_time = time.perf_counter()

        def _elapsed() -> float:
            return (time.perf_counter() - start_time) * 1000

        tool = self._registry.get(call.name)
        if tool is None:
            LOGGER.warning("Tool '%s' not found (call_id=%s)", call.name, call.id)
            return ToolResult.failure(f"Unknown tool: {call.name}", execution_time_ms=_elapsed())

        try:
            arguments = parse_tool_arguments(call.arguments)
            if self._config.validate_arguments:
                self._validate(tool.spec, arguments)
        except ToolExecutionError as exc:
            LOGGER.debug("Rejected arguments for tool %s: %s", call.name, exc)
            return ToolResult.failure(str(exc), execution_time_ms=_elapsed())

        if self._config.log_arguments:
            LOGGER.debug(
                "Executing tool %s (call_id=%s) with arguments: %s",
                call.name,
                call.id,
                arguments,
            )
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", call.name, call.id)

        effective_timeout = timeout if timeout is not None else self._config.default_timeout
        try:
            if effective_timeout is not None and effective_timeout > 0:
                outcome = await asyncio.wait_for(
                    tool.execute(arguments, character_id),
                    timeout=effective_timeout,
                )
            else:
                outcome = await tool.execute(arguments, character_id)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Tool %s timed out after %.1fms (timeout=%.1fs)",
                call.name,
                _elapsed(),
                effective_timeout,
            )
            return ToolResult.failure(
                f"Tool '{call.name}' timed out after {effective_timeout:.1f}s",
                execution_time_ms=_elapsed(),
            )
        except Exception as exc:
            LOGGER.warning("Tool %s failed after %.1fms: %s", call.name, _elapsed(), exc)
            return ToolResult.failure(str(exc) or type(exc).__name__, execution_time_ms=_elapsed())

        result = outcome if isinstance(outcome, ToolResult) else ToolResult.ok(outcome)
        result.execution_time_ms = _elapsed()
        LOGGER.debug(
            "Tool %s completed in %.1fms (success=%s)",
            call.name,
            result.execution_time_ms,
            result.success,
        )
        return result

    def _validate(self, spec: ToolSpec, arguments: Mapping[str, Any]) -> None:
        validator = self._validator_for(spec)
        if validator is None:
            return
        errors = sorted(validator.iter_errors(dict(arguments)), key=lambda error: [str(part) for part in error.path])
        if not errors:
            return
        details = []
        for error in errors[:3]:
            location = ".".join(str(part) for part in error.path) or "arguments"
            details.append(f"{location}: {error.message}")
        raise ToolExecutionError(
            "Invalid arguments: " + "; ".join(details),
            tool_name=spec.name,
        )

    def _validator_for(self, spec: ToolSpec) -> Draft202012Validator | None:
        if spec.name in self._validators:
            return self._validators[spec.name]
        validator: Draft202012Validator | None = None
        if spec.parameters:
            schema = dict(spec.parameters)
            try:
                Draft202012Validator.check_schema(schema)
                validator = Draft202012Validator(schema)
            except SchemaError as exc:
                LOGGER.warning("Tool %s declares an invalid schema: %s", spec.name, exc.message)
        self._validators[spec.name] = validator
        return validator
