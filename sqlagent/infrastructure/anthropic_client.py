"""Anthropic Transport — wraps AsyncAnthropic streaming with error mapping.

Invariants:
    - stream_message() never retries: a partial multi-step run must not be replayed
      blindly (a retried round could repeat a mutating capability call)
    - All SDK failures, at connection setup AND mid-stream, map to TransportFailureError
    - CancelledError (BaseException) passes through uncaught
    - Timeouts are enforced here (SDK client timeout), not by the agent loop

Design Decisions:
    - Wrapper over raw client: isolates SDK error types from agent_runner
    - Error messages keep the SDK text for logs; users see user_message_for(code)
"""

import logging
from contextlib import asynccontextmanager

import anthropic
from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
)

from sqlagent.core.errors import ErrorContext, TransportFailureError

logger = logging.getLogger(__name__)

# OverloadedError (HTTP 529) is not re-exported by every SDK release.
_OVERLOADED_STATUS = 529


def _is_overloaded(e: APIError) -> bool:
    """Check if error is Anthropic 529 Overloaded."""
    return isinstance(e, APIStatusError) and e.status_code == _OVERLOADED_STATUS


class ResilientAnthropicClient:
    """Wraps the Anthropic async client with timeouts and error mapping."""

    def __init__(self, api_key: str, timeout_seconds: int = 120):
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=0,
        )

    @asynccontextmanager
    async def stream_message(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str | list,
        tools: list,
        messages: list,
        context: ErrorContext | None = None,
    ):
        """Stream one model round. Yields the SDK MessageStream.

        Errors raised inside the caller's `async for` propagate through the
        yield and are mapped the same way as connection-setup errors.
        """
        try:
            cm = self.client.messages.stream(
                model=model, max_tokens=max_tokens,
                system=system, tools=tools, messages=messages,
            )
            async with cm as stream:
                yield stream
        except RateLimitError:
            raise TransportFailureError(
                "Rate limit exceeded", "rate_limit", context=context,
            )
        except APITimeoutError:
            raise TransportFailureError(
                "API timeout during stream", "timeout", context=context,
            )
        except (APIConnectionError, InternalServerError) as e:
            raise TransportFailureError(
                f"Connection error during stream: {e}",
                "connection_error", context=context,
            )
        except APIError as e:
            if _is_overloaded(e):
                raise TransportFailureError(
                    "Anthropic API overloaded (529)", "overloaded", context=context,
                )
            raise TransportFailureError(str(e), "client_error", context=context)

    @staticmethod
    def log_usage(message, run_id: str | None = None, step: int | None = None) -> None:
        """Log token usage for a completed round."""
        usage = getattr(message, "usage", None)
        if usage is None:
            return
        logger.info(
            "Model round complete",
            extra={
                "run_id": run_id,
                "step": step,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            },
        )
