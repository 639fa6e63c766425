"""Middleware Pipeline — ordered pre/post/error hooks around each dispatch.

Each registered Middleware may define any of three hooks:
  - pre(request)   → request    transforms the outgoing request
  - post(response) → response   transforms the result
  - error(error)   → error      transforms a failure before it propagates

Post hooks receive a ClientResponse from ``execute`` and, for streamed
chat completions, one StreamEvent per decoded record. A hook must return
the same type it was given; hooks that only care about one of them
should pass the other through unchanged.

All three phases run their hooks in registration order, each hook
receiving the previous hook's output. Hooks may be plain functions or
coroutines. A hook that raises stops the rest of its phase; in the
error phase the raised exception becomes the propagated error.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

from llm_relay.gateway.errors import ValidationError
from llm_relay.gateway.types import BaseRequest, ClientResponse, StreamEvent

logger = logging.getLogger(__name__)

Hook = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass
class Middleware:
    pre: Hook | None = None
    post: Hook | None = None
    error: Hook | None = None
    name: str = ""


async def _call(hook: Hook, value: Any) -> Any:
    result = hook(value)
    if inspect.isawaitable(result):
        result = await result
    return result


class MiddlewarePipeline:
    """Registration-ordered hook chain shared by every dispatch of a client."""

    def __init__(self) -> None:
        self._middlewares: list[Middleware] = []

    def use(self, middleware: Middleware) -> MiddlewarePipeline:
        if not isinstance(middleware, Middleware):
            raise ValidationError(f"Expected Middleware, got {type(middleware).__name__}")
        self._middlewares.append(middleware)
        return self

    def clear(self) -> None:
        self._middlewares.clear()

    def __len__(self) -> int:
        return len(self._middlewares)

    async def apply_pre(self, request: BaseRequest) -> BaseRequest:
        current = request
        for mw in self._middlewares:
            if mw.pre is None:
                continue
            current = await _call(mw.pre, current)
            if not isinstance(current, type(request)):
                raise ValidationError(
                    f"pre hook {mw.name or mw.pre!r} returned {type(current).__name__}, "
                    f"expected {type(request).__name__}"
                )
        return current

    async def apply_post(self, response: ClientResponse | StreamEvent) -> ClientResponse | StreamEvent:
        current = response
        for mw in self._middlewares:
            if mw.post is None:
                continue
            current = await _call(mw.post, current)
            if not isinstance(current, type(response)):
                raise ValidationError(
                    f"post hook {mw.name or mw.post!r} returned {type(current).__name__}, "
                    f"expected {type(response).__name__}"
                )
        return current

    async def apply_error(self, error: Exception) -> Exception:
        current = error
        for mw in self._middlewares:
            if mw.error is None:
                continue
            try:
                result = await _call(mw.error, current)
            except Exception as raised:
                logger.debug("error hook %s raised %r", mw.name or mw.error, raised)
                return raised
            if isinstance(result, BaseException):
                current = result
        return current
