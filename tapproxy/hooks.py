"""
The interception points a rule can implement.

Each hook is a dataclass; its name is derived from the class name
(IsDealRequestHook -> is_deal_request) and its fields are the positional
arguments passed to the rule method of the same name.
"""
from __future__ import annotations

import re
import warnings
from dataclasses import dataclass
from dataclasses import fields
from dataclasses import is_dataclass
from typing import Any
from typing import ClassVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tapproxy.context import ConnectContext
    from tapproxy.context import RequestContext
    from tapproxy.context import WebSocketContext


class Hook:
    name: ClassVar[str]

    def args(self) -> list[Any]:
        args = []
        for field in fields(self):  # type: ignore[arg-type]
            args.append(getattr(self, field.name))
        return args

    def __new__(cls, *args, **kwargs):
        if cls is Hook:
            raise TypeError("Hook may not be instantiated directly.")
        if not is_dataclass(cls):
            raise TypeError("Subclass is not a dataclass.")
        return super().__new__(cls)

    def __init_subclass__(cls, **kwargs):
        # initialize .name attribute. IsDealRequestHook -> is_deal_request
        if cls.__dict__.get("name", None) is None:
            name = cls.__name__.replace("Hook", "")
            cls.name = re.sub("(?!^)([A-Z]+)", r"_\1", name).lower()
        if cls.name in all_hooks:
            other = all_hooks[cls.name]
            warnings.warn(
                f"Two conflicting hook classes for {cls.name}: {cls} and {other}",
                RuntimeWarning,
            )
        all_hooks[cls.name] = cls

        # events are hashable and not comparable.
        cls.__hash__ = object.__hash__  # type: ignore
        cls.__eq__ = object.__eq__  # type: ignore


all_hooks: dict[str, type[Hook]] = {}


@dataclass
class SummaryHook(Hook):
    """
    Return a one-line description of the rule, logged when the proxy starts.
    """


@dataclass
class IsDealConnectHook(Hook):
    """
    A client sent a CONNECT request. Return False to tunnel the connection
    without decrypting it, True to intercept, None for the default.
    """

    context: ConnectContext


@dataclass
class IsDealRequestHook(Hook):
    """
    A request has been received. Return False to relay it untouched, skipping
    all further hooks for this request.
    """

    context: RequestContext


@dataclass
class IsWaitReqDataHook(Hook):
    """
    Return True to buffer the complete request body before it is forwarded,
    so that before_send_request can inspect and modify it.
    """

    context: RequestContext


@dataclass
class BeforeSendRequestHook(Hook):
    """
    Called before the request is sent upstream. The rule may modify
    context.req, or supply context.res (or return a ResponseInfo) to answer
    the request without contacting the server.
    """

    context: RequestContext


@dataclass
class BeforeSendResponseHook(Hook):
    """
    Called when the upstream response has been received. The rule may modify
    context.res, or return a replacement ResponseInfo.
    """

    context: RequestContext


@dataclass
class BeforeWsClientHook(Hook):
    """
    A WebSocket upgrade was received. The rule may change the upstream url,
    headers and protocols before the upstream connection is made.
    """

    context: WebSocketContext


@dataclass
class OnErrorHook(Hook):
    """
    Processing a request failed. context.res already holds an error
    response, which the rule may modify or replace by returning a ResponseInfo.
    """

    context: RequestContext
    error: Exception


@dataclass
class OnConnectErrorHook(Hook):
    """
    Establishing a CONNECT tunnel failed.
    """

    context: ConnectContext
    error: Exception
