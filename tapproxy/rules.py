from __future__ import annotations

import contextlib
import importlib
import importlib.machinery
import importlib.util
import inspect
import logging
import os
import sys
import traceback
import types
from typing import Any

from tapproxy import exceptions
from tapproxy import hooks

logger = logging.getLogger(__name__)


class Rule:
    """
    The default rule: decrypt HTTPS, process every request, buffer nothing.

    Custom rules subclass this and override the hooks they care about.
    Any hook may be a coroutine function. See `tapproxy.hooks` for what each hook receives.
    """

    def summary(self) -> str:
        return "the default rule for tapproxy."

    def is_deal_connect(self, context):
        return None

    def is_deal_request(self, context):
        return True

    def is_wait_req_data(self, context):
        return None

    def before_send_request(self, context):
        return None

    def before_send_response(self, context):
        return None

    def before_ws_client(self, context):
        return None

    def on_error(self, context, error):
        return None

    def on_connect_error(self, context, error):
        return None


def cut_traceback(tb, func_name):
    """
    Cut off a traceback at the function with the given name.
    The func_name's frame is excluded.
    """
    tb_orig = tb
    for _, _, fname, _ in traceback.extract_tb(tb):
        tb = tb.tb_next
        if fname == func_name:
            break
    return tb or tb_orig


@contextlib.contextmanager
def safecall(what: str = "Rule"):
    """
    Log and suppress exceptions from code whose failure must not affect the response,
    such as error hooks and recorder updates.
    """
    try:
        yield
    except Exception:
        etype, value, tb = sys.exc_info()
        tb = cut_traceback(tb, "invoke")
        assert etype
        assert value
        logger.error(
            f"{what} error: {value}",
            exc_info=(etype, value, tb),
        )


async def invoke(rule: Any, hook: hooks.Hook) -> Any:
    """
    Call the rule method for a hook. Rules may omit hooks, and hooks may be sync or async.
    """
    func = getattr(rule, hook.name, None)
    if func is None or isinstance(func, types.ModuleType):
        return None
    if not callable(func):
        raise exceptions.RuleError(f"Rule handler {hook.name} ({rule}) not callable")
    res = func(*hook.args())
    # Support both async and sync hook functions
    if res is not None and inspect.isawaitable(res):
        res = await res
    return res


def load_module_from_path(path: str) -> types.ModuleType:
    path = os.path.abspath(os.path.expanduser(path))
    if not os.path.exists(path):
        raise exceptions.RuleError(f"Rule file does not exist: {path}")
    fullname = "__tapproxy_rule__.{}".format(
        os.path.splitext(os.path.basename(path))[0]
    )
    # the fullname is not unique among rules, so drop a previously loaded version.
    sys.modules.pop(fullname, None)
    oldpath = sys.path
    sys.path.insert(0, os.path.dirname(path))
    try:
        loader = importlib.machinery.SourceFileLoader(fullname, path)
        spec = importlib.util.spec_from_loader(fullname, loader=loader)
        assert spec
        m = importlib.util.module_from_spec(spec)
        loader.exec_module(m)
        return m
    except Exception as e:
        raise exceptions.RuleError(f"Error loading rule {path}: {e}") from e
    finally:
        sys.path[:] = oldpath


def rule_from_module(m: types.ModuleType) -> Any:
    """
    Find the rule in a module: a module-level `rule` (instance or class),
    or else the first Rule subclass defined in it.
    """
    obj = getattr(m, "rule", None)
    if obj is None:
        for value in vars(m).values():
            if (
                isinstance(value, type)
                and issubclass(value, Rule)
                and value is not Rule
                and value.__module__ == m.__name__
            ):
                obj = value
                break
    if obj is None:
        raise exceptions.RuleError(
            f"{m.__name__} defines neither `rule` nor a Rule subclass."
        )
    if isinstance(obj, type):
        obj = obj()
    return obj


def load_rule(spec: str) -> Any:
    """
    Load a rule from a Python file path or a dotted module name.
    Module names are re-imported, so a reload picks up changes.
    """
    if spec.endswith(".py") or os.sep in spec:
        m = load_module_from_path(spec)
    else:
        try:
            if spec in sys.modules:
                m = importlib.reload(sys.modules[spec])
            else:
                m = importlib.import_module(spec)
        except Exception as e:
            raise exceptions.RuleError(f"Error loading rule {spec}: {e}") from e
    return rule_from_module(m)


class RuleHolder:
    """
    Holds the active rule. Reloading swaps the reference atomically; requests
    capture `.rule` when they start and keep using that object until they finish.
    """

    def __init__(self, rule: Any = None, source: str | None = None):
        self.source = source
        self.rule = rule if rule is not None else Rule()
        self.version = 1

    def __repr__(self):
        return f"RuleHolder({self.rule!r}, source={self.source!r}, version={self.version})"

    @classmethod
    def from_source(cls, source: str | None) -> RuleHolder:
        if source:
            return cls(load_rule(source), source)
        return cls()

    def reload(self) -> bool:
        """
        Reload the rule from its source. Returns False if the rule was not loaded from a source.
        """
        if not self.source:
            return False
        self.rule = load_rule(self.source)
        self.version += 1
        logger.info(f"Rule reloaded from {self.source}.")
        return True

    async def summary(self) -> str:
        summary = await invoke(self.rule, hooks.SummaryHook())
        return str(summary) if summary is not None else repr(self.rule)
