"""
Typed option storage for the proxy configuration.

Options are declared once with a type, a default and a help text. They can
then be set from keyword arguments, `name=value` strings from `--set`, the
command line (see `make_parser`) and YAML config files in the confdir.
"""
from __future__ import annotations

import contextlib
import copy
import textwrap
from collections.abc import Callable
from collections.abc import Sequence
from pathlib import Path
from typing import Any
from typing import Optional
from typing import TextIO

import ruamel.yaml

from tapproxy import exceptions
from tapproxy.utils import typecheck

unset = object()


class _Option:
    __slots__ = ("name", "typespec", "value", "_default", "choices", "help")

    def __init__(
        self,
        name: str,
        typespec: type | object,  # object for Optional[x], which is not a type.
        default: Any,
        help: str,
        choices: Sequence[str] | None,
    ) -> None:
        typecheck.check_option_type(name, default, typespec)
        self.name = name
        self.typespec = typespec
        self._default = default
        self.value = unset
        self.help = textwrap.dedent(help).strip().replace("\n", " ")
        self.choices = choices

    def __repr__(self):
        return f"{self.current()!r} [{typecheck.typespec_to_str(self.typespec)}]"

    @property
    def default(self):
        return copy.deepcopy(self._default)

    def current(self) -> Any:
        return copy.deepcopy(self._default if self.value is unset else self.value)

    def set(self, value: Any) -> None:
        typecheck.check_option_type(self.name, value, self.typespec)
        if self.choices is not None and value not in self.choices:
            raise exceptions.OptionsError(
                f"Invalid value for {self.name}: {value!r}. "
                f"Valid values are {', '.join(repr(c) for c in self.choices)}."
            )
        self.value = value

    def has_changed(self) -> bool:
        return self.current() != self.default


class OptManager:
    """
    Base class of `tapproxy.options.Options`.

    Options are read as attributes and always returned as deep copies.
    Subscribers are called after an update touches one of their options;
    a subscriber raising OptionsError rolls the whole update back.
    """

    def __init__(self) -> None:
        self._subscriptions: list[tuple[Callable, set[str]]] = []
        # Must be assigned last, attribute assignment goes to update() from here on.
        self._options: dict[str, _Option] = {}

    def add_option(
        self,
        name: str,
        typespec: type | object,
        default: Any,
        help: str,
        choices: Sequence[str] | None = None,
    ) -> None:
        self._options[name] = _Option(name, typespec, default, help, choices)

    @contextlib.contextmanager
    def rollback(self):
        old = copy.deepcopy(self._options)
        try:
            yield
        except exceptions.OptionsError:
            self.__dict__["_options"] = old
            raise

    def subscribe(self, func: Callable, opts: Sequence[str]) -> None:
        """
        Call `func(options, updated)` whenever one of `opts` is updated.
        """
        for name in opts:
            if name not in self._options:
                raise exceptions.OptionsError(f"No such option: {name}")
        self._subscriptions.append((func, set(opts)))

    def _notify_subscribers(self, updated: set[str]) -> None:
        for callback, opts in self._subscriptions:
            if opts & updated:
                callback(self, updated)

    def __getattr__(self, attr):
        if attr in self._options:
            return self._options[attr].current()
        raise AttributeError(f"No such option: {attr}")

    def __setattr__(self, attr, value):
        if not self.__dict__.get("_options"):
            super().__setattr__(attr, value)
        else:
            self.update(**{attr: value})

    def __contains__(self, name):
        return name in self._options

    def __repr__(self):
        return f"{type(self).__name__}({self._options!r})"

    def keys(self):
        return set(self._options.keys())

    def update(self, **kwargs) -> None:
        unknown = [k for k in kwargs if k not in self._options]
        if unknown:
            raise exceptions.OptionsError(f"Unknown options: {', '.join(unknown)}")
        if not kwargs:
            return
        with self.rollback():
            for k, v in kwargs.items():
                try:
                    self._options[k].set(v)
                except TypeError as e:
                    raise exceptions.OptionsError(str(e)) from e
            self._notify_subscribers(set(kwargs))

    def has_changed(self, option: str) -> bool:
        return self._options[option].has_changed()

    def set(self, *specs: str) -> None:
        """
        Apply `--set` specifications of the form `name=value` or `name`.

        Raises:
            OptionsError, if an option is unknown or a value is malformed.
        """
        values: dict[str, list[str]] = {}
        for spec in specs:
            name, sep, value = spec.partition("=")
            values.setdefault(name, [])
            if sep:
                values[name].append(value)

        parsed: dict[str, Any] = {}
        for name, vals in values.items():
            if name not in self._options:
                raise exceptions.OptionsError(f"Unknown option: {name}")
            if len(vals) > 1:
                raise exceptions.OptionsError(
                    f"Received multiple values for {name}: {vals}"
                )
            parsed[name] = self._parse_setval(self._options[name], vals[0] if vals else None)
        self.update(**parsed)

    def _parse_setval(self, o: _Option, optstr: str | None) -> Any:
        if o.typespec in (str, Optional[str]):
            if o.typespec == str and optstr is None:
                raise exceptions.OptionsError(f"Option is required: {o.name}")
            return optstr
        if o.typespec in (int, Optional[int]):
            if optstr:
                try:
                    return int(optstr)
                except ValueError:
                    raise exceptions.OptionsError(f"Not an integer: {optstr}")
            if o.typespec == int:
                raise exceptions.OptionsError(f"Option is required: {o.name}")
            return None
        if o.typespec == bool:
            if optstr == "toggle":
                return not o.current()
            if optstr in (None, "", "true"):
                return True
            if optstr == "false":
                return False
            raise exceptions.OptionsError(
                'Boolean must be "true", "false", or have the value omitted (a synonym for "true").'
            )
        raise NotImplementedError(f"Unsupported option type: {o.typespec}")

    def make_parser(self, parser, optname, metavar=None, short=None):
        """
        Add a command line flag for an option. Unknown options are ignored.

        Booleans get a `--name`/`--no-name` pair, the short flag goes to
        whichever of them changes the default.
        """
        if optname not in self._options:
            return
        o = self._options[optname]

        def flags(name, short_flag=None):
            ret = ["--" + name.replace("_", "-")]
            if short_flag:
                ret.append("-" + short_flag)
            return ret

        if o.typespec == bool:
            group = parser.add_mutually_exclusive_group(required=False)
            on = flags(optname, None if o.default else short)
            off = flags("no-" + optname, short if o.default else None)
            group.add_argument(*off, action="store_false", dest=optname)
            group.add_argument(*on, action="store_true", dest=optname, help=o.help)
            parser.set_defaults(**{optname: None})
        elif o.typespec in (int, Optional[int]):
            parser.add_argument(
                *flags(optname, short),
                type=int,
                dest=optname,
                help=o.help,
                metavar=metavar,
            )
        elif o.typespec in (str, Optional[str]):
            parser.add_argument(
                *flags(optname, short),
                type=str,
                dest=optname,
                help=o.help,
                metavar=metavar,
                choices=o.choices,
            )
        else:
            raise ValueError(f"Unsupported option type: {o.typespec}")


def dump_defaults(opts: OptManager, out: TextIO):
    """
    Write all options with their defaults as commented YAML, usable as a config.yaml.
    """
    s = ruamel.yaml.comments.CommentedMap()
    for k in sorted(opts.keys()):
        o = opts._options[k]
        s[k] = o.default
        txt = o.help.strip()
        if o.choices:
            txt += " Valid values are %s." % ", ".join(repr(c) for c in o.choices)
        else:
            txt += " Type %s." % typecheck.typespec_to_str(o.typespec)
        s.yaml_set_comment_before_after_key(k, before="\n" + "\n".join(textwrap.wrap(txt)))
    return ruamel.yaml.YAML().dump(s, out)


def parse(text: str) -> dict[str, Any]:
    if not text:
        return {}
    try:
        yaml = ruamel.yaml.YAML(typ="safe", pure=True)
        data = yaml.load(text)
    except ruamel.yaml.error.YAMLError as v:
        if hasattr(v, "problem_mark"):
            snip = v.problem_mark.get_snippet()
            raise exceptions.OptionsError(
                "Config error at line %s:\n%s\n%s"
                % (v.problem_mark.line + 1, snip, getattr(v, "problem", ""))
            )
        raise exceptions.OptionsError("Could not parse options.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise exceptions.OptionsError("Config error - no keys found.")
    return data


def load(opts: OptManager, text: str, cwd: Path | str | None = None) -> None:
    """
    Apply a YAML config. A rule file named in it is resolved against `cwd`,
    the directory of the config file.
    """
    data = parse(text)
    rule = data.get("rule")
    if rule and cwd is not None and rule.endswith(".py"):
        data["rule"] = str(rule_path(rule, relative_to=cwd))
    opts.update(**data)


def load_paths(opts: OptManager, *paths: Path | str) -> None:
    """
    Load config files in order, later files win. Missing files are skipped.
    """
    for p in paths:
        p = Path(p).expanduser()
        if not p.is_file():
            continue
        try:
            load(opts, p.read_text(encoding="utf8"), cwd=p.absolute().parent)
        except (UnicodeDecodeError, exceptions.OptionsError) as e:
            raise exceptions.OptionsError(f"Error reading {p}: {e}")


def rule_path(path: Path | str, *, relative_to: Path | str) -> Path:
    # "~/rules/a.py" is absolute once expanded, "rules/a.py" belongs to the config file.
    return (Path(relative_to) / Path(path).expanduser()).absolute()
