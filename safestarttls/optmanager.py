"""
    The base implementation for Options.
"""
from __future__ import annotations

import copy
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import ruamel.yaml

from safestarttls import exceptions
from safestarttls.utils import typecheck

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
        return f"{self.current()} [{self.typespec}]"

    @property
    def default(self):
        return copy.deepcopy(self._default)

    def current(self) -> Any:
        if self.value is unset:
            v = self.default
        else:
            v = self.value
        return copy.deepcopy(v)

    def set(self, value: Any) -> None:
        typecheck.check_option_type(self.name, value, self.typespec)
        if self.choices is not None and value not in self.choices:
            raise exceptions.OptionsError(
                f"Invalid value for {self.name}: {value!r}, must be one of {', '.join(self.choices)}."
            )
        self.value = value

    def reset(self) -> None:
        self.value = unset

    def has_changed(self) -> bool:
        return self.current() != self.default

    def __deepcopy__(self, _):
        o = _Option(self.name, self.typespec, self.default, self.help, self.choices)
        if self.has_changed():
            o.value = self.current()
        return o


class OptManager:
    """
    OptManager is the base class from which Options objects are derived.

    Options are declared with `add_option` and then behave like attributes.
    Assigning to an unknown option or assigning a value of the wrong type raises.
    If any value in an `update` call is invalid, none of them are applied.

    Optmanager always returns a deep copy of options to ensure that
    mutation doesn't change the option state inadvertently.
    """

    def __init__(self) -> None:
        # Options must be the last attribute here - after that, we raise an
        # error for attribute assignment to unknown options.
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

    def __eq__(self, other):
        if isinstance(other, OptManager):
            return {k: o.current() for k, o in self._options.items()} == {
                k: o.current() for k, o in other._options.items()
            }
        return False

    def __deepcopy__(self, memodict=None):
        o = OptManager()
        o.__dict__["_options"] = copy.deepcopy(self._options, memodict)
        return o

    __copy__ = __deepcopy__

    def __getattr__(self, attr):
        if attr in self._options:
            return self._options[attr].current()
        else:
            raise AttributeError("No such option: %s" % attr)

    def __setattr__(self, attr, value):
        # This is slightly tricky. We allow attributes to be set on the instance
        # until we have an _options attribute. After that, assignment is sent to
        # the update function, and will raise an error for unknown options.
        opts = self.__dict__.get("_options")
        if not opts:
            super().__setattr__(attr, value)
        else:
            self.update(**{attr: value})

    def keys(self):
        return set(self._options.keys())

    def __contains__(self, k):
        return k in self._options

    def reset(self):
        """
        Restore defaults for all options.
        """
        for o in self._options.values():
            o.reset()

    def update(self, **kwargs):
        unknown = [k for k in kwargs if k not in self._options]
        if unknown:
            raise KeyError("Unknown options: %s" % ", ".join(unknown))
        old = {k: self._options[k].value for k in kwargs}
        try:
            for k, v in kwargs.items():
                self._options[k].set(v)
        except (TypeError, exceptions.OptionsError):
            for k, v in old.items():
                self._options[k].value = v
            raise

    def default(self, option: str) -> Any:
        return self._options[option].default

    def has_changed(self, option):
        """
        Has the option changed from the default?
        """
        return self._options[option].has_changed()

    def help(self, option: str) -> str:
        o = self._options[option]
        txt = o.help
        if o.choices:
            txt += " Valid values are %s." % ", ".join(repr(c) for c in o.choices)
        else:
            txt += " Type %s." % typecheck.typespec_to_str(o.typespec)
        return txt

    def __repr__(self):
        options = ", ".join(f"{k}={o.current()!r}" for k, o in sorted(self._options.items()))
        return f"{type(self).__module__}.{type(self).__name__}({options})"


def parse(text: str) -> dict:
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
        else:
            raise exceptions.OptionsError("Could not parse options.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise exceptions.OptionsError("Config error - no keys found.")
    return data


def load(opts: OptManager, text: str) -> None:
    """
    Load configuration from text, over-writing options already set in
    this object. May raise OptionsError if the config is invalid.
    """
    data = parse(text)
    try:
        opts.update(**data)
    except (KeyError, TypeError) as e:
        raise exceptions.OptionsError(str(e)) from e


def load_paths(opts: OptManager, *paths: Path | str) -> None:
    """
    Load paths in order. Each path takes precedence over the previous
    path. Paths that don't exist are ignored, errors raise an
    OptionsError.
    """
    for p in paths:
        p = Path(p).expanduser()
        if p.exists() and p.is_file():
            with p.open(encoding="utf8") as f:
                try:
                    txt = f.read()
                except UnicodeDecodeError as e:
                    raise exceptions.OptionsError(f"Error reading {p}: {e}")
            try:
                load(opts, txt)
            except exceptions.OptionsError as e:
                raise exceptions.OptionsError(f"Error reading {p}: {e}")
