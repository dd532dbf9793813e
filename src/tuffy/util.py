import os
import re
import runpy
import types
import typing as t
import urllib.parse

# pylint: disable=missing-function-docstring


def path_to_pattern(val: str) -> re.Pattern[str]:
    """Encode non-regex route patterns as regex."""
    if val[0] == '^':
        return re.compile(val)  # raw regex

    def esc(s):
        return re.escape(re.sub(r"//+", "/", "/" + s))

    def parts(val):
        i = 0  # "*" or "<identifier>" or "<identifier:regex>"
        # "\>" is allowed inside the regex part ("<ident:foo\>bar>")
        yield "^"
        for m in re.finditer(r'(<([a-zA-Z0-9\.]+)(?::((?:\\.|[^>])*))?>)|(\*)', val):
            if m.start() > i:
                yield esc(val[i:m.start()])
            if m.group() == "*":
                yield r"[^/]+"
            else:
                yield "(?P<%s>%s)" % (m.groups()[1], m.groups()[2] or r'[^/]+')
            i = m.end()
        if i < len(val):
            yield esc(val[i:])
        yield "$"
    return re.compile("".join(parts(val)))


def _quote(val: t.Any) -> str:
    return urllib.parse.quote(str(val), safe='')


def build_query(data: t.Mapping[str, t.Any], brackets: bool = False) -> str:
    """Build a query string; list values become repeated key/value pairs.

    With `brackets`, "[]" is appended to the name of list-valued fields.
    """
    pairs = []
    for name, value in data.items():
        if isinstance(value, (list, tuple)):
            key = _quote(name) + ('[]' if brackets else '')
            pairs.extend(f"{key}={_quote(item)}" for item in value)
        else:
            pairs.append(f"{_quote(name)}={_quote(value)}")
    return '&'.join(pairs)


def interpret_path(path: str, base: str | None = None) -> str:
    """Absolute paths pass through; relative ones are joined to `base`
    (default: the current directory)."""
    if os.path.isabs(path):
        return path
    return os.path.join(base if base is not None else os.getcwd(), path)


def load_variables(filename: str) -> dict[str, t.Any]:
    """Runs a Python file and returns the public names it defined.

    Not safe on untrusted input; it's barely safe on developer input.
    """
    namespace = runpy.run_path(filename)
    return {k: v for k, v in namespace.items()
            if not k.startswith('_') and not isinstance(v, types.ModuleType)}
