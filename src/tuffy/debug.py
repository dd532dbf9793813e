"""Tuffy's debugging tools.

The DebugLog collects timed, stack-annotated messages while a request runs.
The ExceptionRouter hooks warnings, sys.excepthook and atexit so that anything
that goes wrong ends up either in the log (notices) or in a rendered report.
"""
import atexit
import contextlib
import functools
import html
import inspect
import logging
import os
import pkgutil
import pprint
import sys
import textwrap
import time
import types
import warnings
from dataclasses import InitVar, asdict, dataclass, field

import typing as t

logger = logging.getLogger(__name__)

PROBLEM = 1
MAIN = "[main]"
INTERNAL = "[internal code]"
INSTANCE_CALL = "."
CLASS_CALL = "::"

# The function being called, with the file and line it was called *from*.
RawFrame = t.TypedDict("RawFrame", {
    "function": str,
    "class": str | None,
    "type": str | None,
    "file": str | None,
    "line": int | None,
}, total=False)


class Clock:
    """Seconds elapsed since the clock was started."""

    def __init__(self, start: float | None = None):
        self.start = time.perf_counter() if start is None else start

    def __call__(self) -> float:
        return time.perf_counter() - self.start


PROCESS_CLOCK = Clock()


class DebugExit(Exception):
    """Raise this instead of exiting; the exception handler ends quietly.

    Code calling you that doesn't actually want to exit can catch it.
    """


@dataclass(eq=False)
class ErrorException(Exception):
    """A warning or fatal interpreter condition promoted to an exception."""
    message: str
    kind: t.Any = None
    filename: str | None = None
    lineno: int | None = None

    def __str__(self):
        return self.message


@dataclass
class FatalError:
    """The last fatal condition the interpreter recorded."""
    kind: str | None
    message: str
    file: str | None
    line: int | None


# Backtraces -------------------------------------------------------------

@dataclass(frozen=True)
class StackFrame:
    class_name: str | None
    call_type: str | None
    function: str
    file: str | None
    line: int | None
    app_path: InitVar[str | None] = None

    def __post_init__(self, app_path: str | None):
        file = self.file
        if file and file.startswith("<frozen "):
            object.__setattr__(self, 'file', None)
            object.__setattr__(self, 'line', None)
        elif file and app_path:
            root = app_path.rstrip("/\\") + os.sep
            if file.startswith(root):
                object.__setattr__(self, 'file', file[len(root):])

    @property
    def name(self) -> str:
        """The qualified name of the function that made this call."""
        if self.call_type:
            return f"{self.class_name}{self.call_type}{self.function}"
        return self.function

    @property
    def location(self) -> str:
        if self.file is None and self.line is None:
            return INTERNAL
        return f"{self.file}:{self.line}"

    def __str__(self):
        if self.function == MAIN:
            return self.location
        return f"{self.name}() at {self.location}"


def normalize(raw: t.Sequence[RawFrame], origin_file: str | None = None,
              origin_line: int | None = None,
              app_path: str | None = None) -> list[StackFrame]:
    """Rewrite a caller-location backtrace so each frame's location is
    inside the function it names.

    `origin_file`/`origin_line` is where the trace was taken (for exceptions,
    where they were raised). Entry 0 of the result is the innermost call and
    the last entry is always "[main]".
    """
    tb = list(raw)
    if origin_file or origin_line:
        tb.insert(0, {"file": origin_file, "line": origin_line})
    if not tb:
        return []
    calls = [
        StackFrame(name.get("class"), name.get("type"), name.get("function", "?"),
                   loc.get("file"), loc.get("line"), app_path)
        for loc, name in zip(tb, tb[1:])
    ]
    last = tb[-1]
    calls.append(StackFrame(None, None, MAIN, last.get("file"),
                            last.get("line"), app_path))
    return calls


def _qualify(frame: types.FrameType) -> tuple[str | None, str | None, str]:
    """Split a frame's function into (class, call type, name)."""
    code = frame.f_code
    owner, _, name = code.co_qualname.rpartition(".")
    if not owner or owner.endswith("<locals>"):
        return None, None, name
    bound = frame.f_locals.get(code.co_varnames[0]) if code.co_argcount else None
    if bound is not None and not isinstance(bound, type) and any(
            c.__qualname__ == owner for c in type(bound).__mro__):
        return owner, INSTANCE_CALL, name
    return owner, CLASS_CALL, name


def _raw_frame(frame: types.FrameType, caller: types.FrameType,
               caller_line: int) -> RawFrame:
    cls, call_type, name = _qualify(frame)
    return {"class": cls, "type": call_type, "function": name,
            "file": caller.f_code.co_filename, "line": caller_line}


def raw_backtrace(frame: types.FrameType) -> list[RawFrame]:
    """Caller-location backtrace of live frames, innermost (`frame`) first."""
    raw = []
    while frame.f_back is not None:
        raw.append(_raw_frame(frame, frame.f_back, frame.f_back.f_lineno))
        frame = frame.f_back
    return raw


def get_backtrace(app_path: str | None = None) -> list[StackFrame]:
    """Backtrace of the code calling get_backtrace, which is entry 0.

    Slice the result if more frames need to be left out.
    """
    return normalize(raw_backtrace(sys._getframe()), app_path=app_path)


def exception_backtrace(exc: BaseException):
    """Returns (raw frames, origin file, origin line) for an exception."""
    entries: list[tuple[types.FrameType, int]] = []  # outermost first
    tb = exc.__traceback__
    # A generator context manager that re-raised (contextlib) puts its own
    # suspended frame first; it has no f_back to follow outward.
    while (tb is not None and tb.tb_next is not None
           and tb.tb_frame.f_code.co_flags & inspect.CO_GENERATOR):
        tb = tb.tb_next
    if tb is not None:
        outer = tb.tb_frame.f_back
        while outer is not None:
            entries.insert(0, (outer, outer.f_lineno))
            outer = outer.f_back
    while tb is not None:
        entries.append((tb.tb_frame, tb.tb_lineno))
        tb = tb.tb_next
    if not entries:
        return [], None, None
    raw = [_raw_frame(frame, caller, caller_line)
           for (frame, _), (caller, caller_line)
           in zip(reversed(entries[1:]), reversed(entries[:-1]))]
    innermost, line = entries[-1]
    return raw, innermost.f_code.co_filename, line


def exception_stack(exc: BaseException,
                    app_path: str | None = None) -> list[StackFrame]:
    raw, origin_file, origin_line = exception_backtrace(exc)
    if isinstance(exc, ErrorException) and origin_file is None:
        origin_file, origin_line = exc.filename, exc.lineno
    trace = normalize(raw, origin_file, origin_line, app_path)
    if isinstance(exc, ErrorException):
        return skip_warning_frames(trace)
    return trace


_WARNING_MODULES = ("warnings.py", "_py_warnings.py")


def skip_warning_frames(trace: list[StackFrame]) -> list[StackFrame]:
    """Drop the warning hook and the warnings module from the top of `trace`."""
    for i, frame in enumerate(trace):
        hook = (frame.class_name == "ExceptionRouter"
                and frame.function == "handle_error")
        if not hook and os.path.basename(frame.file or "") not in _WARNING_MODULES:
            return trace[i:]
    return trace


# Messages ---------------------------------------------------------------

@t.runtime_checkable
class Debuggable(t.Protocol):
    def to_debug(self) -> str: ...


def to_debug_string(value: t.Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, Debuggable):
        return value.to_debug()
    return pprint.pformat(value)


@dataclass(frozen=True)
class Message:
    """A single entry in the debug log.

    Everything is fixed at construction except the completion time, which
    can be set once to mark the end of something that takes a while (a query,
    an HTTP call).
    """
    title: str
    data: t.Any
    stack: t.Sequence[StackFrame] = ()
    flags: int = 0
    start_time: float | None = None
    complete_time: float | None = field(default=None, hash=False)
    clock: Clock = field(default=PROCESS_CLOCK, kw_only=True,
                         repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'data', to_debug_string(self.data))
        object.__setattr__(self, 'stack', tuple(self.stack))
        if self.start_time is None:
            object.__setattr__(self, 'start_time', self.clock())
        if self.complete_time is not None:
            self._check_complete_time(self.complete_time)

    def _check_complete_time(self, when: float):
        if when < self.start_time:
            raise ValueError(f"{self.title!r} can't complete at {when:.4f} sec, "
                             f"before it started at {self.start_time:.4f} sec")

    def complete(self, when: float | None = None) -> None:
        if self.complete_time is not None:
            raise RuntimeError(f"{self.title!r} was already completed")
        when = self.clock() if when is None else when
        self._check_complete_time(when)
        object.__setattr__(self, 'complete_time', when)

    def is_problem(self) -> bool:
        return bool(self.flags & PROBLEM)

    def time_description(self) -> str:
        if self.complete_time is None:
            return f"at: {self.start_time:.4f} sec"
        return (f"start: {self.start_time:.4f} sec, "
                f"end: {self.complete_time:.4f} sec, "
                f"time: {self.complete_time - self.start_time:.4f} sec")

    def to_dict(self) -> dict[str, t.Any]:
        """Plain data, safe to put in any session store."""
        return {"title": self.title, "data": self.data,
                "stack": [asdict(frame) for frame in self.stack],
                "flags": self.flags, "start_time": self.start_time,
                "complete_time": self.complete_time}

    @classmethod
    def from_dict(cls, data: t.Mapping[str, t.Any]) -> "Message":
        return cls(data["title"], data["data"],
                   [StackFrame(**frame) for frame in data["stack"]],
                   data["flags"], data["start_time"], data["complete_time"])


# The log ----------------------------------------------------------------

class SessionLike(t.Protocol):
    def get(self, key: str, default: t.Any = None) -> t.Any: ...
    def set(self, key: str, value: t.Any) -> None: ...
    def delete(self, key: str) -> None: ...
    def __contains__(self, key: object) -> bool: ...


class DebugLog:
    """The ordered debug log for one request (or one process run)."""

    def __init__(self, clock: Clock | None = None, app_path: str | None = None):
        self.clock = clock or Clock()
        self.app_path = os.getcwd() if app_path is None else app_path
        self._messages: list[Message] = []

    def __len__(self):
        return len(self._messages)

    def message(self, title: str, data: t.Any,
                stack: t.Sequence[StackFrame] = (), flags: int = 0) -> Message:
        """Build a message timed against this log's clock."""
        return Message(title, data, stack, flags, clock=self.clock)

    def add_message(self, msg: Message) -> int:
        """Appends `msg`; returns its 1-based index for complete_event."""
        self._messages.append(msg)
        logger.log(logging.WARNING if msg.is_problem() else logging.DEBUG,
                   "%s [%s]", msg.title, msg.time_description())
        return len(self._messages)

    def record(self, title: str, data: t.Any, flags: int = 0, skip: int = 0) -> int:
        """Add a message stamped with the caller's backtrace.

        `skip` leaves out that many more frames above the caller.
        """
        stack = get_backtrace(self.app_path)[1 + skip:]
        return self.add_message(self.message(title, data, stack, flags))

    def complete_event(self, index: int, when: float | None = None) -> None:
        if not 1 <= index <= len(self._messages):
            raise IndexError(f"no debug message at index {index}")
        self._messages[index - 1].complete(when)

    def get_log(self, remove: bool = True) -> list[Message]:
        messages = self._messages
        if remove:
            self._messages = []
        return list(messages)

    @staticmethod
    def session_key(app_name: str) -> str:
        return f"{app_name}:debugLeftovers"

    def save_in_session(self, store: SessionLike, app_name: str) -> None:
        store.set(self.session_key(app_name),
                  [msg.to_dict() for msg in self._messages])

    def restore_from_session(self, store: SessionLike, app_name: str) -> None:
        key = self.session_key(app_name)
        if key in store:
            saved = [Message.from_dict(d) for d in store.get(key)]
            self._messages = saved + self._messages
            store.delete(key)


# Rendering --------------------------------------------------------------

Renderer = t.Callable[[BaseException, list[Message]], str]


def _wrap(data: str, width: int = 96) -> str:
    lines = []
    for line in data.split("\n"):
        lines.extend(textwrap.wrap(line, width, break_long_words=False,
                                   break_on_hyphens=False) or [""])
    return "\n".join(lines)


def format_log(log: t.Iterable[Message], html_mode: bool = False) -> str:
    esc = html.escape if html_mode else str
    out = []
    for entry in log:
        title = esc(entry.title)
        if html_mode and entry.is_problem():
            title = f'<strong class="problem">{title}</strong>'
        out.append(f"{title} [{entry.time_description()}]\n")
        out.extend(f"    - {esc(str(frame))}\n" for frame in entry.stack)
        out.append("\n    " + esc(_wrap(entry.data)).replace("\n", "\n    "))
        out.append("\n\n")
    return "".join(out)


def format_exception(exc: BaseException, log: t.Iterable[Message] = (),
                     html_mode: bool = False, app_path: str | None = None) -> str:
    """The full report: the exception, its stack trace, then the debug log."""
    esc = html.escape if html_mode else str
    name = type(exc).__name__
    out = [f"<pre><strong>{name}</strong>: " if html_mode else f"{name}: ",
           f"{esc(str(exc))}\n\n", "Stack Trace:\n"]
    out.extend(f"- {esc(str(frame))}\n" for frame in exception_stack(exc, app_path))
    out.append("\n\n")
    out.append(format_log(log, html_mode))
    if html_mode:
        out.append("</pre>")
    return "".join(out)


def render_production(exc: BaseException, log: list[Message], *,
                      html: bool = True, app_path: str | None = None) -> str:
    """Says that an error occurred, without technical details.

    The full report goes to the operator through the logger, never to
    the visitor.
    """
    detail = format_exception(exc, log, False, app_path)
    logger.error("Unhandled exception\n%s", detail)
    if html:
        return ("<!doctype html>\n\n"
                "<h1>An internal error occurred</h1>\n"
                "<p>The error has been logged and sent to this site's "
                "administrators. We apologize for the inconvenience.</p>")
    return ("An internal error occurred. The error has been logged and sent "
            "to this site's administrators.\n")


def render_dev(exc: BaseException, log: list[Message], *,
               html: bool = True, app_path: str | None = None) -> str:
    """The error details and the debug log, for development."""
    report = format_exception(exc, log, html, app_path)
    return "<!doctype html>\n\n" + report if html else report


# Handlers ---------------------------------------------------------------

class ExceptionRouter:
    """Installs and runs the warning, exception and shutdown handlers."""
    NOTICE_CATEGORIES: tuple[type[Warning], ...] = (
        UserWarning, DeprecationWarning, PendingDeprecationWarning, ImportWarning)
    FATAL_KINDS: tuple[tuple[type[BaseException], str], ...] = (
        (IndentationError, "parse"), (SyntaxError, "compile"),
        (MemoryError, "fatal"), (RecursionError, "fatal"), (SystemError, "core"))
    FATAL_PREFIXES = {
        "fatal": "Fatal error: ",
        "core": "Python core error: ",
        "compile": "Compile error: ",
        "parse": "Parse error: ",
    }

    def __init__(self, log: DebugLog, settings=None, *,
                 output: t.TextIO | None = None, html: bool = True,
                 fatal_error_source: t.Callable[[], FatalError | None] | None = None):
        self.log = log
        self.settings = settings
        self.output = output
        self.html = html
        self.fatal_error_source = fatal_error_source or self.last_fatal_error
        self.active = False
        self._warning_scope: contextlib.ExitStack | None = None
        self._previous_excepthook: t.Any = None
        self._shutdown_registered = False
        self._handled: BaseException | None = None

    def register_handlers(self) -> None:
        self.active = True
        if self._warning_scope is None:
            self._warning_scope = contextlib.ExitStack()
            self._warning_scope.enter_context(self.catching_warnings())
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self._excepthook
        if not self._shutdown_registered:
            atexit.register(self.handle_shutdown)
            self._shutdown_registered = True

    def unregister_handlers(self) -> None:
        """Turns the handlers off, with caveats.

        atexit keeps calling handle_shutdown, it just stops doing anything.
        The warning filters and hooks are put back to what they were at
        registration, which is only right if nobody replaced ours since.
        """
        self.active = False
        if self._warning_scope is not None:
            sys.excepthook = self._previous_excepthook
            self._warning_scope.close()
            self._warning_scope = None

    @contextlib.contextmanager
    def catching_warnings(self):
        """Send every warning raised in the block to handle_error.

        The "always" filter keeps warnings from being shown only once per
        location or ignored outright, as the default filters do.
        """
        with warnings.catch_warnings():
            warnings.simplefilter("always")
            warnings.showwarning = self.handle_error
            yield self

    def handle_error(self, message, category: type[Warning], filename: str,
                     lineno: int, file=None, line=None) -> None:
        if issubclass(category, self.NOTICE_CATEGORIES):
            stack = skip_warning_frames(get_backtrace(self.log.app_path))
            self.log.add_message(self.log.message("Notice", str(message),
                                                  stack, PROBLEM))
            return
        raise ErrorException(str(message), category, filename, lineno)

    def _excepthook(self, exc_type, exc, tb):
        if issubclass(exc_type, KeyboardInterrupt) and self._previous_excepthook:
            return self._previous_excepthook(exc_type, exc, tb)
        self.handle_exception(exc)

    def renderer(self) -> Renderer:
        if self.settings is None or self.settings.get('debug'):
            name, default = 'errorHandlerDev', render_dev
        else:
            name, default = 'errorHandlerProduction', render_production
        override = self.settings.get(name) if self.settings is not None else None
        if override is None:
            return functools.partial(default, html=self.html,
                                     app_path=self.log.app_path)
        if isinstance(override, str):
            return pkgutil.resolve_name(override)
        return override

    def render(self, exc: BaseException) -> str:
        """Drain the log and render `exc` with the configured renderer."""
        self._handled = exc
        return self.renderer()(exc, self.log.get_log(remove=True))

    def handle_exception(self, exc: BaseException) -> str | None:
        if isinstance(exc, DebugExit):
            return None
        text = self.render(exc)
        out = self.output or sys.stdout
        out.write(text)
        out.flush()
        return text

    def last_fatal_error(self) -> FatalError | None:
        exc = getattr(sys, "last_exc", None) or getattr(sys, "last_value", None)
        if exc is None or exc is self._handled or not isinstance(exc, Exception):
            return None
        if isinstance(exc, DebugExit):
            return None
        kind = next((k for cls, k in self.FATAL_KINDS if isinstance(exc, cls)), None)
        if isinstance(exc, SyntaxError):
            return FatalError(kind, exc.msg, exc.filename, exc.lineno)
        _, file, line = exception_backtrace(exc)
        return FatalError(kind, str(exc), file, line)

    def handle_shutdown(self) -> str | None:
        if not self.active:
            return None
        error = self.fatal_error_source()
        if error is None:
            return None
        prefix = self.FATAL_PREFIXES.get(error.kind, "")
        return self.handle_exception(ErrorException(
            prefix + error.message, error.kind, error.file, error.line))
