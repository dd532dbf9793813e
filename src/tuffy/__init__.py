"""Tuffy is halfway between a library and a web framework.

Its main attraction is the debugging suite: a per-request log of timed,
stack-annotated messages that survives redirects, and error handlers that
show everything in development and nothing in production.

    import tuffy

    app = tuffy.App({"appName": "hello", "debug": True})

    @app.route("/")
    def home(request, response):
        app.debug("Greeting", {"who": "world"})
        return "<h1>Hello World</h1>"

    app.serve_forever()
"""

from .core import (App, FuncHandler, Handler, HttpError, MethodNotAllowed,
                   Redirect, Request, Response, Route)
from .debug import (PROBLEM, DebugExit, DebugLog, Debuggable, ErrorException,
                    ExceptionRouter, Message, StackFrame)
from .session import MemorySessionStore, Session, SessionStore
from .settings import Settings

__all__ = [
    "App", "FuncHandler", "Handler", "HttpError", "MethodNotAllowed",
    "Redirect", "Request", "Response", "Route",
    "PROBLEM", "DebugExit", "DebugLog", "Debuggable", "ErrorException",
    "ExceptionRouter", "Message", "StackFrame",
    "MemorySessionStore", "Session", "SessionStore", "Settings",
]
