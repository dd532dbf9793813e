
import wsgiref.types
import wsgiref.simple_server
import wsgiref.headers
import contextlib
from dataclasses import InitVar, dataclass, field
import re
import http
import http.cookies
import html
import logging
import copy
import urllib.parse
import warnings

from . import debug
from . import util
from .session import MemorySessionStore, Session, SessionStore
from .settings import Settings

import typing as t
_O = t.Optional
_T = t.TypeVar("_T")
Headers = wsgiref.headers.Headers
_Wrapper = t.Callable[[_T], _T]

logger = logging.getLogger(__name__)


class HandlerFn(t.Protocol):
    def __call__(self, request: "Request", response: "Response", /) -> t.Any: ...


@t.runtime_checkable
class Handler(t.Protocol):
    def handle_request(self, request: "Request", **kwargs) -> "Response": ...


AnyHandler = HandlerFn | Handler


@dataclass(kw_only=True, eq=False)
class HttpError(Exception):
    """Throwable HTTP Error."""
    code: int = field(kw_only=False, default=500)
    short: str | None = field(kw_only=False, default=None)
    desc: str | None = None
    headers: dict[str, str] = field(default_factory=dict)  # type:ignore

    def default_headers(self) -> dict[str, str]: return {}
    def all_headers(self): return self.default_headers() | self.headers
    def has_cause(self): return self.__cause__ is not None
    def body(self) -> str | None: return None

    def exc_info(self):
        """Get the exception info tuple if this error was raised from an exception."""
        if self.has_cause():
            return (type(self.__cause__), self.__cause__, self.__traceback__)
        return (type(self), self, self.__traceback__)

    @classmethod
    @contextlib.contextmanager
    def wrap_exceptions(cls, *args, **kwargs):
        try:
            yield
        except (HttpError, debug.DebugExit):
            raise
        except Exception as ex:
            raise cls(*args, **kwargs) from ex


@dataclass(kw_only=True, eq=False)
class MethodNotAllowed(HttpError):
    code: int = field(kw_only=False, default=405)
    allow: tuple[str, ...] = field(default_factory=tuple)

    def default_headers(self):
        return {"Allow": ",".join(self.allow)}


@dataclass(kw_only=True, eq=False)
class Redirect(HttpError):
    code: int = field(kw_only=False, default=303)
    location: str

    def default_headers(self):
        return {'Location': self.location}

    def body(self):
        dest = html.escape(self.location)
        return ("<!doctype html>\n"
                f'<p>Redirecting you to <a href="{dest}">{dest}</a>.</p>')


@dataclass
class RouteMatch:
    route: "Route"
    match: re.Match[str]


@dataclass
class Request:
    environ: wsgiref.types.WSGIEnvironment
    path: str
    method: str
    headers: Headers
    route_match: RouteMatch
    http_errors: tuple[HttpError, ...] = field(default_factory=tuple)
    session: Session | None = None

    @classmethod
    def from_wsgi(cls, environ: wsgiref.types.WSGIEnvironment):
        hlist = [(k[5:].replace("_", "-").title(), v)
                 for k, v in environ.items() if k.startswith("HTTP_")]
        return cls(environ, environ['PATH_INFO'], environ['REQUEST_METHOD'],
                   Headers(hlist), cls._empty_match())

    def with_route(self, route_match: RouteMatch) -> t.Self:
        request = copy.copy(self)
        request.route_match = route_match
        return request

    def with_error(self, http_error: HttpError) -> t.Self:
        request = copy.copy(self)
        request.http_errors = (http_error, *self.http_errors)
        return request

    @property
    def query_string(self) -> str:
        return self.environ.get("QUERY_STRING", "")

    @property
    def query_vars(self):
        return dict(urllib.parse.parse_qsl(self.query_string))

    @property
    def route_vars(self):
        return self.route_match.match.groupdict()

    @property
    def vars(self):
        return self.query_vars | self.route_vars

    @property
    def cookies(self) -> http.cookies.SimpleCookie:
        return http.cookies.SimpleCookie(self.environ.get("HTTP_COOKIE", ""))

    @property
    def scheme(self) -> str:
        return "https" if self.secure else "http"

    @property
    def secure(self) -> bool:
        return (self.environ.get("wsgi.url_scheme") == "https"
                or self.environ.get("HTTPS", "").lower() == "on")

    @property
    def host(self) -> str:
        if host := self.environ.get("HTTP_HOST"):
            return host
        host, port = self.environ.get("SERVER_NAME", ""), self.environ.get("SERVER_PORT", "")
        default_port = "443" if self.secure else "80"
        return host if not port or port == default_port else f"{host}:{port}"

    @property
    def prefix(self) -> str:
        """The directory the app is mounted at, as seen over HTTP."""
        return self.environ.get("SCRIPT_NAME", "").rstrip("/") + "/"

    @property
    def uri(self) -> str:
        uri = urllib.parse.quote(self.environ.get("SCRIPT_NAME", "") + self.path)
        return f"{uri}?{self.query_string}" if self.query_string else uri

    @classmethod
    def _empty_match(cls) -> RouteMatch:
        try:
            return cls._empty_match_inst
        except AttributeError:
            match = t.cast(re.Match[str], re.match("/", "/"))
            cls._empty_match_inst = RouteMatch(Route("/"), match)
            return cls._empty_match_inst


@dataclass(kw_only=True)
class Response:
    """A text response (HTML by default), built up with write()."""
    content: InitVar[str | None] = field(default=None, kw_only=False)
    code: int = 200
    content_type: str = 'text/html'
    charset: str = 'utf-8'
    headers: Headers = field(default_factory=lambda: Headers([]))
    http_error: HttpError | None = None

    def __post_init__(self, content: str | None):
        self.chunks: list[str] = [] if content is None else [content]
        if self.http_error:
            self.code = self.http_error.code

    def write(self, content: str) -> None:
        self.chunks.append(content)

    def set_content(self, content: str | list[str]) -> None:
        """Replaces anything written so far; gets the handler's return value."""
        self.chunks = [content] if isinstance(content, str) else list(content)

    @property
    def phrase(self) -> str:
        try:
            return http.HTTPStatus(self.code).phrase
        except ValueError:
            return "Unknown Status"

    def wsgi_start(self):
        """start_response arguments, once the default headers are filled in."""
        self.headers.setdefault('Content-Type',
                                f"{self.content_type};charset={self.charset}")
        exc_info = None
        if self.http_error:
            for k, v in self.http_error.all_headers().items():
                self.headers.setdefault(k, v)
            if self.http_error.has_cause():
                exc_info = self.http_error.exc_info()
        return f"{self.code} {self.phrase}", self.headers.items(), exc_info

    def wsgi_body(self) -> list[bytes]:
        return [''.join(self.chunks).encode(self.charset)]


@dataclass
class FuncHandler:
    """Adapts a `handler(request, response)` function to the Handler protocol."""
    handlerfn: HandlerFn

    def handle_request(self, request: Request, **kwargs) -> Response:
        http_error = request.http_errors[0] if request.http_errors else None
        response = Response(http_error=http_error)
        try:
            content = self.handlerfn(request, response)
        except debug.DebugExit:
            return response  # whatever was written before exit_script()
        if isinstance(content, Response):
            content.http_error = content.http_error or http_error
            return content
        if content is not None:
            response.set_content(content)
        return response


@dataclass
class Route:
    path: str
    methods: tuple[str, ...] = tuple()
    pattern: re.Pattern = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, 'pattern', util.path_to_pattern(self.path))

    def match(self, request: Request) -> RouteMatch | None:
        if match := self.pattern.match(request.path):
            if self.methods and request.method not in self.methods:
                raise MethodNotAllowed(allow=self.methods)
            return RouteMatch(self, match)
        return None


class App:
    """A WSGI application with Tuffy's debugging tools wired in.

    Each request gets a fresh debug log. The log is shared by the whole app,
    so requests are expected to run one at a time.
    """
    def __init__(self, settings: Settings | t.Mapping[str, t.Any] | None = None, *,
                 settings_file: str | None = None,
                 sessions: SessionStore | None = None):
        self.settings = settings if isinstance(settings, Settings) else Settings()
        if settings_file:
            self.settings.configure(
                util.load_variables(util.interpret_path(settings_file)))
        if settings is not None and not isinstance(settings, Settings):
            self.settings.configure(settings)
        self.app_name: str = self.settings.get('appName')
        if not self.app_name:
            raise ValueError("You must define the appName setting.")

        self.sessions: SessionStore = sessions or MemorySessionStore()
        self.log = self._new_log()
        self.router = debug.ExceptionRouter(self.log, self.settings)
        self.routes: list[tuple[Route, Handler]] = []
        self.errorhandlers: dict[int | None, Handler] = dict()
        for init in self.settings.get('initializers', ()):
            init(self)

    def _new_log(self) -> debug.DebugLog:
        return debug.DebugLog(app_path=self.settings.get('appPath'))

    @property
    def session_cookie(self) -> str:
        return self.settings.get('sessionCookie', 'tuffy_session')

    # Decorators ----------------------------------------------------------

    def route(self, path, methods: _O[list[str]] = None) -> _Wrapper[HandlerFn]:
        def decorator(handlerfn: HandlerFn):
            self.add_route(path, handlerfn, methods)
            return handlerfn
        return decorator

    def errorhandler(self, code: int | None) -> _Wrapper[HandlerFn]:
        def decorator(handlerfn: HandlerFn):
            self.set_errorhandler(code, handlerfn)
            return handlerfn
        return decorator

    # Setup ---------------------------------------------------------------

    def add_route(self, path: str, handler: AnyHandler, methods: _O[list[str]] = None):
        self.routes.append((Route(path, tuple(methods) if methods else tuple()),
                            self.make_handler(handler)))

    def set_errorhandler(self, error: int | None, handler: AnyHandler):
        """Handle this status code; `None` catches codes with no handler of their own."""
        self.errorhandlers[error] = self.make_handler(handler)

    @staticmethod
    def make_handler(handler: AnyHandler) -> Handler:
        return handler if isinstance(handler, Handler) else FuncHandler(handler)

    # Debugging -----------------------------------------------------------

    def debug(self, title: str, data: t.Any, skip_extra: int = 0) -> int | None:
        """Log a message if the debug setting is on; returns its index.

        `skip_extra` drops that many more frames from the message's stack.
        """
        if self.settings.get('debug'):
            return self.log.record(title, data, 0, 1 + skip_extra)
        return None

    def warn(self, title: str, data: t.Any, skip_extra: int = 0) -> int | None:
        """Like debug, but the message is flagged as a problem."""
        if self.settings.get('debug'):
            return self.log.record(title, data, debug.PROBLEM, 1 + skip_extra)
        return None

    def exit_script(self) -> t.NoReturn:
        """Stop handling the request. Callers can catch DebugExit to carry on."""
        raise debug.DebugExit()

    # URLs and sessions ---------------------------------------------------

    def url(self, request: Request, target: str,
            params: t.Mapping[str, t.Any] | None = None,
            force_https: bool = False) -> str:
        """Expand `target` to a full URL.

        "index" is the app's root. Absolute URLs are kept, URLs starting with
        "/" are relative to the host, anything else to the app's prefix.
        """
        scheme = "https://" if force_https else f"{request.scheme}://"
        if target == 'index':
            base = scheme + request.host + request.prefix
        elif urllib.parse.urlsplit(target).scheme:
            base = target
        elif target.startswith('/'):
            base = scheme + request.host + target
        else:
            base = scheme + request.host + request.prefix + target
        return base if params is None else f"{base}?{util.build_query(params, True)}"

    def redirect(self, request: Request, target: str, code: int = 303) -> t.NoReturn:
        """Redirect to `target`, keeping the debug log for the next request."""
        dest = self.url(request, target)
        if self.settings.get('debug') and request.session is not None:
            self.debug("Redirecting", dest)
            self.log.save_in_session(request.session, self.app_name)
        raise Redirect(code, location=dest)

    def require_ssl(self, request: Request) -> None:
        if not request.secure:
            self.redirect(request, f"https://{request.host}{request.uri}", 307)

    def _flash_key(self) -> str:
        return f"{self.app_name}:flashes"

    def flash(self, request: Request, kind: str, message: str) -> None:
        """Save a message in the session for display on a later page."""
        if request.session is None:
            warnings.warn("sessions are disabled", UserWarning, stacklevel=2)
            return
        request.session.setdefault(self._flash_key(), []).append(
            {'type': kind, 'message': message})

    def get_flashes(self, request: Request, remove: bool = True) -> list[dict[str, str]]:
        if request.session is None:
            warnings.warn("sessions are disabled", UserWarning, stacklevel=2)
            return []
        if remove:
            return request.session.pop(self._flash_key(), [])
        return list(request.session.get(self._flash_key(), []))

    def begin_request(self, request: Request) -> Request:
        self.log = self._new_log()
        self.router.log = self.log
        if self.settings.get('useSessions'):
            cookie = request.cookies.get(self.session_cookie)
            request.session = self.sessions.open(cookie.value if cookie else None)
            if self.settings.get('debug'):
                self.log.restore_from_session(request.session, self.app_name)
                self.debug(f"Session {request.session.sid}", dict(request.session))
        return request

    def end_request(self, request: Request, response: Response) -> None:
        if request.session is None:
            return
        self.sessions.save(request.session)
        if request.session.new:
            response.headers.add_header(
                'Set-Cookie',
                f"{self.session_cookie}={request.session.sid}; Path=/; HttpOnly")

    # Request Handling ----------------------------------------------------

    def handle_request(self, request: Request) -> Response:
        try:
            with HttpError.wrap_exceptions():
                route_match, handler = self.get_route(request)
                request = request.with_route(route_match)
                return handler.handle_request(request)
        except HttpError as http_error:
            if error_handler := self.get_error_handler(http_error):
                return error_handler.handle_request(request.with_error(http_error))
            raise

    def get_route(self, request: Request) -> tuple[RouteMatch, Handler]:
        methods_allowed = set([])
        for route, handler in self.routes:
            try:
                if match := route.match(request):
                    return match, handler
            except MethodNotAllowed as ex:
                methods_allowed = methods_allowed.union(ex.allow)
        if methods_allowed:
            raise MethodNotAllowed(allow=tuple(sorted(methods_allowed)))
        raise HttpError(404)

    def get_error_handler(self, http_error: HttpError) -> Handler | None:
        """The handler for this status code, else the catch-all (None) one."""
        return (self.errorhandlers.get(http_error.code)
                or self.errorhandlers.get(None))

    def default_error_handler(self, request: Request) -> Response:
        if not request.http_errors:
            raise HttpError(
                500, "Error handler called with no error",
                desc="Error handler was invoked with no error attached to the "
                "request. (That is, itself, an error.)")
        err = request.http_errors[0]
        resp = Response(http_error=err)
        cause = err.__cause__
        if err.code >= 500 and cause is not None and not isinstance(cause, HttpError):
            resp.write(self.router.render(cause))  # production or dev report
        elif (body := err.body()) is not None:
            resp.write(body)
        else:
            resp.write(f"<h2>HTTP {resp.code} - {resp.phrase}</h2>\n")
            if err.short:
                resp.write(f"<h3>{html.escape(err.short)}</h3>\n")
            if err.desc:
                resp.write(f"<div>{html.escape(err.desc)}</div>\n")
        return resp

    def fallback_error_handler(self, request: Request, http_error: HttpError) -> Response:
        try:
            with HttpError.wrap_exceptions():
                return self.default_error_handler(request.with_error(http_error))
        except HttpError:
            logger.exception("error page for HTTP %s failed", http_error.code)
            return Response(
                "The server encountered an error, and another one while "
                "reporting it.\n", http_error=http_error, content_type='text/plain')

    # Server Running ----------------------------------------------------

    def make_server(self, port=8080, host=''):
        """A single-threaded development server; requests share the app's log."""
        return wsgiref.simple_server.make_server(host, port, self)

    def serve_forever(self, port=8080, host=''):
        self.router.register_handlers()
        print("Serving on %s:%s -- ctrl+c to quit." % (host, port))
        try:
            self.make_server(port, host).serve_forever()
        except KeyboardInterrupt:
            pass
        finally:
            self.router.unregister_handlers()

    def __call__(self, environ, start_response):
        """WSGI entrypoint. Warnings raised while handling go to the router."""
        request = Request.from_wsgi(environ)
        with self.router.catching_warnings():
            try:
                request = self.begin_request(request)
                response = self._wsgi_get_response(request)
            except debug.DebugExit:
                response = Response()
            self.end_request(request, response)
        logger.debug("%s %s -> %s", request.method, request.path, response.code)
        start_response(*response.wsgi_start())
        return response.wsgi_body()

    def _wsgi_get_response(self, request: Request) -> Response:
        """Call handler with 100% error handling."""
        try:
            with HttpError.wrap_exceptions():
                return self.handle_request(request)
        except HttpError as ex:  # pylint: disable=broad-exception-caught
            return self.fallback_error_handler(request, ex)
