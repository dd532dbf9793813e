from tests import helper
import tuffy
import pytest

expect_response = helper.assert_produces_response
make_app = helper.make_app


def test_http_error_cause():
    assert not tuffy.HttpError(417).has_cause()
    reason = ValueError("bad input")
    try:
        raise tuffy.HttpError(400, "Bad Request") from reason
    except tuffy.HttpError as ex:
        err = ex
    assert (err.code, err.short) == (400, "Bad Request")
    assert err.exc_info()[:2] == (ValueError, reason)


@pytest.mark.parametrize("args, kwargs, code, short", [
    ([], {}, 500, None),
    ([503, "Down"], {}, 503, "Down"),
    ([], {"short": "Oops"}, 500, "Oops"),
])
def test_wrap_exceptions(args, kwargs, code, short):
    with pytest.raises(tuffy.HttpError) as info:
        with tuffy.HttpError.wrap_exceptions(*args, **kwargs):
            raise KeyError("missing")
    assert (info.value.code, info.value.short) == (code, short)
    assert isinstance(info.value.__cause__, KeyError)


def test_wrap_lets_http_errors_and_exit_through():
    with pytest.raises(tuffy.Redirect):
        with tuffy.HttpError.wrap_exceptions():
            raise tuffy.Redirect(location="/x")
    with pytest.raises(tuffy.DebugExit):
        with tuffy.HttpError.wrap_exceptions():
            raise tuffy.DebugExit()


def test_redirect_error():
    err = tuffy.Redirect(location="http://example.com/next?a=1&b=2")
    assert err.code == 303
    assert err.all_headers() == {"Location": "http://example.com/next?a=1&b=2"}
    assert 'href="http://example.com/next?a=1&amp;b=2"' in err.body()
    assert tuffy.HttpError().code == 500, "Subclass defaults must not leak upward."
    assert tuffy.Redirect(307, location="/x").code == 307


def test_plain_http_error_page():
    app = make_app(debug=True)
    @app.route("/")
    def home(request, response):
        raise tuffy.HttpError(403, "Members only", desc="Log in <first>.")
    resp = expect_response(app, "/", 403)
    assert resp.output_str() == ("<h2>HTTP 403 - Forbidden</h2>\n"
                                 "<h3>Members only</h3>\n"
                                 "<div>Log in &lt;first&gt;.</div>\n")


def test_error_handler_by_code_then_catch_all():
    app = make_app()
    app.set_errorhandler(404, helper.basic_handler("gone"))
    app.set_errorhandler(None, helper.basic_handler("something else"))
    @app.route("/teapot")
    def teapot(request, response):
        raise tuffy.HttpError(418)
    expect_response(app, "/nowhere", 404, "gone")
    expect_response(app, "/teapot", 418, "something else")


def test_failing_error_handler_is_reported():
    app = make_app(debug=True, useSessions=False)
    @app.errorhandler(404)
    def broken(request, response):
        raise ValueError("handler bug")
    resp = expect_response(app, "/nowhere", 500)
    assert "<strong>ValueError</strong>: handler bug" in resp.output_str()


class _Quitter:
    def handle_request(self, request, **kwargs):
        raise tuffy.DebugExit()


class _QuittingSessions(tuffy.MemorySessionStore):
    def open(self, sid):
        raise tuffy.DebugExit()


def test_exit_outside_function_handlers():
    app = make_app(useSessions=False)
    app.add_route("/", _Quitter())
    expect_response(app, "/", 200, "")

    app = tuffy.App({"appName": helper.APP_NAME}, sessions=_QuittingSessions())
    app.add_route("/", helper.basic_handler("unreachable"))
    expect_response(app, "/", 200, "")
