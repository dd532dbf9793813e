from tests import helper
import tuffy


expect_response = helper.assert_produces_response
basic_handler = helper.basic_handler
make_app = helper.make_app


def test_exact_route():
    """Verify non-regex routes aren't regex or prefix matched."""
    app = make_app()
    app.add_route("/", basic_handler("A"))
    app.add_route("/fo.", basic_handler("B"))
    app.add_route("/bar", basic_handler("X"))

    expect_response(app, "/", 200, "A")
    expect_response(app, "/fo.", 200, "B")
    expect_response(app, "/foo", 404)
    expect_response(app, "/bar/foo", 404)
    expect_response(app, "/foo/bar", 404)


def test_fuzzy_route():
    """Test non-regex pattern matching."""
    app = make_app()
    app.add_route("/", basic_handler("A"))
    app.add_route("/*/bar", basic_handler("B"))
    app.add_route("/foo/*/baz", basic_handler("C"))

    expect_response(app, "/", 200, "A")
    expect_response(app, "/foo/bar", 200, "B")
    expect_response(app, "/far/bar", 200, "B")
    expect_response(app, "/foo/far/baz", 200, "C")
    expect_response(app, "//bar", 404)
    expect_response(app, "/foo/far", 404)


def test_regex_route():
    """Verify regex routes are regex matched."""
    app = make_app()
    app.add_route(r"^/$", basic_handler("A"))
    app.add_route(r"^/fo.$", basic_handler("B"))
    app.add_route(r"^/bar", basic_handler("pfx"))

    expect_response(app, "/", 200, "A")
    expect_response(app, "/foo", 200, "B")
    expect_response(app, "/bar/foo", 200, "pfx")
    expect_response(app, "/foo/bar", 404)


def test_route_vars():
    app = make_app()

    @app.route(r"/api/<ver:v\d+>/get/<kind>/<id:\d+>")
    def _(req: tuffy.Request, resp):
        return ",".join(f"{k}={v}" for k, v in sorted(req.vars.items()))

    expect_response(app, "/api/v2/get/fish/37?x=1", 200, "id=37,kind=fish,ver=v2,x=1")
    expect_response(app, "/api/v/get/fish/37", 404)


def test_error_handler():
    """Verify custom error handlers get called, even on implicit (404) Errors."""
    app = make_app()
    app.add_route(r"/", basic_handler("OK"))
    app.set_errorhandler(404, basic_handler("NOT OK"))
    app.set_errorhandler(567, basic_handler("OTHER"))

    @app.route("/other")
    def _(i, o):
        raise tuffy.HttpError(567)

    expect_response(app, "/", 200, "OK")
    expect_response(app, "/foo", 404, "NOT OK")
    expect_response(app, "/other", 567, "OTHER")


def test_method_405s():
    """Verify 405s error generated for method not found."""
    app = make_app()
    app.add_route(r"/", basic_handler("/@G"), methods=['GET'])
    app.add_route(r"/", basic_handler("/@P"), methods=['POST'])
    app.add_route(r"/g", basic_handler("/g@G"), methods=['GET'])
    app.add_route(r"/p", basic_handler("/p@P"), methods=['POST'])

    expect_response(app, "/", 200, "/@G", postdata=None)
    expect_response(app, "/", 200, "/@P", postdata='xyz')
    expect_response(app, "/g", 200, "/g@G", postdata=None)
    expect_response(app, "/p", 200, "/p@P", postdata='xyz')

    expect_response(app, '/g', 405, postdata='xyz', headers={'Allow': 'GET'})
    expect_response(app, '/p', 405, postdata=None, headers={'Allow': 'POST'})
    expect_response(app, '/', 405, method='OPTIONS', headers={'Allow': 'GET,POST'})
