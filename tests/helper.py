from tests.util import wsgi
from tests import _config

import typing as t
import tuffy
from dataclasses import dataclass
from _pytest.assertion import util as _pytest_util

APP_NAME = "testapp"


@dataclass(slots=True)
class _Fault:
    key: str
    want: t.Any
    got: t.Any

    def __str__(self):
        return f"{self.key}: expected={self.want!r}, got={self.got!r}"


def make_app(**settings) -> tuffy.App:
    return tuffy.App({"appName": APP_NAME, **settings})


def basic_handler(content: t.Any):
    def handler(request: tuffy.Request, response: tuffy.Response):
        return content
    return handler


def assert_response(resp: wsgi.Response,
                    code: int,
                    content: None | str | bytes = None,
                    headers: None | dict[str, str] = None,
                    ):
    __tracebackhide__ = True
    faults = []

    if code != resp.code:
        faults.append(_Fault("Response.code", code, resp.code))

    if content is not None:
        resp_content = (resp.output_bytes() if isinstance(content, bytes)
                        else resp.output_str())
        if content != resp_content:
            faults.append(_Fault("Response.content", content, resp_content))

    for k, want in (headers or {}).items():
        got = resp.headers_normalized.get(k.lower())
        if want != got:
            faults.append(_Fault(f"Response.header[{k}]", want, got))

    if faults:
        if len(faults) == 1 and not _config.verbose:
            msg = str(faults[0])
        else:
            details = [repr(resp), *[f">> {f}" for f in faults]]
            if _config.verbose:
                details.append(">-----RESPONSE DUMP-----")
                details.extend(
                    f">|{line}" for line in resp.dump().splitlines())
            msg = "\n".join(details)
        raise AssertionError(_pytest_util.format_explanation(msg))


def assert_produces_response(
        app: wsgi.WSGIApplication,
        url: str,
        code: int,
        content: str | bytes | None = None,
        headers: None | dict[str, str] = None,
        **argv):
    __tracebackhide__ = True
    got = wsgi.Request(url, **argv).get_response(app)
    assert_response(got, code, content, headers)
    return got
