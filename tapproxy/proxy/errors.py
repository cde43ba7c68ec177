"""
Error responses sent to the client when a request cannot be completed.
"""
from __future__ import annotations

import json
import traceback

import tornado.template

from tapproxy.context import ResponseInfo
from tapproxy.net.http.headers import Headers
from tapproxy.utils import data

loader = tornado.template.Loader(data.pkg_data.path("web/templates"))

CERT_ERROR_TITLE = "The connection is not secure."


def error_code(error: BaseException | None) -> str | None:
    return getattr(error, "code", None)


def error_message(error: BaseException | None) -> str:
    """
    A single-line JSON description of the error, suitable for a header value.
    """
    if error is None:
        return "null"
    return json.dumps(
        {
            "type": type(error).__name__,
            "message": str(error),
            "code": error_code(error),
        }
    )


def cert_error_content(error: BaseException) -> bytes:
    code = error_code(error)
    if code == "UNABLE_TO_GET_ISSUER_CERT_LOCALLY":
        explain = (
            "The certificate of the site you are visiting is not issued by a known authority, "
            "which usually happens when the certificate is self-signed.<br>"
            "If you know and trust the site, you can run tapproxy with "
            "<strong>--set ignore_unauthorized_ssl=true</strong> to continue."
        )
    else:
        explain = ""
    t = loader.load("cert_error.html")
    return t.generate(title=CERT_ERROR_TITLE, explain=explain, code=code)


def default_error_content(error: BaseException, url: str) -> bytes:
    t = loader.load("502.html")
    return t.generate(
        url=url,
        error=str(error),
        error_type=type(error).__name__,
        error_stack=traceback.format_exception(error),
    )


def error_content(error: BaseException, url: str) -> bytes:
    if error_code(error) == "UNABLE_TO_GET_ISSUER_CERT_LOCALLY":
        return cert_error_content(error)
    return default_error_content(error, url)


def error_response(error: BaseException, url: str) -> ResponseInfo:
    return ResponseInfo(
        status_code=500,
        headers=Headers(
            [
                ("Content-Type", "text/html; charset=utf-8"),
                ("Proxy-Error", "true"),
                ("Proxy-Error-Message", error_message(error)),
            ]
        ),
        body=error_content(error, url),
    )
