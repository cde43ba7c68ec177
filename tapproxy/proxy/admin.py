"""
Administrative endpoints on the plain proxy listener, all below /__tapproxy/:

    api/reload_rule     reload the rule from its source
    api/close           shut the proxy down
    api/logs            completed requests, newest first
    api/log?id=N        a single request record
    web/<path>          static assets of the inspection UI
"""
from __future__ import annotations

import json
import logging
import mimetypes
import urllib.parse
from pathlib import Path
from typing import Any
from typing import Protocol

import h11

from tapproxy import exceptions
from tapproxy.proxy import http1
from tapproxy.recorder import Recorder
from tapproxy.utils import asyncio_utils

logger = logging.getLogger(__name__)

PREFIX = "/__tapproxy/"


class Controller(Protocol):
    recorder: Recorder | None

    def reload_rule(self) -> bool: ...

    async def close(self) -> None: ...


def is_admin_path(path: str) -> bool:
    return path.startswith(PREFIX)


def get_mime_type(file_path: str) -> str:
    return mimetypes.guess_type(file_path)[0] or "text/plain"


def safe_join(root: Path, untrusted: str) -> Path:
    """
    Join an untrusted relative path to root.

    Raises:
        ValueError, if the result would be outside of root.
    """
    root = root.resolve()
    joined = (root / untrusted.lstrip("/")).resolve()
    if not joined.is_relative_to(root):
        raise ValueError(f"Untrusted path: {untrusted}")
    return joined


class AdminApi:
    def __init__(self, controller: Controller, web_root: Path):
        self.controller = controller
        self.web_root = web_root

    async def respond(
        self,
        conn: http1.HttpConnection,
        status_code: int,
        body: bytes,
        content_type: str = "text/plain",
    ) -> None:
        await conn.send(
            h11.Response(
                status_code=status_code,
                headers=[
                    (b"Content-Type", content_type.encode()),
                    (b"Content-Length", str(len(body)).encode()),
                ],
            ),
            h11.Data(data=body),
            h11.EndOfMessage(),
        )

    async def respond_json(self, conn: http1.HttpConnection, data: Any) -> None:
        await self.respond(conn, 200, json.dumps(data).encode(), "application/json")

    async def handle(self, conn: http1.HttpConnection, target: str) -> bool:
        """
        Answer an administrative request. The request body is discarded.

        Returns:
            True, if the client connection can be reused.
        """
        async for _ in conn.iter_body():
            pass
        parts = urllib.parse.urlsplit(target)
        path = parts.path[len(PREFIX) :]
        recorder = self.controller.recorder

        if path == "api/reload_rule":
            await self.respond(conn, 200, b"refresh user_rule")
            try:
                self.controller.reload_rule()
            except exceptions.RuleError as e:
                logger.error(f"Cannot reload rule: {e}")
        elif path == "api/close":
            await self.respond(conn, 200, b"__tapproxy close")
            asyncio_utils.create_task(
                self.controller.close(), name="proxy shutdown", keep_ref=True
            )
            return False
        elif path == "api/logs":
            await self.respond_json(conn, recorder.get_logs() if recorder else [])
        elif path == "api/log":
            rid = urllib.parse.parse_qs(parts.query).get("id", [""])[0]
            await self.respond_json(conn, recorder.get_log(rid) if recorder and rid else {})
        elif path.startswith("web/") or path == "web":
            await self.serve_static(conn, path[len("web/") :] or "index.html")
        else:
            await self.respond(conn, 404, b"__tapproxy")
        return conn.start_next_cycle()

    async def serve_static(self, conn: http1.HttpConnection, path: str) -> None:
        try:
            file = safe_join(self.web_root, urllib.parse.unquote(path))
        except ValueError:
            file = None
        if file is not None and file.is_dir():
            file = file / "index.html"
        if file is None or not file.is_file():
            await self.respond(conn, 404, b"__tapproxy web")
            return
        await self.respond(conn, 200, file.read_bytes(), get_mime_type(str(file)))
