"""
The Recorder:

- Hands out a correlation id for every request
- Keeps a bounded, in-memory record of each request as it progresses through the pipeline
- Keeps the delivered response bodies for later inspection
"""
from __future__ import annotations

import base64
import collections
import logging
import time
from typing import Any

from tapproxy.context import ConnectContext
from tapproxy.context import RequestContext
from tapproxy.context import WebSocketContext
from tapproxy.net.http.headers import Headers

logger = logging.getLogger(__name__)


def _text(body: bytes | None) -> str:
    if not body:
        return ""
    return body.decode("utf-8", "replace")


def _mime(headers: Headers) -> str:
    return headers.get("content-type", "").split(";")[0].strip()


class Recorder:
    def __init__(self, size: int = 10000, ws_message_limit: int = 1000) -> None:
        self.size = size
        self.ws_message_limit = ws_message_limit
        self._next_id = 1
        self._records: collections.OrderedDict[int, dict[str, Any]] = (
            collections.OrderedDict()
        )
        self._bodies: dict[int, bytes] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self):
        return f"Recorder({len(self._records)} records)"

    def append_id(self) -> int:
        rid = self._next_id
        self._next_id += 1
        self._records[rid] = {"id": rid}
        while len(self._records) > self.size:
            old, _ = self._records.popitem(last=False)
            self._bodies.pop(old, None)
        return rid

    def _new_record(self, **fields: Any) -> int:
        rid = self.append_id()
        self._records[rid].update(
            req_body="",
            status_code=None,
            end_time=None,
            res_header=None,
            length=None,
            mime="",
            duration=None,
            start_time=time.time(),
            **fields,
        )
        return rid

    def _finish(self, rid: int | None, status_code: int | None, **fields: Any) -> None:
        record = self._records.get(rid) if rid is not None else None
        if record is None:
            return
        end_time = time.time()
        record.update(
            status_code=status_code,
            end_time=end_time,
            duration=end_time - record["start_time"],
            **fields,
        )

    def append_connect(self, context: ConnectContext) -> int:
        return self._new_record(
            url=f"https://{context.authority}",
            host=context.host,
            path="",
            method="CONNECT",
            protocol="https",
            req_header=context.headers.to_dict(),
        )

    def update_connect(self, rid: int | None, error: Exception | None = None) -> None:
        if error is None:
            self._finish(rid, 200, res_header={}, length=0)
        else:
            self._finish(rid, 502, res_header={}, length=0, error=str(error))

    def append_websocket(self, context: WebSocketContext) -> int:
        return self._new_record(
            url=context.url,
            host=context.hostname,
            path=context.path,
            method="WebSocket",
            protocol="wss" if context.secure else "ws",
            req_header=context.headers.to_dict(),
            ws_messages=[],
        )

    def update_websocket(
        self,
        rid: int | None,
        status_code: int | None,
        headers: Headers | None = None,
        error: Exception | None = None,
    ) -> None:
        fields: dict[str, Any] = dict(
            res_header=headers.to_dict() if headers is not None else {}, length=0
        )
        if error is not None:
            fields["error"] = str(error)
        self._finish(rid, status_code, **fields)

    def append_ws_message(self, rid: int | None, message: str | bytes, to_server: bool) -> None:
        record = self._records.get(rid) if rid is not None else None
        if record is None:
            return
        messages = record.setdefault("ws_messages", [])
        messages.append(
            {
                "time": time.time(),
                "message": message
                if isinstance(message, str)
                else base64.b64encode(message).decode(),
                "is_binary": not isinstance(message, str),
                "is_to_server": to_server,
            }
        )
        if len(messages) > self.ws_message_limit:
            del messages[: len(messages) - self.ws_message_limit]

    def _record(self, context: RequestContext) -> dict[str, Any] | None:
        if context.recorder_id is None:
            return None
        return self._records.get(context.recorder_id)

    def update_raw_req(self, context: RequestContext) -> None:
        record = self._record(context)
        if record is None:
            return
        req = context.raw_req
        record.update(
            url=req.url,
            host=req.hostname,
            path=req.path,
            method=req.method,
            protocol=req.protocol,
            req_header=req.headers.to_dict(),
            start_time=context.client_start,
            req_body="",
            status_code=None,
            end_time=None,
            res_header=None,
            length=None,
            mime="",
            duration=None,
        )

    def update_raw_req_body(self, context: RequestContext) -> None:
        record = self._record(context)
        if record is not None:
            record["req_body"] = _text(context.raw_req.body)

    def update_user_req(self, context: RequestContext) -> None:
        record = self._record(context)
        if record is not None:
            record["user_req"] = {
                "method": context.req.method,
                "url": context.req.url,
                "headers": context.req.headers.to_dict(),
            }

    def update_raw_res(self, context: RequestContext) -> None:
        record = self._record(context)
        if record is not None:
            record["raw_status_code"] = context.raw_res.status_code
            record["raw_res_header"] = context.raw_res.headers.to_dict()

    def update_raw_res_body(self, context: RequestContext) -> None:
        record = self._record(context)
        if record is not None and context.raw_res.body is not None:
            record["raw_length"] = len(context.raw_res.body)

    def update_user_res(self, context: RequestContext, use_raw: bool = False) -> None:
        record = self._record(context)
        if record is None:
            return
        res = context.raw_res if use_raw else context.res
        record.update(
            status_code=res.status_code,
            res_header=res.headers.to_dict(),
            mime=_mime(res.headers),
        )
        body = res.body if res.body is not None else context.raw_res.body
        if body is not None:
            self._bodies[context.recorder_id] = body  # type: ignore[index]

    def update_user_res_end(self, context: RequestContext, use_raw: bool = False) -> None:
        record = self._record(context)
        if record is None:
            return
        end_time = context.client_end or time.time()
        body = self._bodies.get(context.recorder_id)  # type: ignore[arg-type]
        if body is None:
            # streamed responses are only complete now.
            res = context.raw_res if use_raw else context.res
            body = res.body if res.body is not None else context.raw_res.body
            if body is not None:
                self._bodies[context.recorder_id] = body  # type: ignore[index]
        record.update(
            end_time=end_time,
            length=len(body) if body is not None else 0,
            duration=end_time - record.get("start_time", end_time),
            raw=use_raw,
        )

    def get_logs(self) -> list[dict[str, Any]]:
        """
        All completed records, newest first.
        """
        return [
            dict(r) for r in reversed(self._records.values()) if r.get("end_time")
        ]

    def get_log(self, rid: int | str) -> dict[str, Any]:
        try:
            record = self._records.get(int(rid))
        except ValueError:
            return {}
        return dict(record) if record else {}

    def get_body(self, rid: int | str) -> bytes:
        try:
            return self._bodies.get(int(rid), b"")
        except ValueError:
            return b""

    def clear(self) -> None:
        logger.debug(f"Clearing {len(self._records)} records.")
        self._records.clear()
        self._bodies.clear()
