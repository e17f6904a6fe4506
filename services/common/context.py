"""
Common — リクエスト単位の trace id

リクエストごとに trace id を ContextVar に保持する。
受信した X-Trace-Id ヘッダがあればそれを使い、レスポンスにも返す。
エンベロープに埋め込み、他サービスへの送信時にも引き継ぐ。
"""

import contextvars
import uuid

TRACE_HEADER = "X-Trace-Id"

_trace_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "trace_id", default=None
)


def new_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex[:13]}"


def current_trace_id() -> str:
    """現在のリクエストの trace id を返す（未設定なら生成する）"""
    trace_id = _trace_id.get()
    if trace_id is None:
        trace_id = new_trace_id()
        _trace_id.set(trace_id)
    return trace_id


def peek_trace_id() -> str | None:
    return _trace_id.get()


def trace_headers() -> dict[str, str]:
    return {TRACE_HEADER: current_trace_id()}


class TraceIdMiddleware:
    """リクエストの間 trace id を束縛する ASGI ミドルウェア"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        header = TRACE_HEADER.lower().encode()
        incoming = dict(scope.get("headers") or []).get(header, b"").decode()
        trace_id = incoming or new_trace_id()
        token = _trace_id.set(trace_id)

        async def send_with_trace(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers") or [])
                headers.append((header, trace_id.encode()))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_trace)
        finally:
            _trace_id.reset(token)
