"""ASGI middleware binding each HTTP request to a transaction id.

The inbound ``X-Transaction-ID`` header is reused when present so a caller
that triggers a sync can correlate its own logs with ours; otherwise a new id
is generated. The id is echoed on every response, error responses included.

Example:
    >>> app = FastAPI()
    >>> add_transaction_id_middleware(app)
"""

from collections.abc import Callable

from fastapi import FastAPI
from starlette.types import ASGIApp

from libs.common.logging.context import (
    TRANSACTION_ID_HEADER,
    clear_transaction_id,
    generate_transaction_id,
    set_transaction_id,
)


class ASGITransactionIDMiddleware:
    """Low-level ASGI middleware so headers survive exception handlers."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: dict, receive: Callable, send: Callable) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        header_name = TRANSACTION_ID_HEADER.lower().encode()
        headers = dict(scope.get("headers", []))
        raw_id = headers.get(header_name)
        transaction_id = raw_id.decode() if raw_id else generate_transaction_id()
        set_transaction_id(transaction_id)

        async def send_with_transaction_id(message: dict) -> None:
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.append((header_name, transaction_id.encode()))
                message["headers"] = response_headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_transaction_id)
        finally:
            clear_transaction_id()


def add_transaction_id_middleware(app: FastAPI) -> None:
    app.add_middleware(ASGITransactionIDMiddleware)
