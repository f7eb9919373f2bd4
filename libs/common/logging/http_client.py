"""HTTP client that forwards the transaction id to downstream services.

The vendor and org directory clients are built on this so that a single
reconciliation can be followed across service boundaries.

Example:
    >>> async with get_transaction_client(base_url="https://chat.example.com") as client:
    ...     response = await client.get("/users")  # carries X-Transaction-ID
"""

from typing import Any

import httpx

from libs.common.logging.context import TRANSACTION_ID_HEADER, get_transaction_id


class TransactionHTTPXClient(httpx.AsyncClient):
    """httpx.AsyncClient that injects the current transaction id header."""

    async def request(
        self,
        method: str,
        url: httpx.URL | str,
        **kwargs: Any,
    ) -> httpx.Response:
        transaction_id = get_transaction_id()
        if transaction_id:
            headers = dict(kwargs.get("headers") or {})
            headers[TRANSACTION_ID_HEADER] = transaction_id
            kwargs["headers"] = headers

        return await super().request(method, url, **kwargs)


def get_transaction_client(
    base_url: str | None = None,
    timeout: float = 10.0,
    **kwargs: Any,
) -> TransactionHTTPXClient:
    """Create a TransactionHTTPXClient.

    Args:
        base_url: Base URL for all requests
        timeout: Per-request timeout in seconds
        **kwargs: Additional httpx.AsyncClient parameters (headers, transport, ...)
    """
    client_kwargs: dict[str, Any] = {"timeout": timeout, **kwargs}
    if base_url is not None:
        client_kwargs["base_url"] = base_url

    return TransactionHTTPXClient(**client_kwargs)
