"""Concurrent fetch helper shared by the reconciliation repositories."""

import asyncio
from collections.abc import Awaitable
from typing import Any

from proxy_common.exceptions import ProxyCoreError, RepositoryException


async def gather_or_raise(*awaitables: Awaitable[Any]) -> list[Any]:
    """
    Await every branch to completion, then raise the first failure.

    Failures are checked in argument order, not completion order. Errors
    outside the proxy exception taxonomy are wrapped in RepositoryException.

    Returns:
        Results in argument order
    """
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    for result in results:
        if isinstance(result, ProxyCoreError):
            raise result
        if isinstance(result, Exception):
            raise RepositoryException(result) from result
        if isinstance(result, BaseException):
            raise result
    return list(results)
