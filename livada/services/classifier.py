"""
ErrorClassifier - Labels a failed fetch as a connectivity or upstream error.

Connectivity errors mean the upstream host could not be reached at all (or
not in time). They make the gateway willing to serve older cached data.
Everything else, including a received non-2xx status, is an upstream error.
"""

import asyncio
import errno
import socket
from enum import Enum
from typing import Protocol

import httpx

from livada.services.errors import ConnectivityError, UpstreamError


class ErrorKind(str, Enum):
    """Failure classes that drive fallback decisions."""

    CONNECTIVITY = "connectivity"
    UPSTREAM = "upstream-error"


class ErrorClassifier(Protocol):
    def classify(self, error: BaseException) -> ErrorKind: ...


_CONNECTIVITY_ERRNOS = frozenset(
    {
        errno.ENETUNREACH,
        errno.EHOSTUNREACH,
        errno.ECONNREFUSED,
        errno.ETIMEDOUT,
        errno.ECONNRESET,
        errno.ECONNABORTED,
    }
)

_CONNECTIVITY_MARKERS = (
    "enotfound",
    "econnrefused",
    "etimedout",
    "enetunreach",
    "ehostunreach",
    "eai_again",
    "getaddrinfo",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "connection refused",
    "network is unreachable",
    "timed out",
    "aborted",
)


class DefaultErrorClassifier:
    """
    Classify by exception type first, by message text only as a last resort.

    The exception, its ``__cause__`` and its ``__context__`` are all
    inspected, so wrapped transport errors are still recognised.
    """

    def classify(self, error: BaseException) -> ErrorKind:
        chain = list(self._chain(error))

        for exc in chain:
            kind = self._classify_type(exc)
            if kind is not None:
                return kind

        message = " ".join(str(exc) for exc in chain).lower()
        if any(marker in message for marker in _CONNECTIVITY_MARKERS):
            return ErrorKind.CONNECTIVITY

        return ErrorKind.UPSTREAM

    @staticmethod
    def _chain(error: BaseException):
        seen: set[int] = set()
        current: BaseException | None = error
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            yield current
            current = current.__cause__ or current.__context__

    @staticmethod
    def _classify_type(exc: BaseException) -> ErrorKind | None:
        if isinstance(exc, ConnectivityError):
            return ErrorKind.CONNECTIVITY
        if isinstance(exc, UpstreamError):
            return ErrorKind.UPSTREAM
        if isinstance(exc, httpx.HTTPStatusError):
            return ErrorKind.UPSTREAM
        if isinstance(
            exc,
            (
                httpx.TimeoutException,
                httpx.ConnectError,
                httpx.NetworkError,
                asyncio.TimeoutError,
                asyncio.CancelledError,
                TimeoutError,
                socket.gaierror,
                ConnectionError,
            ),
        ):
            return ErrorKind.CONNECTIVITY
        if isinstance(exc, OSError) and exc.errno in _CONNECTIVITY_ERRNOS:
            return ErrorKind.CONNECTIVITY
        return None


default_classifier = DefaultErrorClassifier()
