"""Shared test doubles for the grounding pipeline.

``DummySession`` stands in for ``aiohttp.ClientSession``: responses are
routed by method and URL, can be delayed, and can be sequences (one per
call, the last one repeating) so retry paths can be exercised without a
network.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pytest


class DummyHeaders(dict):
    """Case-insensitive header mapping (keys stored lower-cased)."""

    def __init__(self, data: Optional[Dict[str, str]] = None):
        super().__init__({k.lower(): v for k, v in (data or {}).items()})

    def get(self, key, default=None):
        return super().get(key.lower(), default)

    def __getitem__(self, key):
        return super().__getitem__(key.lower())

    def __contains__(self, key):
        return super().__contains__(key.lower())


class DummyContent:
    def __init__(self, data: bytes, chunk_size: Optional[int] = None):
        self._data = data
        self._chunk_size = chunk_size

    async def iter_chunked(self, n: int):
        step = self._chunk_size or n
        for i in range(0, len(self._data), step):
            yield self._data[i:i + step]


class DummyResponse:
    def __init__(
        self,
        status: int = 200,
        body: Union[str, bytes] = "",
        *,
        content_type: str = "text/html; charset=utf-8",
        headers: Optional[Dict[str, str]] = None,
        url: Optional[str] = None,
        history: Sequence[Any] = (),
        charset: Optional[str] = "utf-8",
        payload: Any = None,
        chunk_size: Optional[int] = None,
    ):
        self.status = status
        self._body = body.encode("utf-8") if isinstance(body, str) else body
        merged = {"Content-Type": content_type} if content_type else {}
        merged.update(headers or {})
        self.headers = DummyHeaders(merged)
        self.url = url
        self.history = tuple(history)
        self.charset = charset
        self._payload = payload
        self.content = DummyContent(self._body, chunk_size)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return self._body.decode(self.charset or "utf-8", errors="replace")

    async def json(self):
        return self._payload


Route = Union[DummyResponse, BaseException, List[Union[DummyResponse, BaseException]]]


class _RequestContext:
    def __init__(self, session: "DummySession", method: str, url: str):
        self._session = session
        self._method = method
        self._url = url

    async def __aenter__(self):
        delay = self._session.delays.get(self._url, self._session.delay)
        if delay:
            await asyncio.sleep(delay)
        resp = self._session._resolve(self._method, self._url)
        if isinstance(resp, BaseException):
            raise resp
        if resp.url is None:
            resp.url = self._url
        return resp

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummySession:
    """Minimal ``aiohttp.ClientSession`` double.

    Unrouted HEAD requests answer 200, unrouted GET requests answer 404.
    """

    def __init__(
        self,
        get: Optional[Dict[str, Route]] = None,
        head: Optional[Dict[str, Route]] = None,
        *,
        delay: float = 0.0,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.routes: Dict[str, Dict[str, Route]] = {"GET": dict(get or {}), "HEAD": dict(head or {})}
        self.delay = delay
        self.delays = dict(delays or {})
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed = False

    def _resolve(self, method: str, url: str):
        route = self.routes[method].get(url)
        if route is None:
            return DummyResponse(200 if method == "HEAD" else 404, "not found")
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return _RequestContext(self, "GET", url)

    def head(self, url, **kwargs):
        self.calls.append(("HEAD", url, kwargs))
        return _RequestContext(self, "HEAD", url)

    def count(self, method: str, url: Optional[str] = None) -> int:
        return sum(1 for m, u, _ in self.calls if m == method and (url is None or u == url))

    async def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


RUST_OWNERSHIP = (
    "Ownership is the set of rules that governs how a Rust program manages memory. "
    "Every value in Rust has an owner, and there can only be one owner at a time. "
    "When the owner goes out of scope, the value is dropped and its memory is returned. "
    "Some languages have garbage collection that regularly looks for memory that is no "
    "longer being used while the program runs, and in other languages the programmer must "
    "explicitly allocate it. Rust uses a third approach that is checked by the compiler, "
    "so none of the features of ownership will slow down your program while it is running."
)

RUST_BORROWING = (
    "A reference is like a pointer in that it is an address we can follow to access the "
    "data stored at that address, and that data is owned by some other variable. Unlike "
    "a pointer, a reference is guaranteed to point to a valid value of a particular type "
    "for the life of that reference. We call the action of creating a reference borrowing. "
    "As in real life, if a person owns something, you can borrow it from them, and when "
    "you are done you have to give it back, because you do not own it."
)

RUST_LIFETIMES = (
    "Lifetimes are another kind of generic that we have already been using. Rather than "
    "ensuring that a type has the behavior we want, lifetimes ensure that references are "
    "valid as long as we need them to be. Every reference in Rust has a lifetime, which is "
    "the scope for which that reference is valid. Most of the time, lifetimes are implicit "
    "and inferred, just like most of the time types are inferred, but we must annotate "
    "them when the lifetimes of references could be related in a few different ways."
)

RUST_OWNERSHIP_ES = (
    "La propiedad es un conjunto de reglas que rigen la forma en que un programa de Rust "
    "administra la memoria. Todos los programas tienen que administrar la forma en que usan "
    "la memoria de una computadora mientras se ejecutan. Algunos lenguajes tienen recolección "
    "de basura que busca regularmente la memoria que ya no se usa mientras el programa se "
    "ejecuta; en otros lenguajes, el programador debe asignar y liberar la memoria de forma "
    "explícita. Rust usa un tercer enfoque y por eso no hay costo en tiempo de ejecución."
)


def html_page(title: str, *paragraphs: str, lang: str = "en", head: str = "") -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return (
        f"<html lang=\"{lang}\"><head><title>{title}</title>{head}</head>"
        f"<body><nav><a href=\"/\">Home</a> <a href=\"/docs\">Docs</a></nav>"
        f"<article><h1>{title}</h1>{body}</article>"
        f"<footer>All rights reserved</footer></body></html>"
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
