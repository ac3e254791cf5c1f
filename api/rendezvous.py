"""Namespace rendezvous for PeerNet.

A peer REGISTERs its listen addresses under a namespace for a limited time
and DISCOVERs the other registrations in that namespace. Discovery is
incremental: every reply carries a cookie, and passing it back returns only
registrations made or refreshed since that reply. Serve it with any ASGI
server, e.g.::

    uvicorn api.rendezvous:app --host 0.0.0.0 --port 8000

Routes::

    POST   /v1/namespaces/{ns}/registrations          {peer, addrs, ttl} -> {ttl}
    GET    /v1/namespaces/{ns}/registrations?cookie=  -> {registrations, cookie}
    DELETE /v1/namespaces/{ns}/registrations/{peer}
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from peernet.transport import parse_hostport

API_VERSION = "0.2.0"

DEFAULT_TTL_S = 2 * 60 * 60
MAX_TTL_S = 72 * 60 * 60
MAX_NAMESPACE_LEN = 255
MAX_PEER_ID_LEN = 128
MAX_ADDRS = 8
DEFAULT_LIMIT = 100
MAX_LIMIT = 1000

E_INVALID_NAMESPACE = "E_INVALID_NAMESPACE"
E_INVALID_PEER_INFO = "E_INVALID_PEER_INFO"
E_INVALID_TTL = "E_INVALID_TTL"
E_INVALID_COOKIE = "E_INVALID_COOKIE"


class RendezvousError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class RegisterRequest(BaseModel):
    peer: str
    addrs: List[str] = Field(default_factory=list)
    ttl: int = 0  # 0 asks for DEFAULT_TTL_S


class RegisterResponse(BaseModel):
    ttl: int


class Registration(BaseModel):
    peer: str
    addrs: List[str]
    ttl: int  # seconds left


class DiscoverResponse(BaseModel):
    registrations: List[Registration]
    cookie: str


@dataclass
class _Entry:
    addrs: List[str]
    expires_at: float
    seq: int


def _check_namespace(namespace: str) -> None:
    if not namespace or len(namespace) > MAX_NAMESPACE_LEN:
        raise RendezvousError(E_INVALID_NAMESPACE, f"namespace must be 1-{MAX_NAMESPACE_LEN} characters")


def parse_cookie(cookie: str) -> int:
    if not cookie:
        return 0
    if not cookie.isdigit():
        raise RendezvousError(E_INVALID_COOKIE, "malformed cookie")
    return int(cookie)


class RegistrationTable:
    """Registrations grouped by namespace, expired lazily on access.

    Every register stamps the entry with a fresh sequence number; a
    discovery cookie is the highest sequence number the caller has seen.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        default_ttl_s: int = DEFAULT_TTL_S,
        max_ttl_s: int = MAX_TTL_S,
    ) -> None:
        self._lock = threading.Lock()
        self._namespaces: Dict[str, Dict[str, _Entry]] = {}
        self._last_seq = 0
        self._clock = clock
        self.default_ttl_s = default_ttl_s
        self.max_ttl_s = max_ttl_s

    def register(self, namespace: str, peer: str, addrs: List[str], ttl: int = 0) -> int:
        """Add or refresh *peer* in *namespace*; returns the granted TTL."""
        _check_namespace(namespace)
        if not peer or len(peer) > MAX_PEER_ID_LEN:
            raise RendezvousError(E_INVALID_PEER_INFO, "missing or oversized peer id")
        if not addrs or len(addrs) > MAX_ADDRS:
            raise RendezvousError(E_INVALID_PEER_INFO, f"expected 1-{MAX_ADDRS} addresses")
        for addr in addrs:
            try:
                host, port = parse_hostport(addr)
            except ValueError:
                host, port = "", 0
            if not host or not 0 < port < 65536:
                raise RendezvousError(E_INVALID_PEER_INFO, f"bad address {addr!r}")

        if ttl == 0:
            ttl = self.default_ttl_s
        if ttl < 0 or ttl > self.max_ttl_s:
            raise RendezvousError(E_INVALID_TTL, f"ttl must be 1-{self.max_ttl_s}s")

        now = self._clock()
        with self._lock:
            self._expire_locked(namespace, now)
            self._last_seq += 1
            entries = self._namespaces.setdefault(namespace, {})
            entries[peer] = _Entry(addrs=list(addrs), expires_at=now + ttl, seq=self._last_seq)
        return ttl

    def unregister(self, namespace: str, peer: str) -> None:
        _check_namespace(namespace)
        with self._lock:
            entries = self._namespaces.get(namespace)
            if entries is None:
                return
            entries.pop(peer, None)
            if not entries:
                del self._namespaces[namespace]

    def discover(self, namespace: str, limit: int = DEFAULT_LIMIT, cookie: int = 0) -> Tuple[List[Registration], int]:
        """Registrations in *namespace* newer than *cookie*, oldest first."""
        _check_namespace(namespace)
        now = self._clock()
        with self._lock:
            if cookie > self._last_seq:
                raise RendezvousError(E_INVALID_COOKIE, "cookie is from another server run")
            self._expire_locked(namespace, now)
            entries = sorted(self._namespaces.get(namespace, {}).items(), key=lambda item: item[1].seq)

        fresh = [(peer, entry) for peer, entry in entries if entry.seq > cookie][:limit]
        registrations = [
            Registration(peer=peer, addrs=entry.addrs, ttl=max(0, int(entry.expires_at - now)))
            for peer, entry in fresh
        ]
        return registrations, (fresh[-1][1].seq if fresh else cookie)

    def _expire_locked(self, namespace: str, now: float) -> None:
        entries = self._namespaces.get(namespace)
        if not entries:
            return
        for peer in [p for p, entry in entries.items() if entry.expires_at <= now]:
            del entries[peer]
        if not entries:
            del self._namespaces[namespace]


app = FastAPI(title="PeerNet Rendezvous", version=API_VERSION)
table = RegistrationTable()


@app.exception_handler(RendezvousError)
async def rendezvous_error(request: Request, exc: RendezvousError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"code": exc.code, "message": exc.message})


@app.post("/v1/namespaces/{namespace}/registrations", response_model=RegisterResponse)
async def register(namespace: str, req: RegisterRequest) -> RegisterResponse:
    return RegisterResponse(ttl=table.register(namespace, req.peer, req.addrs, req.ttl))


@app.get("/v1/namespaces/{namespace}/registrations", response_model=DiscoverResponse)
async def discover(
    namespace: str,
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    cookie: str = "",
) -> DiscoverResponse:
    registrations, next_cookie = table.discover(namespace, limit, parse_cookie(cookie))
    return DiscoverResponse(registrations=registrations, cookie=str(next_cookie))


@app.delete("/v1/namespaces/{namespace}/registrations/{peer}", status_code=204)
async def unregister(namespace: str, peer: str) -> Response:
    table.unregister(namespace, peer)
    return Response(status_code=204)
