"""Peer discovery and the connector that dials what discovery finds.

A discovery service is anything with an async ``find_peers()`` iterator of
``(peer_id, "host:port")`` pairs (``peer_id`` may be empty when unknown)
and an async ``close()``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from typing import AsyncIterator, Iterable, List, Optional, Protocol, Set, Tuple

from peernet.config import RENDEZVOUS_POLL_S, RENDEZVOUS_TTL_S, SERVICE_NAME
from peernet.substrate import PeerID, PeerNetError
from peernet.transport import canonical_peer_addr, parse_hostport

log = logging.getLogger(__name__)

PeerAddr = Tuple[str, str]

DISCOVER_LIMIT = 100


class Dialer(Protocol):
    peer_id: PeerID

    @property
    def listen_addr(self) -> str:
        ...

    async def connect(self, addr: str) -> PeerID:
        ...


class StaticDiscovery:
    """Yields a fixed list of bootstrap addresses once."""

    def __init__(self, addrs: Iterable[str]) -> None:
        self.addrs = [a.strip() for a in addrs if a and a.strip()]

    async def find_peers(self) -> AsyncIterator[PeerAddr]:
        for addr in self.addrs:
            yield "", addr

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Rendezvous (advertise / find) over HTTP
# ---------------------------------------------------------------------------

def _api_request(
    method: str,
    url: str,
    body: Optional[dict] = None,
    timeout: int = 8,
) -> dict:
    raw = None
    request_headers = {"content-type": "application/json"}
    if body is not None:
        raw = json.dumps(body, separators=(",", ":")).encode("utf-8")
    req = urllib.request.Request(url=url, data=raw, headers=request_headers, method=method)
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        payload = resp.read().decode("utf-8")
        if not payload:
            return {}
        return json.loads(payload)


def _registrations_url(api_base: str, namespace: str) -> str:
    return f"{api_base}/v1/namespaces/{urllib.parse.quote(namespace, safe='')}/registrations"


def register_presence(
    api_base: str, peer_id: PeerID, listen_addr: str, namespace: str, ttl_s: int = RENDEZVOUS_TTL_S
) -> int:
    """Register *listen_addr* under *namespace*; returns the TTL the server granted."""
    data = _api_request(
        "POST",
        _registrations_url(api_base, namespace),
        {"peer": peer_id, "addrs": [listen_addr], "ttl": ttl_s},
    )
    return int(data.get("ttl", ttl_s))


def unregister_presence(api_base: str, peer_id: PeerID, namespace: str) -> None:
    url = f"{_registrations_url(api_base, namespace)}/{urllib.parse.quote(peer_id, safe='')}"
    _api_request("DELETE", url)


def discover_peer_addrs(
    api_base: str, peer_id: PeerID, namespace: str, cookie: str = "", limit: int = DISCOVER_LIMIT
) -> Tuple[List[PeerAddr], str]:
    """Registrations newer than *cookie*, one dialable address per peer.

    Returns the addresses and the cookie to pass on the next call.
    """
    query = urllib.parse.urlencode({"limit": limit, "cookie": cookie})
    data = _api_request("GET", f"{_registrations_url(api_base, namespace)}?{query}")

    out: List[PeerAddr] = []
    for reg in data.get("registrations", []):
        remote_id = str(reg.get("peer", ""))
        if not remote_id or remote_id == peer_id:
            continue
        for addr in reg.get("addrs", []):
            try:
                host, port = parse_hostport(str(addr))
            except ValueError:
                continue
            if host and port > 0:
                out.append((remote_id, canonical_peer_addr(host, port)))
                break
    return out, str(data.get("cookie", cookie))


def safe_api_base_from_env() -> str:
    value = os.getenv("PEERNET_API_BASE", "").strip()
    return value.rstrip("/")


def is_network_error(exc: Exception) -> bool:
    return isinstance(exc, (urllib.error.URLError, TimeoutError, OSError, ValueError, json.JSONDecodeError))


class RendezvousDiscovery:
    """Advertises this node under *namespace* and polls for others.

    Each poll refreshes the registration and asks only for registrations
    newer than the last reply's cookie. A failed poll starts over from an
    empty cookie.
    """

    def __init__(
        self,
        api_base: str,
        network: Dialer,
        namespace: str = SERVICE_NAME,
        *,
        poll_s: float = RENDEZVOUS_POLL_S,
        ttl_s: int = RENDEZVOUS_TTL_S,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.network = network
        self.namespace = namespace
        self.poll_s = poll_s
        self.ttl_s = ttl_s
        self._log = logger or log
        self._registered = False
        self._cookie = ""

    async def find_peers(self) -> AsyncIterator[PeerAddr]:
        seen: Set[PeerAddr] = set()
        while True:
            found: List[PeerAddr] = []
            try:
                granted = await asyncio.to_thread(
                    register_presence, self.api_base, self.network.peer_id,
                    self.network.listen_addr, self.namespace, self.ttl_s,
                )
                if not self._registered:
                    self._log.info("registered under %r for %ds", self.namespace, granted)
                self._registered = True
                found, self._cookie = await asyncio.to_thread(
                    discover_peer_addrs, self.api_base, self.network.peer_id,
                    self.namespace, self._cookie,
                )
            except Exception as e:
                if not is_network_error(e):
                    raise
                self._cookie = ""
                self._log.warning("rendezvous %s unreachable: %s", self.api_base, e)
            for item in found:
                if item not in seen:
                    seen.add(item)
                    yield item
            await asyncio.sleep(self.poll_s)

    async def close(self) -> None:
        if not self._registered:
            return
        try:
            await asyncio.to_thread(
                unregister_presence, self.api_base, self.network.peer_id, self.namespace,
            )
        except Exception as e:
            if not is_network_error(e):
                raise
            self._log.debug("unregister failed: %s", e)
        self._registered = False


# ---------------------------------------------------------------------------
# Connector
# ---------------------------------------------------------------------------

class PeerConnector:
    """Dials each discovered peer once, one task per attempt, no retries."""

    def __init__(self, network: Dialer, *, logger: Optional[logging.Logger] = None) -> None:
        self.network = network
        self._log = logger or log
        self._dialled: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def run(self, *discoveries) -> None:
        await asyncio.gather(*(self._consume(d) for d in discoveries))

    async def _consume(self, discovery) -> None:
        async for peer_id, addr in discovery.find_peers():
            self.handle_discovered(peer_id, addr)

    def handle_discovered(self, peer_id: str, addr: str) -> bool:
        """Start a dial for a newly discovered peer; False if skipped."""
        if peer_id and peer_id == self.network.peer_id:
            return False
        if addr == self.network.listen_addr:
            return False
        if addr in self._dialled or (peer_id and peer_id in self._dialled):
            return False
        self._dialled.add(addr)
        if peer_id:
            self._dialled.add(peer_id)

        task = asyncio.create_task(self._dial(addr), name=f"dial:{addr}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _dial(self, addr: str) -> None:
        try:
            remote = await self.network.connect(addr)
        except (PeerNetError, OSError, EOFError, ValueError, asyncio.TimeoutError) as e:
            self._log.warning("could not connect to %s: %s", addr, e)
            return
        self._log.info("dialled %s (%s)", remote, addr)

    async def wait_idle(self) -> None:
        """Wait for in-flight dials to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
