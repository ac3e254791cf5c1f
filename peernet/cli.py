from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from peernet.config import APP_DIR, DEFAULT_PORT, LOG_FILE
from peernet.discovery import (
    PeerConnector,
    RendezvousDiscovery,
    StaticDiscovery,
    safe_api_base_from_env,
)
from peernet.gossip import GossipNetwork
from peernet.identity import load_or_create_identity
from peernet.logging_config import configure_logging
from peernet.session import join_room
from peernet.substrate import PeerNetError

log = logging.getLogger("peernet")

DISCOVER_ADVERTISE = "advertise"
DISCOVER_STATIC = "static"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="peernet", description="Peer-to-peer terminal chat rooms")
    p.add_argument("--user", default="user", help="Display name (default: user)")
    p.add_argument("--room", default="lobby", help="Room to join at start-up (default: lobby)")
    p.add_argument(
        "--discover",
        choices=[DISCOVER_ADVERTISE, DISCOVER_STATIC],
        default=DISCOVER_ADVERTISE,
        help="Peer discovery method (default: advertise via the rendezvous service)",
    )
    p.add_argument("--peer", action="append", default=[], help="Bootstrap peer host:port (repeatable)")
    p.add_argument("--rendezvous", help="Rendezvous API base URL (default: $PEERNET_API_BASE)")
    p.add_argument("--bind", default="0.0.0.0", help="Listen address (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Listen port (default: {DEFAULT_PORT})")
    p.add_argument(
        "--identity",
        help=f"Ed25519 key file to reuse across runs, e.g. {APP_DIR / 'identity.pem'} (default: ephemeral)",
    )
    p.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    p.add_argument("--log-file", default=str(LOG_FILE), help=f"Log file (default: {LOG_FILE})")
    return p


def build_discoveries(args: argparse.Namespace, network: GossipNetwork) -> List:
    discoveries: List = []
    if args.discover == DISCOVER_ADVERTISE:
        api_base = (args.rendezvous or safe_api_base_from_env()).rstrip("/")
        if api_base:
            discoveries.append(RendezvousDiscovery(api_base, network))
        else:
            log.warning("no rendezvous URL configured, using static peers only")
    if args.peer:
        discoveries.append(StaticDiscovery(args.peer))
    return discoveries


async def run(args: argparse.Namespace) -> int:
    try:
        identity = load_or_create_identity(args.identity)
    except (OSError, ValueError) as e:
        print(f"Could not load identity: {e}", file=sys.stderr)
        return 1

    network = GossipNetwork(identity, args.bind, args.port)
    try:
        await network.start()
    except OSError as e:
        print(f"Could not listen on {args.bind}:{args.port}: {e}", file=sys.stderr)
        return 1

    discoveries = build_discoveries(args, network)
    connector = PeerConnector(network)
    connector_task: Optional[asyncio.Task] = None
    session = None
    app = None
    try:
        if discoveries:
            connector_task = asyncio.create_task(connector.run(*discoveries), name="discovery")

        try:
            session = await join_room(network, args.user, args.room)
        except PeerNetError as e:
            print(f"Could not join room '{args.room}': {e}", file=sys.stderr)
            return 1

        from peernet.tui import PeerNetApp

        app = PeerNetApp(session, network)
        await app.run_async()
        return 0
    finally:
        if app is not None:
            await app.close_session()
        if session is not None:
            await session.exit()
        if connector_task:
            connector_task.cancel()
            await asyncio.gather(connector_task, return_exceptions=True)
        await connector.stop()
        for discovery in discoveries:
            await discovery.close()
        await network.stop()


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO, args.log_file)
    log.info("starting as %r in room %r (discover=%s)", args.user, args.room, args.discover)
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
