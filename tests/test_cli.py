from peernet.cli import build_discoveries, build_parser
from peernet.discovery import RendezvousDiscovery, StaticDiscovery


class _Net:
    peer_id = "self-peer"
    listen_addr = "127.0.0.1:9777"


def test_defaults():
    args = build_parser().parse_args([])
    assert args.user == "user"
    assert args.room == "lobby"
    assert args.discover == "advertise"
    assert args.peer == []
    assert not args.debug


def test_repeated_peers():
    args = build_parser().parse_args(["--peer", "a:1", "--peer", "b:2", "--discover", "static"])
    assert args.peer == ["a:1", "b:2"]
    assert args.discover == "static"


def test_advertise_without_rendezvous_falls_back_to_static(monkeypatch):
    monkeypatch.delenv("PEERNET_API_BASE", raising=False)
    args = build_parser().parse_args(["--peer", "a:1"])
    found = build_discoveries(args, _Net())
    assert [type(d) for d in found] == [StaticDiscovery]


def test_advertise_uses_rendezvous_flag(monkeypatch):
    monkeypatch.delenv("PEERNET_API_BASE", raising=False)
    args = build_parser().parse_args(["--rendezvous", "http://rv.example/"])
    (rv,) = build_discoveries(args, _Net())
    assert isinstance(rv, RendezvousDiscovery)
    assert rv.api_base == "http://rv.example"


def test_static_ignores_rendezvous(monkeypatch):
    monkeypatch.setenv("PEERNET_API_BASE", "http://rv.example")
    args = build_parser().parse_args(["--discover", "static"])
    assert build_discoveries(args, _Net()) == []
