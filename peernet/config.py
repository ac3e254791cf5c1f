from __future__ import annotations

import os
from pathlib import Path

_state_dir_env = os.getenv("PEERNET_STATE_DIR", "")
APP_DIR = Path(_state_dir_env).expanduser() if _state_dir_env else Path.home() / ".peernet"
LOG_FILE = Path(os.getenv("PEERNET_LOG_FILE", "") or APP_DIR / "peernet.log").expanduser()

TOPIC_NAMESPACE = "room-peerchat"  # wire-visible, keep stable across releases
SERVICE_NAME = "peernet"           # rendezvous namespace

CHANNEL_CAPACITY = 1
LOG_CAPACITY = 16
SUBSCRIPTION_BUFFER = 32
PEER_REFRESH_S = 1.0
SWITCH_SETTLE_S = 0.0

DEFAULT_PORT = 9777
MSG_MAX = 60_000          # bytes per frame, below the StreamReader line limit
HANDSHAKE_TIMEOUT_S = 10
SEEN_CACHE_MAX = 4_096
NAME_MAX = 40

RENDEZVOUS_TTL_S = 120
RENDEZVOUS_POLL_S = 8.0

SHUTDOWN_GRACE_S = 2.0    # wait for the multiplexer to finish before cancelling it
