"""Environment-driven settings for the bridging layer."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

PROVISIONING_MODES = {"static", "dynamic"}


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class BridgeSettings:
    """Runtime, proxy and realtime configuration."""

    runtime_url: str = "http://localhost:3333"
    runtime_health_path: str = "/api/server/ping"
    public_url: str = "http://localhost:8000"
    protocol_segment: str = "a2a"
    provisioning_mode: str = "dynamic"
    static_kinds: List[str] = field(default_factory=lambda: ["offering", "seeking"])
    runtime_timeout: float = 30.0
    proxy_timeout: float = 30.0
    ready_timeout: float = 120.0
    ready_poll_interval: float = 1.0
    delivery_timeout: float = 5.0
    session_ttl: float = 3600.0
    admin_token: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    restore_on_startup: bool = True

    @classmethod
    def from_env(cls) -> "BridgeSettings":
        mode = os.getenv("BRIDGE_PROVISIONING_MODE", "dynamic").strip().lower()
        if mode not in PROVISIONING_MODES:
            raise ValueError(
                f"BRIDGE_PROVISIONING_MODE must be one of {sorted(PROVISIONING_MODES)}, got {mode!r}"
            )

        return cls(
            runtime_url=os.getenv("RUNTIME_URL", "http://localhost:3333").rstrip("/"),
            runtime_health_path=os.getenv("RUNTIME_HEALTH_PATH", "/api/server/ping"),
            public_url=os.getenv("BRIDGE_PUBLIC_URL", "http://localhost:8000").rstrip("/"),
            protocol_segment=os.getenv("BRIDGE_PROTOCOL_SEGMENT", "a2a").strip("/"),
            provisioning_mode=mode,
            static_kinds=_env_list("BRIDGE_STATIC_KINDS", "offering,seeking"),
            runtime_timeout=float(os.getenv("RUNTIME_TIMEOUT_SECONDS", "30")),
            proxy_timeout=float(os.getenv("PROXY_TIMEOUT_SECONDS", "30")),
            ready_timeout=float(os.getenv("RUNTIME_READY_TIMEOUT_SECONDS", "120")),
            ready_poll_interval=float(os.getenv("RUNTIME_READY_POLL_SECONDS", "1")),
            delivery_timeout=float(os.getenv("REALTIME_DELIVERY_TIMEOUT_SECONDS", "5")),
            session_ttl=float(os.getenv("REALTIME_SESSION_TTL_SECONDS", "3600")),
            admin_token=os.getenv("BRIDGE_ADMIN_TOKEN") or None,
            cors_origins=_env_list("FRONTEND_URL", "*"),
            restore_on_startup=os.getenv("BRIDGE_RESTORE_ON_STARTUP", "1").lower() in {"1", "true", "yes"},
        )

    @property
    def dynamic(self) -> bool:
        return self.provisioning_mode == "dynamic"
