from __future__ import annotations

from dataclasses import dataclass, replace
from threading import Lock

from vibeproxy.core.config.settings import Settings, get_settings


@dataclass(frozen=True, slots=True)
class ThinkingPolicy:
    hard_token_cap: int = 32000
    minimum_headroom: int = 1024
    headroom_ratio: float = 0.1


@dataclass(frozen=True, slots=True)
class RoutingConfig:
    backend_base_url: str
    management_origin: str
    login_origin: str
    gateway_enabled: bool
    gateway_api_key: str | None
    gateway_base_url: str
    gateway_messages_path: str
    anthropic_version: str
    interleaved_thinking_beta: str
    thinking: ThinkingPolicy
    usage_tracking_enabled: bool
    account_key_header: str

    @property
    def gateway_active(self) -> bool:
        return self.gateway_enabled and bool(self.gateway_api_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> RoutingConfig:
        return cls(
            backend_base_url=settings.backend_base_url,
            management_origin=settings.management_origin,
            login_origin=settings.login_origin,
            gateway_enabled=settings.gateway_enabled,
            gateway_api_key=settings.gateway_api_key,
            gateway_base_url=settings.gateway_base_url,
            gateway_messages_path=settings.gateway_messages_path,
            anthropic_version=settings.anthropic_version,
            interleaved_thinking_beta=settings.interleaved_thinking_beta,
            thinking=ThinkingPolicy(
                hard_token_cap=settings.thinking_hard_token_cap,
                minimum_headroom=settings.thinking_minimum_headroom,
                headroom_ratio=settings.thinking_headroom_ratio,
            ),
            usage_tracking_enabled=settings.usage_tracking_enabled,
            account_key_header=settings.account_key_header,
        )


class RoutingConfigStore:
    """Holds the current routing snapshot.

    Requests read the snapshot once when they are accepted; updates replace the
    whole object so in-flight requests keep the configuration they started with.
    """

    def __init__(self, config: RoutingConfig | None = None) -> None:
        self._config = config
        self._lock = Lock()

    def snapshot(self) -> RoutingConfig:
        config = self._config
        if config is None:
            with self._lock:
                if self._config is None:
                    self._config = RoutingConfig.from_settings(get_settings())
                config = self._config
        return config

    def update(self, **changes: object) -> RoutingConfig:
        with self._lock:
            current = self._config or RoutingConfig.from_settings(get_settings())
            self._config = replace(current, **changes)
            return self._config

    def set_gateway(self, *, enabled: bool, api_key: str | None) -> RoutingConfig:
        key = api_key.strip() if api_key else None
        return self.update(gateway_enabled=enabled, gateway_api_key=key or None)

    def reset(self) -> None:
        with self._lock:
            self._config = None


_routing_config_store = RoutingConfigStore()


def get_routing_config_store() -> RoutingConfigStore:
    return _routing_config_store
