"""Configuration loading for Smart Park."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse, urlunparse

import yaml


@dataclass
class NodeConfig:
    name: str = "smartpark-node"


@dataclass
class RelayConfig:
    """Configuration for the relay server."""

    host: str = "0.0.0.0"
    port: int = 3001
    path: str = "/ws"
    peer_queue_size: int = 256  # Outbound messages buffered per peer


@dataclass
class ClientConfig:
    """Configuration for a dashboard client's relay connection."""

    relay_url: str = "ws://localhost:3001/ws"
    reconnect_delay_seconds: float = 3.0
    retry_policy: str = "fixed"  # "fixed" or "backoff"
    max_reconnect_delay_seconds: float = 30.0

    @property
    def http_url(self) -> str:
        """Base HTTP URL of the relay derived from the WebSocket URL."""
        parsed = urlparse(self.relay_url)
        scheme = "https" if parsed.scheme == "wss" else "http"
        return urlunparse((scheme, parsed.netloc, "", "", "", ""))


@dataclass
class StorageConfig:
    """Configuration for the same-device fallback store."""

    db_path: str = "~/.smartpark/state.db"
    poll_interval_seconds: float = 0.5
    max_value_bytes: int = 5 * 1024 * 1024


@dataclass
class OllamaConfig:
    host: str = "localhost"
    port: int = 11434
    model: str = "llama3.2:1b"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with SMARTPARK_ prefix."""
    return os.environ.get(f"SMARTPARK_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Relay overrides
    if host := _get_env("RELAY_HOST"):
        config.relay.host = host
    if port := _get_env("RELAY_PORT"):
        config.relay.port = int(port)

    # Client overrides
    if relay_url := _get_env("RELAY_URL"):
        config.client.relay_url = relay_url
    if delay := _get_env("RECONNECT_DELAY"):
        config.client.reconnect_delay_seconds = float(delay)
    if policy := _get_env("RETRY_POLICY"):
        config.client.retry_policy = policy.lower()

    # Storage overrides
    if db_path := _get_env("STORAGE_PATH"):
        config.storage.db_path = db_path
    if max_bytes := _get_env("STORAGE_MAX_BYTES"):
        config.storage.max_value_bytes = int(max_bytes)

    # Ollama overrides
    if host := _get_env("OLLAMA_HOST"):
        config.ollama.host = host
    if port := _get_env("OLLAMA_PORT"):
        config.ollama.port = int(port)
    if model := _get_env("OLLAMA_MODEL"):
        config.ollama.model = model

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            # Parse relay config
            if "relay" in data:
                relay_data = data["relay"]
                config.relay = RelayConfig(
                    host=relay_data.get("host", config.relay.host),
                    port=relay_data.get("port", config.relay.port),
                    path=relay_data.get("path", config.relay.path),
                    peer_queue_size=relay_data.get(
                        "peer_queue_size", config.relay.peer_queue_size
                    ),
                )

            # Parse client config
            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    relay_url=client_data.get("relay_url", config.client.relay_url),
                    reconnect_delay_seconds=client_data.get(
                        "reconnect_delay_seconds", config.client.reconnect_delay_seconds
                    ),
                    retry_policy=client_data.get(
                        "retry_policy", config.client.retry_policy
                    ),
                    max_reconnect_delay_seconds=client_data.get(
                        "max_reconnect_delay_seconds",
                        config.client.max_reconnect_delay_seconds,
                    ),
                )

            # Parse storage config
            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    poll_interval_seconds=storage_data.get(
                        "poll_interval_seconds", config.storage.poll_interval_seconds
                    ),
                    max_value_bytes=storage_data.get(
                        "max_value_bytes", config.storage.max_value_bytes
                    ),
                )

            # Parse ollama config
            if "ollama" in data:
                ollama_data = data["ollama"]
                config.ollama = OllamaConfig(
                    host=ollama_data.get("host", config.ollama.host),
                    port=ollama_data.get("port", config.ollama.port),
                    model=ollama_data.get("model", config.ollama.model),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    if config.client.retry_policy not in ("fixed", "backoff"):
        raise ValueError(
            f"Unknown retry policy {config.client.retry_policy!r} "
            "(expected 'fixed' or 'backoff')"
        )
    if not config.relay.path.startswith("/"):
        config.relay.path = f"/{config.relay.path}"

    return config
