import os
from typing import Optional

from pydantic import BaseModel


class ClientConfig(BaseModel):
    api_base_url: str = "http://localhost:5000"
    hub_url: str = "ws://localhost:5000/gameHub"
    request_timeout: float = 10.0
    credentials_path: Optional[str] = None

    board_size: int = 100
    simulate_enabled: bool = True
    # Incoming server state is suppressed this long after a simulated move
    simulation_grace: float = 4.0
    persist_timeout: float = 3.0
    watchdog_timeout: float = 5.0

    poll_fast_interval: float = 1.0
    poll_fast_ticks: int = 6
    poll_slow_interval: float = 4.0

    hub_gate_interval: float = 0.05
    hub_keepalive_interval: float = 15.0
    recheck_margin: float = 0.25

    load_attempts: int = 15
    load_retry_delay: float = 0.4
    empty_players_retries: int = 6
    empty_players_delay: float = 0.35
    loading_timeout: float = 8.0


_ENV_PREFIX = "SNL_"


def load_config(**overrides) -> ClientConfig:
    """Defaults, then SNL_<FIELD> environment variables, then explicit overrides."""
    values = {}
    for name in ClientConfig.model_fields:
        raw = os.environ.get(_ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = raw
    values.update(overrides)
    return ClientConfig(**values)
