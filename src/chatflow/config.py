from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _flag(value: str | None) -> bool:
    return (value or "").lower() in {"1", "true", "yes"}


def _optional_float(value: str | None) -> Optional[float]:
    value = (value or "").strip()
    return float(value) if value else None


@dataclass(frozen=True)
class Settings:
    default_model: str = "gpt-4o-mini"
    max_iterations: int = 6
    history_window: int = 31
    node_timeout_s: Optional[float] = None
    data_dir: str = "data"
    debug_logging: bool = False
    public_name: str = "our team"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "info"

    @property
    def graphs_dir(self) -> Path:
        return Path(self.data_dir) / "graphs"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            default_model=os.getenv("CHATFLOW_DEFAULT_MODEL", "gpt-4o-mini"),
            max_iterations=int(os.getenv("CHATFLOW_MAX_ITERATIONS", "6")),
            history_window=int(os.getenv("CHATFLOW_HISTORY_WINDOW", "31")),
            node_timeout_s=_optional_float(os.getenv("CHATFLOW_NODE_TIMEOUT_S")),
            data_dir=os.getenv("CHATFLOW_DATA_DIR", "data"),
            debug_logging=_flag(os.getenv("CHATFLOW_DEBUG_LOGGING", "false")),
            public_name=os.getenv("CHATFLOW_PUBLIC_NAME", "our team"),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("API_LOG_LEVEL", "info"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
