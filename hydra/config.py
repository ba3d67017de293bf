"""Configuration management for Hydra Relay."""

import os
from dataclasses import dataclass
from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    Provider credentials are not part of this object; the credential vault
    scans the environment for them on every refresh.
    """

    port: int = 8000
    host: str = "0.0.0.0"
    log_level: str = "INFO"
    race_timeout_seconds: float = 45.0
    reroute_delay_seconds: float = 1.0
    candidate_timeout_seconds: float = 60.0
    history_max_turns: int = 20
    history_token_limit: int = 32000
    max_sessions: int = 1000
    rate_limit_cooldown_seconds: float = 300.0
    overload_cooldown_seconds: float = 30.0
    generic_cooldown_seconds: float = 3.0
    http_connect_timeout: float = 10.0
    http_read_timeout: float = 300.0
    openrouter_referer: str = "https://istoic.app"
    openrouter_title: str = "IStoic AI"

    def __post_init__(self):
        for name in (
            "race_timeout_seconds",
            "candidate_timeout_seconds",
            "http_connect_timeout",
            "http_read_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.reroute_delay_seconds < 0:
            raise ValueError("reroute_delay_seconds must not be negative")
        if self.history_max_turns < 1:
            raise ValueError("history_max_turns must be at least 1")
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        if not (
            self.rate_limit_cooldown_seconds
            > self.overload_cooldown_seconds
            > self.generic_cooldown_seconds
            > 0
        ):
            raise ValueError(
                "cooldowns must satisfy rate_limit > overload > generic > 0"
            )


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Args:
        use_dotenv: Read a ``.env`` file into the environment first

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If a variable is malformed or out of range
    """
    if use_dotenv:
        load_dotenv()

    return Config(
        port=int(os.getenv("PORT", "8000")),
        host=os.getenv("HOST", "0.0.0.0"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        race_timeout_seconds=float(os.getenv("RACE_TIMEOUT_SECONDS", "45")),
        reroute_delay_seconds=float(os.getenv("REROUTE_DELAY_SECONDS", "1")),
        candidate_timeout_seconds=float(
            os.getenv("CANDIDATE_TIMEOUT_SECONDS", "60")
        ),
        history_max_turns=int(os.getenv("HISTORY_MAX_TURNS", "20")),
        history_token_limit=int(os.getenv("HISTORY_TOKEN_LIMIT", "32000")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "1000")),
        rate_limit_cooldown_seconds=float(
            os.getenv("RATE_LIMIT_COOLDOWN_SECONDS", "300")
        ),
        overload_cooldown_seconds=float(os.getenv("OVERLOAD_COOLDOWN_SECONDS", "30")),
        generic_cooldown_seconds=float(os.getenv("GENERIC_COOLDOWN_SECONDS", "3")),
        http_connect_timeout=float(os.getenv("HTTP_CONNECT_TIMEOUT", "10")),
        http_read_timeout=float(os.getenv("HTTP_READ_TIMEOUT", "300")),
        openrouter_referer=os.getenv("OPENROUTER_REFERER", "https://istoic.app"),
        openrouter_title=os.getenv("OPENROUTER_TITLE", "IStoic AI"),
    )
