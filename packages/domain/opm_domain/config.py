import math
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BacksolveSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="OPM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Root finder
    TOLERANCE: float = 1e-7  # on price per share, relative below 1.0
    MAX_ITERATIONS: int = 100
    MAX_BRACKET_EXPANSIONS: int = 60
    BRACKET_EXPANSION_FACTOR: float = 2.0
    SOLVER_METHOD: Literal["hybrid", "bisection"] = "hybrid"

    # Result checks
    VERIFICATION_TOLERANCE: float = 0.01  # one cent per share
    PROBABILITY_TOLERANCE: float = 1e-4  # in fraction units

    # Black-Scholes defaults when neither request nor provider supplies one
    DEFAULT_VOLATILITY: float = 0.60
    DEFAULT_RISK_FREE_RATE: float = 0.045
    DEFAULT_TIME_TO_LIQUIDITY: float = 3.0
    DEFAULT_DIVIDEND_YIELD: float = 0.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @model_validator(mode="after")
    def _validate_solver_limits(self) -> "BacksolveSettings":
        if not math.isfinite(self.TOLERANCE) or self.TOLERANCE <= 0:
            raise ValueError("OPM_TOLERANCE must be positive and finite")
        if self.VERIFICATION_TOLERANCE <= 0:
            raise ValueError("OPM_VERIFICATION_TOLERANCE must be positive")
        if self.MAX_ITERATIONS < 1:
            raise ValueError("OPM_MAX_ITERATIONS must be at least 1")
        if self.BRACKET_EXPANSION_FACTOR <= 1:
            raise ValueError("OPM_BRACKET_EXPANSION_FACTOR must exceed 1")
        return self


settings = BacksolveSettings()
