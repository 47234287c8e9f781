from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    # Keep logs in backend/out by default to avoid polluting source assets.
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven). Tuning constants live here, not in the engines."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Optional GeoJSON network loaded when the HTTP app starts.
    segments_asset_path: str = Field(default="", alias="SEGMENTS_ASSET_PATH")

    # Graph builder
    node_snap_decimals: int = Field(default=3, ge=0, le=9, alias="NODE_SNAP_DECIMALS")
    nearest_node_max_radius_m: float = Field(
        default=500.0,
        ge=1.0,
        le=50_000.0,
        alias="NEAREST_NODE_MAX_RADIUS_M",
    )
    default_segment_class: int = Field(default=3, ge=1, le=4, alias="DEFAULT_SEGMENT_CLASS")

    # Alternative-route search
    default_penalty_factor: float = Field(default=1.2, ge=0.0, le=50.0, alias="DEFAULT_PENALTY_FACTOR")
    penalty_escalation_step: float = Field(default=0.5, ge=0.0, le=10.0, alias="PENALTY_ESCALATION_STEP")
    max_penalty_factor: float = Field(default=4.0, ge=0.0, le=100.0, alias="MAX_PENALTY_FACTOR")

    # Rating aggregator
    half_life_days: float = Field(default=21.0, gt=0.0, le=3650.0, alias="HALF_LIFE_DAYS")
    prior_mean: float = Field(default=3.0, ge=1.0, le=5.0, alias="PRIOR_MEAN")
    prior_n: float = Field(default=5.0, ge=0.0, le=1000.0, alias="PRIOR_N")
    window_weight_cap: float = Field(default=100.0, gt=0.0, alias="WINDOW_WEIGHT_CAP")
    agree_increment: float = Field(default=0.3, ge=0.0, le=5.0, alias="AGREE_INCREMENT")
    agree_weight_cap: float = Field(default=50.0, gt=0.0, alias="AGREE_WEIGHT_CAP")
    feels_safer_step: float = Field(default=0.1, ge=0.0, le=1.0, alias="FEELS_SAFER_STEP")
    feels_safer_delta_bump: float = Field(default=0.05, ge=0.0, le=1.0, alias="FEELS_SAFER_DELTA_BUMP")
    confidence_full_n_eff: float = Field(default=50.0, gt=0.0, alias="CONFIDENCE_FULL_N_EFF")
    trend_threshold: float = Field(default=0.2, ge=0.0, alias="TREND_THRESHOLD")

    # Route comparison
    low_rated_threshold: float = Field(default=2.6, ge=1.0, le=5.0, alias="LOW_RATED_THRESHOLD")
    walk_speed_m_per_min: float = Field(default=90.0, gt=0.0, alias="WALK_SPEED_M_PER_MIN")
    bike_speed_m_per_min: float = Field(default=200.0, gt=0.0, alias="BIKE_SPEED_M_PER_MIN")

    @model_validator(mode="after")
    def _penalty_bounds(self) -> "Settings":
        # Escalation never starts above its own ceiling.
        if self.max_penalty_factor < self.default_penalty_factor:
            self.max_penalty_factor = self.default_penalty_factor
        self.log_level = str(self.log_level or "INFO").strip().upper() or "INFO"
        return self


settings = Settings()
