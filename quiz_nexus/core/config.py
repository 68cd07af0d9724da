from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from quiz_nexus.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from quiz_nexus.constants.quiz_constants import PASS_THRESHOLD_PERCENT, TIMER_TICK_INTERVAL_SECONDS


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    app_env: str = Field(default="development", validation_alias="QUIZ_NEXUS_ENV")
    log_level: str = Field(default="INFO", validation_alias="QUIZ_NEXUS_LOG_LEVEL")

    api_host: str = Field(default=DEFAULT_HOST, validation_alias="QUIZ_NEXUS_HOST")
    api_port: int = Field(default=DEFAULT_PORT, validation_alias="QUIZ_NEXUS_PORT")

    attempt_state_dir: Path | None = Field(default=None, validation_alias="QUIZ_NEXUS_ATTEMPT_STATE_DIR")
    timer_tick_seconds: float = Field(
        default=TIMER_TICK_INTERVAL_SECONDS, gt=0, validation_alias="QUIZ_NEXUS_TIMER_TICK_SECONDS"
    )
    pass_threshold_percent: int = Field(
        default=PASS_THRESHOLD_PERCENT, ge=0, le=100, validation_alias="QUIZ_NEXUS_PASS_THRESHOLD"
    )
    seed_sample_quizzes: bool = Field(default=True, validation_alias="QUIZ_NEXUS_SEED_SAMPLES")


settings = Settings()
