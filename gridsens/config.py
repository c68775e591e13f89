from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "GRIDSENS_", "case_sensitive": False}

    # Per-unit system
    base_power_mva: float = 100.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Component solving
    max_workers: int = 1


settings = Settings()
