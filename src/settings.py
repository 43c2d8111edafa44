from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    DATABASE_URL: str = "sqlite:///./cointracker.db"
    SQL_ECHO: bool = False

    # Block data provider: "fixture" reads JSON files from FIXTURE_DIR,
    # "blockchain" talks to blockchain.info
    PROVIDER: str = "fixture"
    FIXTURE_DIR: str = "fixtures"
    BLOCKCHAIN_API_URL: str = "https://blockchain.info/rawaddr/"
    PAGE_SIZE: int = 100
    REQUEST_TIMEOUT: float = 10.0

    LOG_LEVEL: str = "INFO"


settings = Settings()
