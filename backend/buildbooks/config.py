from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://buildbooks:buildbooks_secret@db:5432/buildbooks"
    DATABASE_ECHO: bool = False
    AUTO_CREATE_TABLES: bool = True
    JWT_SECRET: str = "buildbooks-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    LOG_LEVEL: str = "INFO"

    # Posting targets for goods received against a purchase order
    INVENTORY_ACCOUNT_CODE: str = "112"
    PAYABLE_ACCOUNT_CODE: str = "211"
    DEFAULT_WAREHOUSE: str = "main"

    class Config:
        env_file = ".env"


settings = Settings()
