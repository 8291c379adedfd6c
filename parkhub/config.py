import os


class Settings:
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev_secret_change_me")
    JWT_ALGORITHM: str = "HS256"
    TOKEN_EXPIRES_SECONDS: int = int(os.getenv("TOKEN_EXPIRES_SECONDS", "3600"))
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./parking.db")
    MONITOR_INTERVAL_SECONDS: float = float(os.getenv("MONITOR_INTERVAL_SECONDS", "1800"))
    LONG_STAY_THRESHOLD_HOURS: float = float(os.getenv("LONG_STAY_THRESHOLD_HOURS", "6"))
    STREAM_KEEPALIVE_SECONDS: float = float(os.getenv("STREAM_KEEPALIVE_SECONDS", "15"))
    SEED_STAFF_PASSWORD: str = os.getenv("SEED_STAFF_PASSWORD", "parking123")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "info")
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8000"))


settings = Settings()
