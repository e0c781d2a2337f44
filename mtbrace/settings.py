from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Database
    MTB_DB_URL: str = "sqlite:///./mtb_race_timer.db"

    # Logging
    MTB_LOG_LEVEL: str = "INFO"

    # Weather (OpenWeatherMap)
    MTB_WEATHER_API_KEY: str = ""
    MTB_WEATHER_BASE_URL: str = "https://api.openweathermap.org/data/2.5"
    MTB_WEATHER_TIMEOUT_S: float = 10.0

    # API
    MTB_PAGE_LIMIT_MAX: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
