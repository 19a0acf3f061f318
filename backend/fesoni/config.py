from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "env_file": "../.env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # Style analyzer (Anthropic)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"

    # Product catalog (RapidAPI Amazon)
    rapidapi_key: str = ""
    rapidapi_host: str = "real-time-amazon-data.p.rapidapi.com"
    catalog_max_results: int = 12
    search_find_alternatives: bool = True

    # Document service (Foxit)
    foxit_client_id: str = ""
    foxit_client_secret: str = ""
    foxit_base_url: str = "https://na1.fusion.foxit.com"
    style_template_path: str = "templates/style-guide-template.docx"
    style_template_base64: str = ""
    additional_template_dir: str = "templates"

    # Task polling
    poll_interval_seconds: float = 5.0
    poll_timeout_seconds: float = 300.0

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""


settings = Settings()
