import os


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """
    Runtime configuration read from environment variables.

    Values are read when the object is created so tests can adjust the
    environment before building one.
    """

    def __init__(self) -> None:
        self.stripe_api_key = os.getenv("STRIPE_API_KEY")
        self.stripe_endpoint_secret = os.getenv("STRIPE_ENDPOINT_SECRET")
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./subscriptions.db")
        self.stripe_timeout = float(os.getenv("STRIPE_TIMEOUT", "30"))
        self.stripe_max_retries = int(os.getenv("STRIPE_MAX_RETRIES", "3"))
        self.stripe_retry_delay = float(os.getenv("STRIPE_RETRY_DELAY", "1.0"))
        # Statuses that make a subscription inactive on top of "unpaid"
        self.deactivate_incomplete = _flag("DEACTIVATE_INCOMPLETE")
        self.deactivate_past_due = _flag("DEACTIVATE_PAST_DUE")

    def __repr__(self) -> str:
        return (
            f"<Settings(database_url={self.database_url}, stripe_timeout={self.stripe_timeout}, "
            f"deactivate_incomplete={self.deactivate_incomplete}, "
            f"deactivate_past_due={self.deactivate_past_due})>"
        )


def get_settings() -> Settings:
    return Settings()
