from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


OVERFLOW_POLICIES = ("reject", "queue")


class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = Field(default="development", alias="ENVIRONMENT")
    DEBUG: bool = Field(default=True, alias="DEBUG")

    PROJECT_NAME: str = "ScholarLink"

    # Provider credentials
    CROSSREF_MAILTO: Optional[str] = Field(default=None, alias="CROSSREF_MAILTO")
    SEMANTIC_SCHOLAR_API_KEY: Optional[str] = None
    PERPLEXITY_API_KEY: Optional[str] = None
    OPENAI_API_KEY: Optional[str] = None

    # Provider endpoints / models
    CROSSREF_BASE_URL: str = "https://api.crossref.org"
    SEMANTIC_SCHOLAR_BASE_URL: str = "https://api.semanticscholar.org"
    PERPLEXITY_BASE_URL: str = "https://api.perplexity.ai"
    PERPLEXITY_MODEL: str = Field(default="sonar", alias="PERPLEXITY_MODEL")
    DISCOVERY_SYNTHESIS_MODEL: str = Field(default="gpt-5-mini", alias="DISCOVERY_SYNTHESIS_MODEL")

    # Per-provider request caps (requests per second) and bucket sizes
    CROSSREF_RATE_LIMIT_RPS: float = 45.0
    CROSSREF_BURST: int = 50
    SEMANTIC_SCHOLAR_RATE_LIMIT_RPS: float = 1.0
    SEMANTIC_SCHOLAR_BURST: int = 10
    PERPLEXITY_RATE_LIMIT_RPS: float = 10.0 / 60.0
    PERPLEXITY_BURST: int = 5
    RATE_LIMIT_OVERFLOW_POLICY: str = Field(default="reject", alias="RATE_LIMIT_OVERFLOW_POLICY")
    RATE_LIMIT_QUEUE_TIMEOUT: float = 5.0

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_FAILURE_RATE_THRESHOLD: float = 0.5
    CIRCUIT_MIN_WINDOW_CALLS: int = 10
    CIRCUIT_WINDOW_SECONDS: float = 60.0
    CIRCUIT_COOLDOWN_SECONDS: float = 60.0
    CIRCUIT_HALF_OPEN_MAX_PROBES: int = 1

    # HTTP session
    DISCOVERY_HTTP_TIMEOUT: float = 30.0
    DISCOVERY_HTTP_CONNECT_TIMEOUT: float = 10.0
    DISCOVERY_HTTP_POOL_LIMIT: int = 50
    DISCOVERY_HTTP_POOL_LIMIT_PER_HOST: int = 10

    # Coordinator / synthesis
    DISCOVERY_MAX_CONCURRENT_SOURCES: int = 16
    SYNTHESIS_BATCH_SIZE: int = 10
    SYNTHESIS_BATCH_TIMEOUT: float = 30.0
    SYNTHESIS_MAX_CONCURRENT_BATCHES: int = 4

    # Result store
    DISCOVERY_CACHE_MAX_SIZE: int = 500
    DISCOVERY_CACHE_TTL_SECONDS: float = 6 * 3600.0

    class Config:
        env_file = (".env", "../.env")
        case_sensitive = True
        extra = "ignore"

    @model_validator(mode="after")
    def validate_discovery_limits(self):
        problems = []
        for name in (
            "CROSSREF_RATE_LIMIT_RPS",
            "SEMANTIC_SCHOLAR_RATE_LIMIT_RPS",
            "PERPLEXITY_RATE_LIMIT_RPS",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")
        if self.RATE_LIMIT_OVERFLOW_POLICY not in OVERFLOW_POLICIES:
            problems.append(
                f"RATE_LIMIT_OVERFLOW_POLICY must be one of {', '.join(OVERFLOW_POLICIES)}"
            )
        if self.CIRCUIT_FAILURE_THRESHOLD < 1:
            problems.append("CIRCUIT_FAILURE_THRESHOLD must be at least 1")
        if self.CIRCUIT_HALF_OPEN_MAX_PROBES < 1:
            problems.append("CIRCUIT_HALF_OPEN_MAX_PROBES must be at least 1")
        if problems:
            raise ValueError("Invalid discovery settings: " + "; ".join(problems))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
