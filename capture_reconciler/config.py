"""Environment-based configuration for the reconciliation engine."""

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Reconciler settings, loaded from environment variables."""

    # Coordinate space (absolute boxes are rescaled against this page size)
    REFERENCE_WIDTH: float = 1000.0
    REFERENCE_HEIGHT: float = 1000.0

    # Lookup scoring policy
    FULL_MATCH_THRESHOLD: float = 0.9
    NAME_MATCH_THRESHOLD: float = 0.7
    ADDRESS_MATCH_THRESHOLD: float = 0.8
    KEY_SCORE_WEIGHT: float = 0.6
    FIELD_SCORE_WEIGHT: float = 0.4

    # Lookup fan-out, timeouts and retry (2 attempts = one bounded retry)
    LOOKUP_CONCURRENCY: int = 5
    LOOKUP_TIMEOUT_SECONDS: float = 15.0
    LOOKUP_CONNECT_TIMEOUT: float = 5.0
    LOOKUP_RETRY_ATTEMPTS: int = 2
    LOOKUP_RETRY_DELAY: float = 0.5

    # Arithmetic and redaction
    CALCULATION_TOLERANCE: float = 0.01
    REDACTION_MERGE_THRESHOLD: float = 1.0

    # Field confidence below this is surfaced to the operator
    LOW_CONFIDENCE_THRESHOLD: float = 0.6

    # Edit-session autosave
    AUTOSAVE_DEBOUNCE_SECONDS: float = 1.5

    # AI-assisted field suggestions (empty key = disabled)
    OPENAI_API_KEY: str = ""
    AI_MODEL: str = "gpt-5"
    AI_TIMEOUT_SECONDS: float = 30.0

    model_config = {"env_prefix": "", "case_sensitive": True}


settings = Settings()


class ScoringPolicy(BaseModel):
    """Thresholds and weights for lookup agreement scores.

    The multi-field weighting is policy, not a constant: callers may pass
    their own instance per lookup configuration.
    """

    full_match_threshold: float = 0.9
    name_match_threshold: float = 0.7
    address_match_threshold: float = 0.8
    key_weight: float = 0.6
    field_weight: float = 0.4

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ScoringPolicy":
        s = source or settings
        return cls(
            full_match_threshold=s.FULL_MATCH_THRESHOLD,
            name_match_threshold=s.NAME_MATCH_THRESHOLD,
            address_match_threshold=s.ADDRESS_MATCH_THRESHOLD,
            key_weight=s.KEY_SCORE_WEIGHT,
            field_weight=s.FIELD_SCORE_WEIGHT,
        )
