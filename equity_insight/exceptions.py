"""
Exception hierarchy for the analysis pipeline.

Clean error hierarchy for distinct failure modes.
"""


class EquityInsightError(Exception):
    """Base exception for all pipeline errors."""


class ProviderError(EquityInsightError):
    """A single upstream provider failed (network, non-2xx, malformed payload, timeout)."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        self.provider = provider.upper()
        self.reason = message
        self.status_code = status_code
        super().__init__(f"[{self.provider}] {message}")


class FallbackExhaustedError(EquityInsightError):
    """Every provider in an ordered fallback chain failed."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(" | ".join(self.errors) or "no providers configured")


class InputValidationError(EquityInsightError):
    """Ticker or date rejected before any fetch work starts."""


class AnalysisPipelineError(EquityInsightError):
    """A required stage of the analysis could not be satisfied."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")
