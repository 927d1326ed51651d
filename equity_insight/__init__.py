"""Filing, market-data and news aggregation with LLM synthesis."""

__version__ = "0.3.0"
