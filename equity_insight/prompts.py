"""
Prompt registry for every LLM call in the pipeline.

PROMPT_VERSION is part of the transform cache key: bump it whenever the analysis
prompt changes so cached responses produced by the old prompt are not reused.
"""

import json
from dataclasses import dataclass
from typing import Any

PROMPT_VERSION = "v3"


@dataclass(frozen=True)
class PromptTemplate:
    key: str
    version: str
    system_message: str

    def messages(self, user_content: Any) -> list[dict[str, str]]:
        """Chat messages: the system prompt plus the JSON-encoded user payload."""
        if not isinstance(user_content, str):
            user_content = json.dumps(user_content, ensure_ascii=False, default=str)
        return [
            {"role": "system", "content": self.system_message},
            {"role": "user", "content": user_content},
        ]


ANALYSIS_PROMPT = PromptTemplate(
    key="analysis",
    version=PROMPT_VERSION,
    system_message="\n".join(
        [
            "You are a professional equity analyst and reviewer.",
            "Using the MD&A excerpts of the SEC filings, the analyst data, the momentum",
            "metrics and the news bundle in the input, return ONLY valid JSON:",
            "{",
            '"per_filing":[{',
            ' "form":"10-Q|10-K|20-F|6-K","filingDate":"YYYY-MM-DD","reportDate":"YYYY-MM-DD",',
            ' "five_indicators":{',
            '   "alignment_score": number,',
            '   "key_conflicts": [string],',
            '   "valuation_rationale": string,',
            '   "risk_factors": [string],',
            '   "catalyst_timeline": [{"event":string,"window":string,"why":string}]',
            " },",
            ' "explanation": "300-500 word explanation"',
            "}],",
            '"consensus_view":{"summary":string,"agreement_ratio":number},',
            '"action":{"rating":"BUY|HOLD|SELL","target_price":number,"stop_loss":number,"rationale":string},',
            '"profile":{"segment":string,"classification":string,"score":number,"notes":string},',
            '"news_impact":{"summary":string,"sentiment":"positive|neutral|negative","drivers":[string]}',
            "}",
            "alignment_score compares management's narrative with analyst expectations (0-100).",
            "When a section has no supporting data, say so instead of inventing figures.",
        ]
    ),
)

KEYWORD_PROMPT = PromptTemplate(
    key="news_keywords",
    version="v1",
    system_message=(
        "You help with investment research. Reply with a JSON array of strings only, "
        "no other text."
    ),
)

SENTIMENT_PROMPT = PromptTemplate(
    key="news_sentiment",
    version="v1",
    system_message=(
        "You are a financial news analyst. From the article list in the input, return "
        'ONLY a JSON object {"sentiment_label":"positive|neutral|negative",'
        '"summary":"about 100 words","supporting_events":[{"title":string,"reason":string}]}.'
    ),
)

EVENT_CATEGORIES = (
    "earnings and guidance",
    "M&A and major transactions",
    "capital markets activity",
    "regulatory / legal",
    "product / technology milestone",
    "macro and sector",
    "governance and personnel",
    "external shock",
)

KEY_EVENT_PROMPT = PromptTemplate(
    key="key_events",
    version="v1",
    system_message="\n".join(
        [
            "You are a financial event analyst. Pick the single most important event",
            "from the input list and classify it.",
            f"Categories: {', '.join(EVENT_CATEGORIES)}; use \"other\" when none apply.",
            'Return JSON: {"primary":{"title":string,"date":"YYYY-MM-DD","type":string,'
            '"summary":string},"details":[{"title":string,"date":"YYYY-MM-DD",'
            '"type":string,"summary":string}],"summary":string}',
        ]
    ),
)


def keyword_request(ticker: str) -> str:
    return (
        f"List 5 English keywords closely related to {ticker} and its industry. "
        'Format: ["keyword"].'
    )
