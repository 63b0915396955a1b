"""
Optional prose insights for a structured analysis.

The writer only narrates numbers the analyzer already computed; it never
changes them. Failures raise InsightWriterError and the analyzer marks the
result insight_status=failed.
"""
import json
from typing import Optional, Protocol, runtime_checkable

from openai import OpenAI

from auctionmind.analysis.models import AnalysisResult
from auctionmind.core.errors import InsightWriterError
from auctionmind.utils.logger import get_logger

logger = get_logger("analysis.insight_writer")


@runtime_checkable
class InsightWriter(Protocol):
    def describe(self, result: AnalysisResult) -> str:
        ...


def build_prompt(result: AnalysisResult) -> str:
    """Prompt carrying the structured findings the prose must stay faithful to."""
    summary = result.summary
    opportunities = [
        {
            "title": o.title,
            "profit_potential": o.profit_potential,
            "discount_pct": o.discount_pct,
            "risk_level": o.risk_level.value,
            "sample_size": o.sample_size,
        }
        for o in result.opportunities
    ]
    trends = [t.finding for t in result.trends]
    risks = [f"{r.severity.value}: {r.finding}" for r in result.risks]

    return f"""You are an expert automotive auction analyst. Write 3-4 sentences of
market insight for a buyer, based ONLY on the figures below.

**Market summary:**
- Vehicles analyzed: {summary.total_records} ({summary.priced_records} with sale prices)
- Average sale price: {f"${summary.average_price:,.0f}" if summary.average_price is not None else "unknown"}
- Top makes: {", ".join(m.name for m in summary.top_makes) or "unknown"}

**Opportunities:**
{json.dumps(opportunities, indent=2) if opportunities else "None detected"}

**Trends:**
{json.dumps(trends, indent=2) if trends else "None detected"}

**Risks:**
{json.dumps(risks, indent=2) if risks else "None detected"}

Do not invent numbers. Keep it practical and direct. Don't use bullet points."""


class OpenAIInsightWriter:
    """
    InsightWriter backed by the OpenAI chat completions API.

    Args:
        model: Chat model name
        client: Preconfigured OpenAI client (created on first use when omitted)
    """

    def __init__(self, model: str = "gpt-4o", client: Optional[OpenAI] = None, max_tokens: int = 300):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def describe(self, result: AnalysisResult) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are an expert automotive auction analyst."},
                    {"role": "user", "content": build_prompt(result)},
                ],
                temperature=0.3,
                max_tokens=self.max_tokens,
            )
            content = response.choices[0].message.content
        except Exception as e:
            logger.error(f"Failed to generate insights: {e}")
            raise InsightWriterError(f"insight generation failed: {e}") from e

        if not content or not content.strip():
            raise InsightWriterError("insight generation returned no text")
        logger.info(f"Generated insights ({len(content)} chars) with {self.model}")
        return content.strip()
