# commons/services/ai_agent.py
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from langchain_core.exceptions import OutputParserException
from langchain_core.messages import HumanMessage
from langchain_core.output_parsers import JsonOutputParser, StrOutputParser
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from commons.config import settings
from commons.errors import AnalysisParseError, ReceiptAnalysisError
from commons.models.database import MAX_AMOUNT_CENTS

logger = logging.getLogger(__name__)


class ReceiptAnalysis(BaseModel):
    """Best-effort guess of expense fields read from a receipt image"""
    title: Optional[str] = Field(None, description="Short descriptive title for the expense")
    merchant: Optional[str] = Field(None, description="Store or business name")
    category: Optional[str] = Field(None, description="Expense category, e.g. Food, Office Supplies, Travel")
    amount: Optional[float] = Field(None, description="Total amount as a number, e.g. 18.50")
    currency: Optional[str] = Field(None, description="ISO currency code, e.g. USD")
    date: Optional[str] = Field(None, description="Expense date in YYYY-MM-DD format")
    notes: Optional[str] = Field(None, description="Any other relevant details")
    confidence: Optional[float] = Field(None, description="Confidence score between 0 and 1")


_json_parser = JsonOutputParser(pydantic_object=ReceiptAnalysis)

ANALYSIS_PROMPT = (
    "Analyze this receipt image and extract the following information in JSON format: "
    "title (descriptive title for the expense), merchant (store/business name), "
    "category (expense category like 'Food', 'Office Supplies', 'Travel', etc.), "
    "amount (total amount as a number), currency (currency code), "
    "date (expense date in YYYY-MM-DD format), notes (any additional relevant details), "
    "confidence (confidence score 0-1). "
    "If any field cannot be determined, omit it from the response."
)


def parse_receipt_analysis(text: str) -> ReceiptAnalysis:
    """Parse the model reply, tolerating markdown code fences.

    A partial object is fine; anything that is not a JSON object with
    plausible field types raises AnalysisParseError.
    """
    try:
        data = _json_parser.parse(text or "")
    except OutputParserException as e:
        logger.error(f"Failed to parse receipt analysis: {text!r}")
        raise AnalysisParseError("Failed to parse receipt analysis", raw=(text or "")[:500]) from e

    if not isinstance(data, dict):
        raise AnalysisParseError("Receipt analysis is not a JSON object", raw=(text or "")[:500])

    try:
        return ReceiptAnalysis.model_validate(data)
    except PydanticValidationError as e:
        raise AnalysisParseError(f"Receipt analysis has invalid fields: {e.error_count()} error(s)",
                                 raw=(text or "")[:500]) from e


def to_cents(amount) -> Optional[int]:
    """Convert a major-unit amount to integer cents, rounding half up"""
    if amount is None:
        return None
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    cents = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if abs(cents) > MAX_AMOUNT_CENTS:
        logger.warning(f"Ignoring out-of-range amount: {amount}")
        return None
    return cents


class ReceiptAnalysisAgent:
    """Receipt reader backed by an OpenAI vision model"""

    def __init__(self, llm=None):
        try:
            self.llm = llm if llm is not None else ChatOpenAI(
                model=settings.analysis_model,
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                temperature=0.1,
                max_tokens=settings.analysis_max_tokens,
                timeout=settings.analysis_timeout,
                max_retries=0,
            )
            self.prompt = f"{ANALYSIS_PROMPT}\n\n{_json_parser.get_format_instructions()}"
            self.chain = self.llm | StrOutputParser()
            logger.info("Receipt analysis agent initialized")

        except Exception as e:
            logger.error(f"Receipt analysis agent failed to initialize: {e}")
            raise

    async def analyze_receipt(self, image_url: str) -> ReceiptAnalysis:
        """Ask the model for a structured guess of the receipt at ``image_url``"""
        message = HumanMessage(content=[
            {"type": "text", "text": self.prompt},
            {"type": "image_url", "image_url": {"url": image_url}},
        ])

        try:
            reply = await self.chain.ainvoke([message])
        except Exception as e:
            logger.error(f"Receipt analysis request failed: {e}")
            raise ReceiptAnalysisError(f"Receipt analysis failed: {e}") from e

        analysis = parse_receipt_analysis(reply)
        logger.info(f"Receipt analyzed, title={analysis.title!r}, confidence={analysis.confidence}")
        return analysis
