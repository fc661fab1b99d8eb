"""
SAR Narrative Generator

Turns a customer, their transactions and a risk score into a four-section
narrative whose sentences carry evidence links (supporting transaction ids
and rule names).

Two paths produce the same shape:
- External generation through a language model client (OpenAI chat API)
- Deterministic template generation when no client is configured

Which path runs is decided when the generator is built. A failing model
call is reported as NarrativeGenerationError and never falls back to the
template for that request.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from database.models import ConfidenceLevel, GeneratedBy, SectionType, SECTION_ORDER
from risk_engine import HIGH_VELOCITY, ROUND_AMOUNT_PATTERN, RiskScoreResult

logger = logging.getLogger(__name__)

# Share of sentences above which a section takes that confidence
SECTION_CONFIDENCE_RATIO = 0.6

DEFAULT_SAMPLE_SIZE = 5


class NarrativeGenerationError(Exception):
    """Raised when the language model call fails or returns an unusable narrative"""
    pass


# ============================================
# NARRATIVE TYPES
# ============================================

@dataclass
class NarrativeSentence:
    """One generated sentence with the evidence it claims"""
    text: str
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    supporting_transaction_ids: List[int] = field(default_factory=list)
    supporting_rules: List[str] = field(default_factory=list)


@dataclass
class NarrativeSection:
    """Section of a narrative; content and confidence derive from its sentences"""
    section_type: SectionType
    sentences: List[NarrativeSentence] = field(default_factory=list)

    @property
    def content(self) -> str:
        return " ".join(sentence.text for sentence in self.sentences)

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return derive_section_confidence([s.confidence for s in self.sentences])


@dataclass
class Narrative:
    """Four sections in fixed order, plus which path produced them"""
    sections: List[NarrativeSection]
    generated_by: GeneratedBy = GeneratedBy.TEMPLATE


def derive_section_confidence(levels: Sequence[ConfidenceLevel]) -> ConfidenceLevel:
    """Section confidence from sentence confidences

    HIGH if more than 60% of sentences are high, else LOW if more than 60%
    are low, else MEDIUM. An empty section is MEDIUM.
    """
    if not levels:
        return ConfidenceLevel.MEDIUM
    total = len(levels)
    if sum(1 for level in levels if level == ConfidenceLevel.HIGH) / total > SECTION_CONFIDENCE_RATIO:
        return ConfidenceLevel.HIGH
    if sum(1 for level in levels if level == ConfidenceLevel.LOW) / total > SECTION_CONFIDENCE_RATIO:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.MEDIUM


def _value(item: Any) -> Any:
    return item.value if hasattr(item, "value") else item


# ============================================
# PROMPT
# ============================================

def _format_sample_transaction(txn: Any) -> str:
    date = txn.transaction_date.isoformat() if txn.transaction_date else "Unknown"
    return (
        f"- {date}: {_value(txn.direction)} {txn.amount} {txn.currency} "
        f"{txn.transaction_type} to {txn.counterparty or 'Unknown'} "
        f"({txn.counterparty_country or 'Unknown'})"
    )


def build_prompt(
    customer: Any,
    transactions: Sequence[Any],
    risk: RiskScoreResult,
    sample_size: int = DEFAULT_SAMPLE_SIZE
) -> str:
    """Build the narrative request sent to the language model

    Args:
        customer: Customer with name, account and KYC fields
        transactions: The customer's transactions; the first `sample_size` are quoted
        risk: Risk score computed over the same transactions
        sample_size: Number of sample transactions to include

    Returns:
        Prompt text asking for the JSON narrative contract
    """
    rules = "\n".join(f"- {rule}" for rule in risk.triggered_rules) or "- None"
    sample = "\n".join(_format_sample_transaction(t) for t in list(transactions)[:sample_size]) or "- None"
    flagged = ", ".join(str(i) for i in risk.flagged_transactions) or "none"

    return f"""You are a financial compliance officer writing a Suspicious Activity Report (SAR). Generate a structured narrative based on the following information:

CUSTOMER INFORMATION:
- Name: {customer.name}
- Account Number: {customer.account_number}
- Risk Level: {_value(customer.risk_level)}
- Country: {customer.country_of_residence or 'Unknown'}
- Occupation: {customer.occupation or 'Unknown'}

TRANSACTION SUMMARY:
- Total Transactions: {len(transactions)}
- Flagged Transactions: {len(risk.flagged_transactions)}
- Total Risk Score: {risk.total_risk_score}

TRIGGERED RULES:
{rules}

SAMPLE TRANSACTIONS:
{sample}

Generate a SAR narrative with EXACTLY 4 sections:
1. OVERVIEW: Brief summary of the suspicious activity (2-3 sentences)
2. TRANSACTION_PATTERN: Detailed analysis of transaction patterns (3-4 sentences)
3. SUSPICION_RATIONALE: Why this activity is suspicious (2-3 sentences)
4. CONCLUSION: Summary and recommendation (1-2 sentences)

For EACH sentence, indicate confidence level as HIGH, MEDIUM, or LOW.
For EACH sentence, list which transaction IDs (from flagged transactions: {flagged}) and rules support it.

Respond in JSON format:
{{
  "sections": [
    {{
      "type": "OVERVIEW",
      "sentences": [
        {{
          "text": "sentence text here",
          "confidence": "HIGH|MEDIUM|LOW",
          "supportingTransactionIds": [1, 2],
          "supportingRules": ["RULE_NAME"]
        }}
      ]
    }}
  ]
}}"""


# ============================================
# RESPONSE PARSING
# ============================================

class _ModelSentence(BaseModel):
    """Sentence as returned by the language model"""
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., min_length=1)
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    supporting_transaction_ids: List[int] = Field(default_factory=list, alias="supportingTransactionIds")
    supporting_rules: List[str] = Field(default_factory=list, alias="supportingRules")

    @field_validator('text')
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Sentence text is empty")
        return v

    @field_validator('confidence', mode='before')
    @classmethod
    def normalize_confidence(cls, v: Any) -> Any:
        if v is None:
            return ConfidenceLevel.MEDIUM
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator('supporting_transaction_ids', 'supporting_rules', mode='before')
    @classmethod
    def null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class _ModelSection(BaseModel):
    type: str
    sentences: List[_ModelSentence] = Field(default_factory=list)

    @field_validator('type')
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().upper()


class _ModelNarrative(BaseModel):
    sections: List[_ModelSection]


def parse_narrative_response(raw: str) -> Narrative:
    """Parse and validate a JSON narrative returned by the language model

    Section types must be exactly the four fixed types, once each; they are
    returned in the fixed order. Evidence links are kept as declared.

    Raises:
        NarrativeGenerationError: If the response is not valid JSON or does
            not match the narrative contract
    """
    try:
        payload = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise NarrativeGenerationError(f"Model response is not valid JSON: {e}") from e

    try:
        parsed = _ModelNarrative.model_validate(payload)
    except ValidationError as e:
        raise NarrativeGenerationError(
            f"Model response does not match the narrative format: {e.error_count()} error(s)"
        ) from e

    by_type: Dict[str, _ModelSection] = {}
    for section in parsed.sections:
        if section.type in by_type:
            raise NarrativeGenerationError(f"Duplicate section type in model response: {section.type}")
        by_type[section.type] = section

    expected = {s.value for s in SECTION_ORDER}
    if set(by_type) != expected:
        missing = sorted(expected - set(by_type))
        unexpected = sorted(set(by_type) - expected)
        raise NarrativeGenerationError(
            f"Model response must contain exactly the sections {[s.value for s in SECTION_ORDER]} "
            f"(missing: {missing}, unexpected: {unexpected})"
        )

    sections = [
        NarrativeSection(
            section_type=section_type,
            sentences=[
                NarrativeSentence(
                    text=s.text,
                    confidence=s.confidence,
                    supporting_transaction_ids=list(s.supporting_transaction_ids),
                    supporting_rules=list(s.supporting_rules)
                )
                for s in by_type[section_type.value].sentences
            ]
        )
        for section_type in SECTION_ORDER
    ]
    return Narrative(sections=sections, generated_by=GeneratedBy.AI)


# ============================================
# LANGUAGE MODEL CLIENT
# ============================================

class OpenAINarrativeClient:
    """Chat completion client requesting a JSON object response

    Retries are disabled; a failed call is a failed generation.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        max_completion_tokens: int = 2048,
        timeout_seconds: float = 60.0
    ):
        self.model = model
        self.max_completion_tokens = max_completion_tokens
        self._client = OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0
        )

    @classmethod
    def from_config(cls, config) -> 'OpenAINarrativeClient':
        """Build from a NarrativeConfig"""
        return cls(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_completion_tokens=config.max_completion_tokens,
            timeout_seconds=config.timeout_seconds
        )

    def complete(self, prompt: str) -> str:
        """Send the prompt and return the raw message content

        Raises:
            NarrativeGenerationError: On API failure or an empty response
        """
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
                max_completion_tokens=self.max_completion_tokens,
            )
        except OpenAIError as e:
            raise NarrativeGenerationError(f"Language model request failed: {e}") from e

        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice and choice.message else None
        if not content or not content.strip():
            raise NarrativeGenerationError("Language model returned an empty response")
        return content


# ============================================
# GENERATOR
# ============================================

class NarrativeGenerator:
    """Produces SAR narratives from risk results

    Args:
        client: Object with `complete(prompt) -> str`. None selects the
            template path.
        sample_size: Sample transactions quoted in the prompt
    """

    def __init__(self, client: Optional[Any] = None, sample_size: int = DEFAULT_SAMPLE_SIZE):
        self.client = client
        self.sample_size = sample_size

    @property
    def provider(self) -> str:
        return "openai" if self.client is not None else "template"

    def generate(self, customer: Any, transactions: Sequence[Any], risk: RiskScoreResult) -> Narrative:
        """Generate a four-section narrative

        Raises:
            NarrativeGenerationError: If the external model fails (no fallback)
        """
        transactions = list(transactions)
        if self.client is None:
            return self._generate_from_template(customer, transactions, risk)

        prompt = build_prompt(customer, transactions, risk, self.sample_size)
        raw = self.client.complete(prompt)
        narrative = parse_narrative_response(raw)
        logger.info(
            f"Model narrative generated: {sum(len(s.sentences) for s in narrative.sections)} sentences"
        )
        return narrative

    @staticmethod
    def _generate_from_template(
        customer: Any,
        transactions: Sequence[Any],
        risk: RiskScoreResult
    ) -> Narrative:
        flagged = list(risk.flagged_transactions)
        rules = list(risk.triggered_rules)
        pattern_rules = [r for r in rules if r in (HIGH_VELOCITY, ROUND_AMOUNT_PATTERN)]
        high, medium, low = ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM, ConfidenceLevel.LOW
        # Suspicion claims are high confidence only when a rule backs them
        claim = high if rules else low
        threshold_text = (
            "shows activity exceeding policy thresholds" if rules
            else "shows no activity exceeding policy thresholds"
        )
        if rules:
            conclusion_text = ("Based on the analysis above, filing this SAR and applying enhanced "
                               "customer due diligence is recommended.")
        else:
            conclusion_text = "No risk rule was triggered; filing remains at the reviewing analyst's discretion."

        sections = [
            NarrativeSection(SectionType.OVERVIEW, [
                NarrativeSentence(
                    f"A review of customer {customer.name} (Account: {customer.account_number}) "
                    f"has identified financial activity requiring investigation.",
                    high, flagged[:3], rules[:2]
                ),
                NarrativeSentence(
                    f"The customer is classified as {_value(customer.risk_level)} risk and the account "
                    f"{threshold_text}.",
                    claim, flagged[:2], rules[:1]
                ),
            ]),
            NarrativeSection(SectionType.TRANSACTION_PATTERN, [
                NarrativeSentence(
                    f"A total of {len(transactions)} transactions were reviewed with "
                    f"{len(flagged)} flagged for further investigation.",
                    high, flagged, rules
                ),
                NarrativeSentence(
                    "Transaction timing, amounts and counterparty geography show patterns "
                    "consistent with potential structuring.",
                    medium if pattern_rules else low, flagged[:4], pattern_rules
                ),
            ]),
            NarrativeSection(SectionType.SUSPICION_RATIONALE, [
                NarrativeSentence(
                    f"Risk scoring produced a total score of {risk.total_risk_score} based on "
                    f"triggered rules: {', '.join(rules) if rules else 'none'}.",
                    high, flagged, rules
                ),
                NarrativeSentence(
                    "The observed activity appears inconsistent with the customer profile "
                    "and stated occupation.",
                    medium if rules else low, [], []
                ),
            ]),
            NarrativeSection(SectionType.CONCLUSION, [
                NarrativeSentence(conclusion_text, claim, flagged, rules),
            ]),
        ]
        return Narrative(sections=sections, generated_by=GeneratedBy.TEMPLATE)


def create_narrative_generator(config) -> NarrativeGenerator:
    """Build the generator selected by configuration

    Args:
        config: ConfigManager (uses the `narrative` section)

    Raises:
        ConfigurationError: If the OpenAI provider is selected without a key
    """
    config.require_narrative_credentials()
    narrative = config.narrative
    if narrative.provider == "openai":
        logger.info(f"Narrative generation via OpenAI model {narrative.model}")
        client = OpenAINarrativeClient.from_config(narrative)
    else:
        logger.info("Narrative generation via template (no language model configured)")
        client = None
    return NarrativeGenerator(client=client, sample_size=narrative.transaction_sample_size)
