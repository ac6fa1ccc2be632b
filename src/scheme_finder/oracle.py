"""
Oracle adapters: the hosted-model client and the deterministic rule-based stand-in.

Both expose the same three operations (``extract``, ``reason``,
``phrase_question``) so the controller can pick whichever is available at call
time.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import openai
from openai import OpenAI

try:
    from src.scheme_finder.eligibility import evaluate_program
    from src.scheme_finder.errors import OracleMalformedResponse, OracleUnavailable
    from src.scheme_finder.models import ATTRIBUTES, NumericBand, Program, UserContext
except ImportError:
    from .eligibility import evaluate_program
    from .errors import OracleMalformedResponse, OracleUnavailable
    from .models import ATTRIBUTES, NumericBand, Program, UserContext

logger = logging.getLogger(__name__)


EXTRACT_SYSTEM_PROMPT = """You extract structured facts about a citizen from one message so that
government benefit programs can be matched to them.

INPUT: JSON with
- utterance: the citizen's latest message (any language).
- language: ISO code of the conversation language.
- context_so_far: facts already known (may be empty).
- attributes: the attribute names you may fill.

Rules:
- Only report facts present in or clearly implied by the utterance. Never repeat context_so_far.
- "stated" holds facts the citizen said outright; "inferred" holds facts you guessed from indirect cues
  (e.g. "my husband passed away" implies gender=female).
- region: Indian state or union territory in English, lowercase (e.g. "tamil nadu").
- age and income: a number, or {"low": n, "high": m} when only a range is known. Income is annual, in rupees.
- disability: true/false.
- social_category: one of general, obc, sc, st.
- Anything else useful (e.g. bpl card, student) goes into "extras" as name -> true/false or short text.

Return STRICT JSON:
{
  "stated": {"attribute": value, "extras": {}},
  "inferred": {"attribute": value}
}
"""

REASON_SYSTEM_PROMPT = """You are the eligibility reasoner for a government benefit program finder.

INPUT: JSON with
- context: facts known about the citizen.
- programs: candidate programs with structured constraints (range / one_of / flag) and descriptions.

For EVERY program decide:
- verdict: eligible | likely | ineligible | unknown
  (unknown when a required fact is missing; never ineligible just because a fact is missing).
- relevance: integer 0-100, how well the program fits the citizen's situation.
- satisfied: constraint attribute names the context satisfies.
- missing: constraint attribute names still unknown (include "region" for regional programs when region is unknown).

Use ONLY the provided program ids.

Return STRICT JSON:
{
  "candidates": [
    {"program_id": "...", "verdict": "...", "relevance": 0, "satisfied": [], "missing": []}
  ]
}
"""

PHRASE_SYSTEM_PROMPT = """You write one short, friendly yes/no question for a citizen using a benefit finder.

INPUT: JSON with attribute, proposed_value and language.
The question must be answerable with yes or no, must ask whether the citizen's attribute equals (or falls
within) proposed_value, and must be written in the requested language. Plain words, no jargon.

Return STRICT JSON:
{"question": "..."}
"""


QUESTION_TEMPLATES: Dict[str, Dict[str, str]] = {
    "en": {
        "region": "Do you live in {value}?",
        "occupation": "Do you work as a {value}?",
        "age": "Is your age {value}?",
        "income": "Is your annual household income {value}?",
        "social_category": "Do you belong to the {value} category?",
        "gender": "Are you {value}?",
        "disability": "Do you have a disability?",
        "disability:false": "Are you without any disability?",
        "_flag": "Does this apply to you: {attribute}?",
        "_flag:false": "Is it true that this does not apply to you: {attribute}?",
        "_default": "Is your {attribute} {value}?",
    },
    "hi": {
        "region": "क्या आप {value} में रहते हैं?",
        "occupation": "क्या आप {value} के रूप में काम करते हैं?",
        "age": "क्या आपकी उम्र {value} है?",
        "income": "क्या आपकी वार्षिक पारिवारिक आय {value} है?",
        "social_category": "क्या आप {value} श्रेणी से हैं?",
        "gender": "क्या आप {value} हैं?",
        "disability": "क्या आपको कोई दिव्यांगता है?",
        "disability:false": "क्या आपको कोई दिव्यांगता नहीं है?",
        "_flag": "क्या यह आप पर लागू होता है: {attribute}?",
        "_flag:false": "क्या यह आप पर लागू नहीं होता: {attribute}?",
        "_default": "क्या आपका {attribute} {value} है?",
    },
}

BAND_PHRASES = {
    "en": {"between": "between {low} and {high}", "at_least": "{low} or more", "at_most": "{high} or less"},
    "hi": {"between": "{low} से {high} के बीच", "at_least": "{low} या उससे अधिक", "at_most": "{high} या उससे कम"},
}

CURRENCY = {"en": "Rs ", "hi": "₹"}


def humanize(value: Any) -> str:
    return str(value).replace("_", " ")


def describe_band(band: NumericBand, language: str = "en", unit: str = "") -> str:
    """Render a band for a question; ``unit`` prefixes each bound (e.g. a currency sign)."""
    phrases = BAND_PHRASES.get(language, BAND_PHRASES["en"])
    low = None if band.low is None else unit + _num(band.low)
    high = None if band.high is None else unit + _num(band.high)
    if band.is_exact:
        return low
    if low is not None and high is not None:
        return phrases["between"].format(low=low, high=high)
    if low is not None:
        return phrases["at_least"].format(low=low)
    return phrases["at_most"].format(high=high)


def _num(value: Any) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else str(number)


def template_question(attribute: str, language: str = "en", proposed_value: Any = None) -> str:
    """Deterministic yes/no question text; English is used for unsupported languages."""
    templates = QUESTION_TEMPLATES.get(language, QUESTION_TEMPLATES["en"])
    if isinstance(proposed_value, bool) or attribute == "disability":
        key = attribute if attribute in templates else "_flag"
        if proposed_value is False:
            key = f"{key}:false"
        return templates[key].format(attribute=humanize(attribute))
    if isinstance(proposed_value, NumericBand):
        unit = CURRENCY.get(language, CURRENCY["en"]) if attribute == "income" else ""
        value = describe_band(proposed_value, language, unit)
    elif proposed_value is None:
        value = "?"
    elif attribute == "region":
        value = humanize(proposed_value).title()
    else:
        value = humanize(proposed_value)
    template = templates.get(attribute, templates["_default"])
    return template.format(attribute=humanize(attribute), value=value)


def coerce_json(raw: str) -> Any:
    """
    Parse JSON from an LLM response, handling markdown fences and invalid escape sequences.

    Raises:
        json.JSONDecodeError: If the payload cannot be parsed even after repair attempts.
    """
    raw = (raw or "").strip()

    if raw.startswith("```"):
        lines = raw.split("\n")
        end_idx = len(lines)
        for i, line in enumerate(lines[1:], start=1):
            if line.strip() == "```":
                end_idx = i
                break
        raw = "\n".join(lines[1:end_idx])

    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        fixed = re.sub(r"\\(?![\"\\/bfnrtux0-9a-fA-F])", r"\\\\", raw)
        fixed = re.sub(r"\\x(?![0-9a-fA-F]{2})", r"\\\\x", fixed)
        fixed = re.sub(r"\\u(?![0-9a-fA-F]{4})", r"\\\\u", fixed)
        try:
            return json.loads(fixed)
        except json.JSONDecodeError:
            start = raw.find("{")
            end = raw.rfind("}")
            if start != -1 and end > start:
                try:
                    return json.loads(raw[start : end + 1])
                except json.JSONDecodeError:
                    pass
            raise e


class Oracle:
    """
    Capability interface shared by the live and fallback adapters.
    """

    name = "oracle"

    @property
    def available(self) -> bool:
        return True

    def extract(self, text: str, language: str, context: UserContext) -> Dict[str, Any]:
        raise NotImplementedError

    def reason(self, context: UserContext, programs: Sequence[Program]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def phrase_question(self, attribute: str, language: str, proposed_value: Any = None) -> str:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Live adapter
# ---------------------------------------------------------------------------


class OpenAIOracle(Oracle):
    """
    Hosted-model adapter built on OpenAI chat completions with strict-JSON prompts.

    Transport failures raise OracleUnavailable; unparsable answers are logged and
    treated as empty results.
    """

    name = "openai"

    def __init__(
        self,
        llm_model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.llm_client: Optional[OpenAI] = None
        self.llm_model: Optional[str] = None
        self._init_llm(llm_model, api_key, timeout)

    def _init_llm(self, llm_model: Optional[str], api_key: Optional[str], timeout: Optional[float]) -> None:
        API_KEY = api_key or os.getenv("OPENAI_API_KEY")
        model_name = llm_model or os.getenv("SCHEME_FINDER_LLM_MODEL", "gpt-4o-mini")
        try:
            if not API_KEY:
                raise ValueError("OPENAI_API_KEY environment variable not set")
            kwargs: Dict[str, Any] = {"api_key": API_KEY, "max_retries": 0}
            if timeout:
                kwargs["timeout"] = timeout
            self.llm_client = OpenAI(**kwargs)
            self.llm_model = model_name
        except Exception as exc:
            self.llm_client = None
            self.llm_model = None
            logger.warning("[Oracle] Failed to initialize OpenAI client (%s); rule-based fallback only.", exc)

    @property
    def available(self) -> bool:
        return self.llm_client is not None and bool(self.llm_model)

    def extract(self, text: str, language: str, context: UserContext) -> Dict[str, Any]:
        payload = {
            "utterance": text,
            "language": language,
            "context_so_far": context.as_facts(),
            "attributes": list(ATTRIBUTES),
        }
        try:
            raw = self._chat_json(EXTRACT_SYSTEM_PROMPT, payload)
        except OracleMalformedResponse as exc:
            logger.warning("[Oracle] Malformed extraction response (%s); treating as empty delta.", exc)
            return {}
        stated = raw.get("stated")
        inferred = raw.get("inferred")
        return {
            "stated": stated if isinstance(stated, dict) else {},
            "inferred": inferred if isinstance(inferred, dict) else {},
        }

    def reason(self, context: UserContext, programs: Sequence[Program]) -> List[Dict[str, Any]]:
        payload = {
            "context": context.as_facts(),
            "programs": [program.to_oracle_dict() for program in programs],
        }
        try:
            raw = self._chat_json(REASON_SYSTEM_PROMPT, payload)
        except OracleMalformedResponse as exc:
            logger.warning("[Oracle] Malformed reasoning response (%s); treating as no candidates.", exc)
            return []
        candidates = raw.get("candidates")
        if not isinstance(candidates, list):
            logger.warning("[Oracle] Reasoning response had no candidate list; treating as no candidates.")
            return []
        return candidates

    def phrase_question(self, attribute: str, language: str, proposed_value: Any = None) -> str:
        value = proposed_value.to_dict() if isinstance(proposed_value, NumericBand) else proposed_value
        payload = {"attribute": attribute, "proposed_value": value, "language": language}
        try:
            raw = self._chat_json(PHRASE_SYSTEM_PROMPT, payload)
        except OracleMalformedResponse as exc:
            logger.warning("[Oracle] Malformed phrasing response (%s); using template.", exc)
            return template_question(attribute, language, proposed_value)
        question = raw.get("question")
        if not isinstance(question, str) or not question.strip():
            return template_question(attribute, language, proposed_value)
        return question.strip()

    def _chat_json(self, system_prompt: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.available:
            raise OracleUnavailable("LLM client is not configured.")
        try:
            response = self.llm_client.chat.completions.create(
                model=self.llm_model,
                temperature=0,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": json.dumps(payload, indent=2, ensure_ascii=False)},
                ],
            )
        except openai.APIError as exc:
            raise OracleUnavailable(f"{type(exc).__name__}: {exc}") from exc

        content = response.choices[0].message.content or ""
        try:
            data = coerce_json(content)
        except json.JSONDecodeError as exc:
            raise OracleMalformedResponse(str(exc), raw=content) from exc
        if not isinstance(data, dict):
            raise OracleMalformedResponse("expected a JSON object", raw=content)
        return data


# ---------------------------------------------------------------------------
# Deterministic fallback adapter
# ---------------------------------------------------------------------------

REGION_KEYWORDS = {
    "andhra_pradesh": {"andhra pradesh", "andhra"},
    "assam": {"assam", "असम"},
    "bihar": {"bihar", "बिहार"},
    "delhi": {"delhi", "new delhi", "दिल्ली"},
    "gujarat": {"gujarat", "गुजरात"},
    "karnataka": {"karnataka", "bengaluru", "bangalore", "कर्नाटक"},
    "kerala": {"kerala", "केरल"},
    "madhya_pradesh": {"madhya pradesh", "मध्य प्रदेश"},
    "maharashtra": {"maharashtra", "mumbai", "pune", "महाराष्ट्र"},
    "odisha": {"odisha", "orissa", "ओडिशा"},
    "punjab": {"punjab", "पंजाब"},
    "rajasthan": {"rajasthan", "राजस्थान"},
    "tamil_nadu": {"tamil nadu", "tamilnadu", "chennai", "तमिलनाडु"},
    "telangana": {"telangana", "hyderabad", "तेलंगाना"},
    "uttar_pradesh": {"uttar pradesh", "lucknow", "उत्तर प्रदेश"},
    "west_bengal": {"west bengal", "kolkata", "पश्चिम बंगाल"},
}

OCCUPATION_KEYWORDS = {
    "farmer": {"farmer", "farming", "kisan", "agriculture", "cultivator", "किसान", "खेती"},
    "student": {"student", "studying", "स्टूडेंट", "छात्र", "छात्रा"},
    "fisherman": {"fisherman", "fisherwoman", "fishing", "मछुआरा"},
    "artisan": {"artisan", "craftsman", "weaver", "potter", "कारीगर"},
    "street_vendor": {"street vendor", "hawker", "vendor", "रेहड़ी"},
    "construction_worker": {"construction worker", "mason", "labourer", "laborer", "मजदूर"},
    "domestic_worker": {"domestic worker", "maid", "housemaid"},
    "entrepreneur": {"entrepreneur", "business owner", "startup", "shopkeeper", "व्यापारी"},
    "unemployed": {"unemployed", "jobless", "no job", "बेरोजगार"},
}

SOCIAL_CATEGORY_KEYWORDS = {
    "sc": {"sc", "scheduled caste", "dalit", "अनुसूचित जाति"},
    "st": {"st", "scheduled tribe", "adivasi", "tribal", "अनुसूचित जनजाति"},
    "obc": {"obc", "other backward class", "backward class", "पिछड़ा वर्ग"},
    "general": {"general category", "general caste"},
}

GENDER_KEYWORDS = {
    "female": {"woman", "female", "girl", "lady", "mahila", "महिला", "लड़की"},
    "male": {"man", "male", "boy", "पुरुष", "लड़का"},
}

INFERRED_GENDER_KEYWORDS = {
    "female": {"widow", "my husband", "pregnant", "mother of", "विधवा"},
    "male": {"my wife", "widower"},
}

DISABILITY_NEGATIONS = {"not disabled", "no disability", "without disability", "not handicapped"}
DISABILITY_KEYWORDS = {"disabled", "disability", "handicapped", "divyang", "wheelchair", "blind", "दिव्यांग", "विकलांग"}
SENIOR_KEYWORDS = {"senior citizen", "retired", "pensioner", "old age", "बुजुर्ग", "वरिष्ठ नागरिक"}
BPL_KEYWORDS = {"bpl", "below poverty line", "गरीबी रेखा"}

AGE_PATTERNS = (
    re.compile(r"\b(\d{1,3})\s*(?:years?|yrs?|year-old|साल|वर्ष)\b"),
    re.compile(r"\b(?:i am|i'm|im|age|aged|age is)\s*(\d{1,3})\b"),
)
INCOME_PATTERN = re.compile(
    r"(?:income|earn|earning|earnings|salary|आय|कमाई)\D{0,20}?"
    r"(?:rs\.?|inr|₹)?\s*(\d[\d,]*(?:\.\d+)?)\s*(lakhs?|lacs?|k|thousand|crores?|लाख|हजार)?"
    r"(\s*(?:per|a|/)\s*month|\s*monthly|\s*महीना)?"
)
INCOME_MULTIPLIERS = {
    "lakh": 100_000,
    "lakhs": 100_000,
    "lac": 100_000,
    "lacs": 100_000,
    "लाख": 100_000,
    "k": 1_000,
    "thousand": 1_000,
    "हजार": 1_000,
    "crore": 10_000_000,
    "crores": 10_000_000,
}


# \w misses Devanagari vowel signs, so word boundaries include the whole block
WORD_CHAR = r"[\w\u0900-\u097F]"


def _normalize_text(text: str) -> str:
    lowered = text.lower()
    return " " + re.sub(r"[\"!?;:()\[\]{}]+", " ", lowered) + " "


def _contains(normalized: str, phrase: str) -> bool:
    return re.search(rf"(?<!{WORD_CHAR}){re.escape(phrase)}(?!{WORD_CHAR})", normalized) is not None


def _first_match(normalized: str, table: Dict[str, set]) -> Optional[str]:
    for value, phrases in table.items():
        # longer phrases first so "street vendor" beats "vendor" style overlaps
        for phrase in sorted(phrases, key=len, reverse=True):
            if _contains(normalized, phrase):
                return value
    return None


class RuleBasedOracle(Oracle):
    """
    Deterministic keyword/regex adapter used when the hosted model is unavailable.
    """

    name = "rules"

    def extract(self, text: str, language: str, context: UserContext) -> Dict[str, Any]:
        normalized = _normalize_text(text or "")
        stated: Dict[str, Any] = {}
        inferred: Dict[str, Any] = {}

        region = _first_match(normalized, REGION_KEYWORDS)
        if region:
            stated["region"] = region

        occupation = _first_match(normalized, OCCUPATION_KEYWORDS)
        if occupation:
            stated["occupation"] = occupation

        category = _first_match(normalized, SOCIAL_CATEGORY_KEYWORDS)
        if category in ("sc", "st") and not self._category_is_explicit(normalized, category):
            category = None
        if category:
            stated["social_category"] = category

        gender = _first_match(normalized, GENDER_KEYWORDS)
        if gender:
            stated["gender"] = gender
        else:
            guessed = _first_match(normalized, INFERRED_GENDER_KEYWORDS)
            if guessed:
                inferred["gender"] = guessed

        if any(_contains(normalized, phrase) for phrase in DISABILITY_NEGATIONS):
            stated["disability"] = False
        elif any(_contains(normalized, phrase) for phrase in DISABILITY_KEYWORDS):
            stated["disability"] = True

        age = self._extract_age(normalized)
        if age is not None:
            stated["age"] = age
        elif any(_contains(normalized, phrase) for phrase in SENIOR_KEYWORDS):
            inferred["age"] = {"low": 60, "high": None}

        income = self._extract_income(normalized)
        if income is not None:
            stated["income"] = income

        if any(_contains(normalized, phrase) for phrase in BPL_KEYWORDS):
            stated["extras"] = {"bpl_card": True}

        return {"stated": stated, "inferred": inferred}

    def reason(self, context: UserContext, programs: Sequence[Program]) -> List[Dict[str, Any]]:
        return [evaluate_program(program, context).to_dict() for program in programs]

    def phrase_question(self, attribute: str, language: str, proposed_value: Any = None) -> str:
        return template_question(attribute, language, proposed_value)

    @staticmethod
    def _category_is_explicit(normalized: str, category: str) -> bool:
        # bare "st"/"sc" tokens are too ambiguous ("1st", street abbreviations) without a cue word
        long_forms = {phrase for phrase in SOCIAL_CATEGORY_KEYWORDS[category] if len(phrase) > 2}
        if any(_contains(normalized, phrase) for phrase in long_forms):
            return True
        return bool(re.search(rf"(?<!{WORD_CHAR}){category}\s+(?:category|caste|community)", normalized))

    @staticmethod
    def _extract_age(normalized: str) -> Optional[int]:
        for pattern in AGE_PATTERNS:
            match = pattern.search(normalized)
            if match:
                age = int(match.group(1))
                if 0 < age < 120:
                    return age
        return None

    @staticmethod
    def _extract_income(normalized: str) -> Optional[int]:
        match = INCOME_PATTERN.search(normalized)
        if not match:
            return None
        try:
            amount = float(match.group(1).replace(",", ""))
        except ValueError:
            return None
        unit = (match.group(2) or "").strip()
        amount *= INCOME_MULTIPLIERS.get(unit, 1)
        if match.group(3):
            amount *= 12
        return int(amount)


def build_oracles(settings: Any) -> Tuple[Optional[Oracle], Oracle]:
    """
    Return ``(live, fallback)`` adapters for the given settings.

    ``live`` is None when no API key is configured.
    """
    fallback = RuleBasedOracle()
    if not getattr(settings, "openai_api_key", None):
        logger.info("[Oracle] No OPENAI_API_KEY configured; running with the rule-based oracle only.")
        return None, fallback
    live = OpenAIOracle(
        llm_model=settings.llm_model,
        api_key=settings.openai_api_key,
        timeout=settings.oracle_timeout,
    )
    return (live if live.available else None), fallback
