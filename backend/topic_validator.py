import logging
import re
from typing import List

from openai_helper import ChatClient, user_message

logger = logging.getLogger(__name__)

FINANCE_KEYWORDS: List[str] = [
    # English
    "finance", "investment", "stock", "bond", "portfolio", "trading", "dividend",
    "interest", "loan", "mortgage", "credit", "debt", "budget", "savings", "retirement",
    "401k", "ira", "roth", "pension", "etf", "mutual fund", "asset", "liability",
    "equity", "capital", "revenue", "profit", "loss", "tax", "banking", "insurance",
    "real estate", "property", "reit", "cryptocurrency", "forex", "commodity",
    # French
    "investissement", "actions", "obligations", "portefeuille", "épargne", "retraite",
    "crédit", "prêt", "hypothèque", "intérêt", "impôt", "banque", "assurance",
    "immobilier", "propriété", "bourse",
    # German
    "investition", "aktien", "anleihen", "sparplan", "rente", "kredit", "darlehen",
    "hypothek", "zinsen", "steuer", "versicherung", "immobilien", "eigentum", "börse",
]

FRENCH_INDICATORS = frozenset({"le", "la", "les", "un", "une", "des", "est", "sont", "dans", "sur", "avec"})
GERMAN_INDICATORS = frozenset({"der", "die", "das", "ein", "eine", "ist", "sind", "und", "über", "für"})

CLASSIFIER_PROMPT = """You are a topic classifier. Determine if the following topic is related to:
- Finance (personal finance, corporate finance, financial planning, banking)
- Investment (stocks, bonds, ETFs, mutual funds, portfolio management, trading)
- Real Estate (property investment, real estate markets, rental properties, mortgages)
- Immobilien (German real estate, property management)

Topic: "{topic}"

Respond with ONLY "YES" if the topic is related to any of the above domains.
Respond with ONLY "NO" if the topic is NOT related to any of the above domains.

Do not provide any explanation, just YES or NO.
"""

_WORD_RE = re.compile(r"[^\W\d_]+", re.UNICODE)


def _words(text: str) -> set:
    return set(_WORD_RE.findall(text.lower()))


def matches_finance_keyword(topic: str) -> bool:
    normalized = topic.lower().strip()
    return any(keyword in normalized for keyword in FINANCE_KEYWORDS)


def get_invalid_topic_message(topic: str) -> str:
    words = _words(topic or "")
    if words & FRENCH_INDICATORS:
        return (
            f"Le sujet '{topic}' n'est pas lié à la finance, l'investissement ou l'immobilier. "
            "Veuillez choisir un sujet dans ces domaines."
        )
    if words & GERMAN_INDICATORS:
        return (
            f"Das Thema '{topic}' bezieht sich nicht auf Finanzen, Investitionen oder Immobilien. "
            "Bitte wählen Sie ein Thema aus diesen Bereichen."
        )
    return (
        f"The topic '{topic}' is not related to finance, investment, or real estate. "
        "Please choose a topic within these domains."
    )


class TopicValidator:
    def __init__(self, chat_client: ChatClient):
        self.chat_client = chat_client

    async def is_valid_topic(self, topic: str) -> bool:
        if topic is None or not topic.strip():
            return False
        if matches_finance_keyword(topic):
            logger.debug("topic_valid source=keyword topic=%s", topic)
            return True
        return await self._classify_with_llm(topic)

    async def _classify_with_llm(self, topic: str) -> bool:
        try:
            response = await self.chat_client.complete(
                [user_message(CLASSIFIER_PROMPT.format(topic=topic))],
                max_tokens=5,
            )
        except Exception as exc:
            # Classifier outages reject the topic instead of failing the request.
            logger.error("topic_classifier_failed topic=%s error=%s", topic, exc)
            return False
        is_valid = "YES" in (response or "").strip().upper()
        logger.debug("topic_valid source=llm topic=%s result=%s", topic, is_valid)
        return is_valid

    def get_invalid_topic_message(self, topic: str) -> str:
        return get_invalid_topic_message(topic)
