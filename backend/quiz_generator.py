import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import QuizGenerationError, QuizValidationError
from models import GeneratedQuiz, Quiz
from openai_helper import ChatClient, parse_llm_json_output, system_message, user_message
from tavily_client import TavilySearchClient, format_search_results
from topic_validator import TopicValidator

logger = logging.getLogger(__name__)

QUESTION_COUNT = 5
GENERATION_FAILED_MESSAGE = "Could not generate a valid quiz. Please try again."

GENERATOR_SYSTEM_MESSAGE = (
    "You are Fined Mentor, a specialized financial education assistant. "
    "You write beginner quizzes about finance, investment, real estate and immobilien "
    "and you always answer with a single valid JSON object."
)

QUIZ_PROMPT_TEMPLATE = """TOPIC VALIDATION (CRITICAL):
You ONLY generate quizzes for topics related to finance, investment, real estate or immobilien.

LANGUAGE DETECTION (CRITICAL):
Detect the language of the topic "{topic}" (English, French or German) and write every question,
option and explanation in that language.

TASK: Generate a {count}-question beginner quiz on "{topic}".
{context_block}
OUTPUT FORMAT (return ONLY valid JSON, no markdown):
{{
  "topic": "{topic}",
  "questions": [
    {{
      "question": "What is compound interest?",
      "type": "MULTIPLE_CHOICE",
      "options": ["Interest on interest earned", "Simple interest rate", "Bank fee structure", "Investment loss"],
      "correctAnswer": "Interest on interest earned",
      "explanation": "Compound interest grows your money because you earn interest on previously earned interest."
    }},
    {{
      "question": "Diversification means putting all your money in one investment.",
      "type": "TRUE_FALSE",
      "options": ["True", "False"],
      "correctAnswer": "False",
      "explanation": "Diversification spreads investments across assets to reduce risk."
    }}
  ]
}}

REQUIREMENTS:
- Question mix: 3 MULTIPLE_CHOICE + 2 TRUE_FALSE, {count} questions in total
- EVERY question has ALL fields populated: question, type, options, correctAnswer, explanation
- MULTIPLE_CHOICE: exactly 4 distinct options
- TRUE_FALSE: options are exactly ["True", "False"] in every language and correctAnswer is "True" or "False";
  the question statement and explanation stay in the detected language
- correctAnswer MUST be copied exactly from the options array
- Explanations: 1-2 sentences, 8th-grade reading level
- No trick questions, no complex calculations, no jargon without definitions
"""

# Words hinting that the quiz needs fresh information from the web.
RECENCY_MARKERS = frozenset(
    {
        "latest", "current", "currently", "today", "recent", "news", "trend", "trends", "now",
        "actuel", "actuelle", "actuellement", "aujourd'hui", "récent", "récente", "tendance", "tendances",
        "aktuell", "aktuelle", "heute", "neueste", "neuesten",
    }
)
_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")
_WORD_RE = re.compile(r"[^\W_]+(?:'[^\W_]+)?", re.UNICODE)


def is_recency_sensitive(topic: str) -> bool:
    lowered = (topic or "").lower()
    if _YEAR_RE.search(lowered):
        return True
    return any(word in RECENCY_MARKERS for word in _WORD_RE.findall(lowered))


def build_quiz_prompt(topic: str, search_context: Optional[str] = None) -> str:
    context_block = ""
    if search_context:
        context_block = (
            "\nCURRENT INFORMATION (from a web search, use it where relevant):\n"
            f"{search_context}\n"
        )
    return QUIZ_PROMPT_TEMPLATE.format(topic=topic, count=QUESTION_COUNT, context_block=context_block)


def coerce_quiz_payload(payload: Any) -> Any:
    if isinstance(payload, list):
        # Some models return a bare question array instead of {"questions": [...]}.
        return {"questions": payload}
    if isinstance(payload, dict) and "questions" not in payload and isinstance(payload.get("quiz"), list):
        return {"topic": payload.get("topic"), "questions": payload["quiz"]}
    return payload


def parse_generated_quiz(raw: str, topic: str) -> Quiz:
    """Turn model (or client supplied) JSON into an unsaved Quiz.

    Raises ValueError or pydantic.ValidationError on malformed input.
    """
    payload = coerce_quiz_payload(parse_llm_json_output(raw))
    generated = GeneratedQuiz.model_validate(payload)
    return Quiz(topic=(generated.topic or topic).strip() or topic, questions=generated.questions)


class QuizGenerator:
    def __init__(
        self,
        chat_client: ChatClient,
        topic_validator: TopicValidator,
        search_client: Optional[TavilySearchClient] = None,
    ):
        self.chat_client = chat_client
        self.topic_validator = topic_validator
        self.search_client = search_client

    async def generate_quiz(self, topic: str) -> Quiz:
        logger.info("quiz_generation_started topic=%s", topic)
        await self._check_topic(topic)

        try:
            raw = await self.chat_client.complete(await self._quiz_messages(topic), json_mode=True)
            quiz = parse_generated_quiz(raw, topic)
        except (ValueError, PydanticValidationError) as exc:
            logger.error("quiz_generation_unparseable topic=%s error=%s", topic, exc)
            raise QuizGenerationError(GENERATION_FAILED_MESSAGE) from exc
        except Exception as exc:
            logger.exception("quiz_generation_failed topic=%s", topic)
            raise QuizGenerationError(GENERATION_FAILED_MESSAGE) from exc

        logger.info("quiz_generation_succeeded topic=%s questions=%s", topic, len(quiz.questions))
        return quiz

    async def stream_quiz(self, topic: str) -> AsyncIterator[str]:
        """Check the topic, then return an iterator over the raw quiz JSON as the model writes it.

        Topic rejection raises here, before any chunk is produced. The caller
        collects the chunks and persists the result through ``save_streamed_quiz``.
        """
        logger.info("quiz_stream_requested topic=%s", topic)
        await self._check_topic(topic)
        messages = await self._quiz_messages(topic)
        return self._relay_stream(topic, messages)

    async def _relay_stream(self, topic: str, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        chunks = 0
        try:
            async for chunk in self.chat_client.stream(messages):
                chunks += 1
                yield chunk
        except Exception as exc:
            logger.exception("quiz_stream_failed topic=%s chunks=%s", topic, chunks)
            raise QuizGenerationError(GENERATION_FAILED_MESSAGE) from exc
        logger.info("quiz_stream_finished topic=%s chunks=%s", topic, chunks)

    async def _check_topic(self, topic: str) -> None:
        if not await self.topic_validator.is_valid_topic(topic):
            logger.warning("quiz_topic_rejected topic=%s", topic)
            raise QuizValidationError(self.topic_validator.get_invalid_topic_message(topic))

    async def _quiz_messages(self, topic: str) -> List[Dict[str, str]]:
        search_context = await self._search_context(topic)
        return [
            system_message(GENERATOR_SYSTEM_MESSAGE),
            user_message(build_quiz_prompt(topic, search_context)),
        ]

    async def _search_context(self, topic: str) -> Optional[str]:
        if self.search_client is None or not self.search_client.enabled:
            return None
        if not is_recency_sensitive(topic):
            return None
        try:
            data = await self.search_client.search(topic)
        except Exception as exc:
            logger.warning("quiz_search_context_skipped topic=%s error=%s", topic, exc)
            return None
        return format_search_results(data)
