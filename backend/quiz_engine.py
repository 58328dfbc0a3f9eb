"""Quiz lifecycle: generation, runs (quiz states), answer scoring and finalization.

A quiz state moves Created -> InProgress -> Finished. Answers stay editable
until the run is finished. The running ``score`` only counts the first
submission of each question; ``finish_quiz`` recomputes it from scratch so
later edits are reflected in the final result.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import (
    ConcurrentModificationError,
    InvalidQuestionIndexError,
    QuizFinishedError,
    QuizGenerationError,
    QuizNotFoundError,
    QuizStateNotFoundError,
    QuizValidationError,
)
from models import QuestionType, Quiz, QuizQuestion, QuizState
from quiz_generator import QuizGenerator, parse_generated_quiz
from repositories import QuizRepository, QuizStateRepository

logger = logging.getLogger(__name__)

_TRUE_WORDS = frozenset({"yes", "y", "1"})
_FALSE_WORDS = frozenset({"no", "n", "0"})


def normalize_true_false(value: Optional[str]) -> str:
    """Map loose true/false spellings onto "true" / "false".

    Unrecognized input is returned lower-cased and trimmed, not rejected.
    """
    if value is None:
        return ""
    normalized = value.strip().lower()
    if normalized.startswith("t") or normalized in _TRUE_WORDS:
        return "true"
    if normalized.startswith("f") or normalized in _FALSE_WORDS:
        return "false"
    return normalized


def is_answer_correct(question: QuizQuestion, user_answer: Optional[str]) -> bool:
    if user_answer is None:
        return False
    if question.type == QuestionType.TRUE_FALSE:
        return normalize_true_false(user_answer) == normalize_true_false(question.correct_answer)
    return user_answer.strip().lower() == (question.correct_answer or "").strip().lower()


def _has_option(question: QuizQuestion, answer: str) -> bool:
    wanted = answer.strip().lower()
    return any(option is not None and option.strip().lower() == wanted for option in question.options)


def validate_quiz(quiz: Quiz) -> None:
    """Raise QuizValidationError when any question is structurally broken."""
    if not quiz.questions:
        raise QuizValidationError("Quiz must contain at least one question")

    for index, question in enumerate(quiz.questions):
        number = index + 1
        if not (question.question or "").strip():
            raise QuizValidationError(f"Question {number} has empty question text")
        if not (question.correct_answer or "").strip():
            raise QuizValidationError(f"Question {number} has no correct answer")

        if question.type == QuestionType.MULTIPLE_CHOICE:
            if len(question.options) < 2:
                raise QuizValidationError(
                    f"Multiple choice question {number} must have at least 2 options"
                )
            if not _has_option(question, question.correct_answer):
                raise QuizValidationError(
                    f"Question {number}: correct answer '{question.correct_answer}' is not among the options"
                )
        elif question.type == QuestionType.TRUE_FALSE:
            if normalize_true_false(question.correct_answer) not in {"true", "false"}:
                raise QuizValidationError(
                    f"True/false question {number} must have 'true' or 'false' as correct answer"
                )
            if not _has_option(question, question.correct_answer):
                raise QuizValidationError(
                    f"Question {number}: correct answer '{question.correct_answer}' is not among the options"
                )


def compute_score(quiz: Quiz, state: QuizState) -> int:
    return sum(
        1
        for index, question in enumerate(quiz.questions)
        if is_answer_correct(question, state.user_answers.get(index))
    )


class QuizService:
    def __init__(
        self,
        quiz_repository: QuizRepository,
        state_repository: QuizStateRepository,
        generator: QuizGenerator,
        write_retries: int = 3,
    ):
        self.quizzes = quiz_repository
        self.states = state_repository
        self.generator = generator
        self.write_retries = max(1, write_retries)

    async def generate_quiz(self, topic: str, chat_session_id: str) -> Quiz:
        try:
            quiz = await self.generator.generate_quiz(topic)
            quiz.chat_session_id = chat_session_id
            quiz.created_at = datetime.now(timezone.utc)
            validate_quiz(quiz)
            await self.quizzes.insert(quiz)
        except (QuizValidationError, QuizGenerationError):
            raise
        except Exception as exc:
            logger.exception("quiz_generate_failed topic=%s session_id=%s", topic, chat_session_id)
            raise QuizGenerationError("Failed to generate quiz") from exc
        logger.info("quiz_generated quiz_id=%s session_id=%s", quiz.id, chat_session_id)
        return quiz

    async def stream_quiz(self, topic: str) -> AsyncIterator[str]:
        return await self.generator.stream_quiz(topic)

    async def save_streamed_quiz(self, topic: str, chat_session_id: str, quiz_json: str) -> Quiz:
        """Validate and store a quiz whose JSON was produced outside this service."""
        try:
            quiz = parse_generated_quiz(quiz_json, topic)
        except (ValueError, PydanticValidationError) as exc:
            logger.warning("quiz_save_unparseable session_id=%s error=%s", chat_session_id, exc)
            raise QuizValidationError("Quiz JSON is malformed") from exc
        quiz.topic = topic
        quiz.chat_session_id = chat_session_id
        quiz.created_at = datetime.now(timezone.utc)
        validate_quiz(quiz)
        await self.quizzes.insert(quiz)
        logger.info("quiz_saved quiz_id=%s session_id=%s", quiz.id, chat_session_id)
        return quiz

    async def start_quiz(self, quiz_id: str, chat_session_id: Optional[str]) -> QuizState:
        quiz = await self.quizzes.find_by_id(quiz_id)
        if quiz is None:
            raise QuizNotFoundError(f"Quiz not found with id: {quiz_id}")
        state = QuizState(quiz_id=quiz.id, chat_session_id=chat_session_id or quiz.chat_session_id)
        await self.states.insert(state)
        logger.info("quiz_started quiz_id=%s state_id=%s", quiz.id, state.id)
        return state

    async def submit_answer(self, quiz_state_id: str, question_index: int, answer: str) -> QuizState:
        def reject_finished(state: QuizState) -> None:
            if state.is_finished:
                raise QuizFinishedError()

        def apply(state: QuizState, quiz: Quiz) -> None:
            if question_index < 0 or question_index >= len(quiz.questions):
                raise InvalidQuestionIndexError(question_index)
            question = quiz.questions[question_index]
            if question.type == QuestionType.TRUE_FALSE and normalize_true_false(answer) not in {"true", "false"}:
                raise QuizValidationError("Answer must be 'true' or 'false' for true/false questions")

            state.user_answers[question_index] = answer
            if not state.is_submitted.get(question_index, False):
                if is_answer_correct(question, answer):
                    state.score += 1
                state.is_submitted[question_index] = True

        state = await self._update_state(quiz_state_id, apply, needs_quiz=True, guard=reject_finished)
        logger.info(
            "quiz_answer_submitted state_id=%s index=%s score=%s",
            quiz_state_id,
            question_index,
            state.score,
        )
        return state

    async def finish_quiz(self, quiz_state_id: str) -> QuizState:
        def apply(state: QuizState, quiz: Quiz) -> None:
            state.score = compute_score(quiz, state)
            state.is_finished = True

        state = await self._update_state(quiz_state_id, apply, needs_quiz=True)
        logger.info("quiz_finished state_id=%s score=%s", quiz_state_id, state.score)
        return state

    async def update_current_question_index(self, quiz_state_id: str, index: int) -> QuizState:
        def apply(state: QuizState, _quiz: Optional[Quiz]) -> None:
            state.current_question_index = index

        return await self._update_state(quiz_state_id, apply, needs_quiz=False)

    async def get_quiz(self, quiz_id: str) -> Quiz:
        quiz = await self.quizzes.find_by_id(quiz_id)
        if quiz is None:
            raise QuizNotFoundError(f"Quiz not found with id: {quiz_id}")
        return quiz

    async def get_quiz_by_session_id(self, chat_session_id: str) -> Quiz:
        quiz = await self.quizzes.find_latest_by_session(chat_session_id)
        if quiz is None:
            raise QuizNotFoundError(f"Quiz not found for session: {chat_session_id}")
        return quiz

    async def get_quiz_state(self, quiz_state_id: str) -> QuizState:
        state = await self.states.find_by_id(quiz_state_id)
        if state is None:
            raise QuizStateNotFoundError(f"Quiz state not found with id: {quiz_state_id}")
        return state

    async def get_quiz_state_by_session_id(self, chat_session_id: str) -> QuizState:
        state = await self.states.find_latest_by_session(chat_session_id)
        if state is None:
            raise QuizStateNotFoundError(f"Quiz state not found for session: {chat_session_id}")
        return state

    async def find_latest_state_for_quiz(self, quiz_id: str) -> Optional[QuizState]:
        return await self.states.find_latest_by_quiz(quiz_id)

    async def _update_state(
        self,
        quiz_state_id: str,
        apply: Callable[[QuizState, Optional[Quiz]], None],
        needs_quiz: bool,
        guard: Optional[Callable[[QuizState], None]] = None,
    ) -> QuizState:
        """Load, mutate and version-check a quiz state, retrying lost races."""
        for attempt in range(1, self.write_retries + 1):
            state = await self.get_quiz_state(quiz_state_id)
            if guard is not None:
                guard(state)
            quiz = await self.get_quiz(state.quiz_id) if needs_quiz else None
            apply(state, quiz)
            if await self.states.save_if_version(state):
                return state
            logger.warning(
                "quiz_state_write_conflict state_id=%s attempt=%s/%s",
                quiz_state_id,
                attempt,
                self.write_retries,
            )
        raise ConcurrentModificationError()
