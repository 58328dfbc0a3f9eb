import unittest

from errors import (
    ConcurrentModificationError,
    InvalidQuestionIndexError,
    QuizFinishedError,
    QuizNotFoundError,
    QuizStateNotFoundError,
    QuizValidationError,
)
from models import QuestionType, Quiz, QuizQuestion
from quiz_engine import QuizService, is_answer_correct, normalize_true_false, validate_quiz
from test_support import InMemoryQuizRepository, InMemoryQuizStateRepository


def make_quiz(**overrides) -> Quiz:
    questions = overrides.pop(
        "questions",
        [
            QuizQuestion(
                question="What does APR stand for?",
                type=QuestionType.MULTIPLE_CHOICE,
                options=["Annual Percentage Rate", "Average Payment Ratio", "Asset Price Return"],
                correct_answer="Annual Percentage Rate",
                explanation="APR is the yearly cost of borrowing.",
            ),
            QuizQuestion(
                question="Diversification lowers unsystematic risk.",
                type=QuestionType.TRUE_FALSE,
                options=["True", "False"],
                correct_answer="True",
                explanation="Spreading holdings reduces company-specific risk.",
            ),
        ],
    )
    return Quiz(topic="Investing basics", questions=questions, chat_session_id="session-1", **overrides)


class _RacingStateRepository(InMemoryQuizStateRepository):
    """Loses the first ``conflicts`` version-checked writes."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.attempts = 0

    async def save_if_version(self, state):
        self.attempts += 1
        if self.attempts <= self.conflicts:
            return False
        return await super().save_if_version(state)


class TestAnswerNormalization(unittest.TestCase):
    def test_true_false_spellings(self):
        cases = {
            "TRUE": "true",
            " t ": "true",
            "Yes": "true",
            "y": "true",
            "1": "true",
            "false": "false",
            "F": "false",
            "no": "false",
            "N": "false",
            "0": "false",
            "maybe": "maybe",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(normalize_true_false(raw), expected)

    def test_multiple_choice_is_case_and_whitespace_insensitive(self):
        question = make_quiz().questions[0]
        self.assertTrue(is_answer_correct(question, "  annual percentage rate "))
        self.assertFalse(is_answer_correct(question, "Asset Price Return"))
        self.assertFalse(is_answer_correct(question, None))

    def test_true_false_uses_normalized_comparison(self):
        question = make_quiz().questions[1]
        self.assertTrue(is_answer_correct(question, "yes"))
        self.assertFalse(is_answer_correct(question, "0"))


class TestValidateQuiz(unittest.TestCase):
    def test_valid_quiz_passes(self):
        validate_quiz(make_quiz())

    def test_empty_quiz_rejected(self):
        with self.assertRaises(QuizValidationError) as ctx:
            validate_quiz(make_quiz(questions=[]))
        self.assertEqual(ctx.exception.message, "Quiz must contain at least one question")

    def test_blank_question_text_rejected(self):
        quiz = make_quiz()
        quiz.questions[1].question = "   "
        with self.assertRaises(QuizValidationError) as ctx:
            validate_quiz(quiz)
        self.assertIn("Question 2", ctx.exception.message)

    def test_multiple_choice_needs_two_options(self):
        quiz = make_quiz()
        quiz.questions[0].options = ["Annual Percentage Rate"]
        with self.assertRaises(QuizValidationError) as ctx:
            validate_quiz(quiz)
        self.assertIn("at least 2 options", ctx.exception.message)

    def test_correct_answer_must_be_an_option(self):
        quiz = make_quiz()
        quiz.questions[0].correct_answer = "Annual Payment Rate"
        with self.assertRaises(QuizValidationError):
            validate_quiz(quiz)

    def test_true_false_answer_must_be_boolean(self):
        quiz = make_quiz()
        quiz.questions[1].correct_answer = "Sometimes"
        with self.assertRaises(QuizValidationError):
            validate_quiz(quiz)


class TestQuizService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.quizzes = InMemoryQuizRepository()
        self.states = InMemoryQuizStateRepository()
        self.service = QuizService(self.quizzes, self.states, generator=None)
        self.quiz = make_quiz()
        await self.quizzes.insert(self.quiz)

    async def test_full_run_scores_first_submission_and_recomputes_on_finish(self):
        state = await self.service.start_quiz(self.quiz.id, "session-1")
        self.assertEqual(state.score, 0)
        self.assertFalse(state.is_finished)

        state = await self.service.submit_answer(state.id, 0, "Average Payment Ratio")
        self.assertEqual(state.score, 0)
        self.assertTrue(state.is_submitted[0])

        # Corrected answer does not change the running score.
        state = await self.service.submit_answer(state.id, 0, "Annual Percentage Rate")
        self.assertEqual(state.score, 0)
        self.assertEqual(state.user_answers[0], "Annual Percentage Rate")

        state = await self.service.submit_answer(state.id, 1, "yes")
        self.assertEqual(state.score, 1)

        state = await self.service.finish_quiz(state.id)
        self.assertTrue(state.is_finished)
        self.assertEqual(state.score, 2)

    async def test_wrong_true_false_answer_scores_nothing(self):
        quiz = make_quiz()
        quiz.questions[1].correct_answer = "False"
        quiz.questions = [quiz.questions[1]]
        await self.quizzes.insert(quiz)

        state = await self.service.start_quiz(quiz.id, "sess-1")
        self.assertEqual(state.user_answers, {})
        state = await self.service.submit_answer(state.id, 0, "True")
        self.assertEqual(state.score, 0)
        self.assertTrue(state.is_submitted[0])
        state = await self.service.finish_quiz(state.id)
        self.assertEqual(state.score, 0)
        self.assertTrue(state.is_finished)

    async def test_finish_is_idempotent(self):
        state = await self.service.start_quiz(self.quiz.id, None)
        await self.service.submit_answer(state.id, 1, "true")
        first = await self.service.finish_quiz(state.id)
        second = await self.service.finish_quiz(state.id)
        self.assertEqual(first.score, second.score)
        self.assertTrue(second.is_finished)

    async def test_start_uses_quiz_session_when_none_given(self):
        state = await self.service.start_quiz(self.quiz.id, None)
        self.assertEqual(state.chat_session_id, "session-1")
        self.assertEqual(state.current_question_index, 0)

    async def test_start_unknown_quiz(self):
        with self.assertRaises(QuizNotFoundError):
            await self.service.start_quiz("missing", None)

    async def test_submit_after_finish_rejected(self):
        state = await self.service.start_quiz(self.quiz.id, None)
        await self.service.submit_answer(state.id, 0, "Average Payment Ratio")
        await self.service.submit_answer(state.id, 1, "True")
        finished = await self.service.finish_quiz(state.id)
        self.assertEqual(finished.score, 1)

        with self.assertRaises(QuizFinishedError) as ctx:
            await self.service.submit_answer(state.id, 0, "Annual Percentage Rate")
        self.assertEqual(ctx.exception.message, "Cannot submit answer - quiz is already finished")

        stored = await self.service.get_quiz_state(state.id)
        self.assertEqual(stored.user_answers, {0: "Average Payment Ratio", 1: "True"})
        self.assertEqual(stored.score, 1)
        self.assertTrue(stored.is_finished)
        self.assertEqual(stored.version, finished.version)

    async def test_submit_invalid_index(self):
        state = await self.service.start_quiz(self.quiz.id, None)
        for index in (-1, 2):
            with self.subTest(index=index):
                with self.assertRaises(InvalidQuestionIndexError) as ctx:
                    await self.service.submit_answer(state.id, index, "True")
                self.assertEqual(ctx.exception.message, f"Invalid question index: {index}")

    async def test_submit_rejects_non_boolean_true_false_answer(self):
        state = await self.service.start_quiz(self.quiz.id, None)
        with self.assertRaises(QuizValidationError):
            await self.service.submit_answer(state.id, 1, "perhaps")
        stored = await self.service.get_quiz_state(state.id)
        self.assertEqual(stored.user_answers, {})

    async def test_unknown_state(self):
        with self.assertRaises(QuizStateNotFoundError):
            await self.service.submit_answer("missing", 0, "True")

    async def test_update_current_question_index(self):
        state = await self.service.start_quiz(self.quiz.id, None)
        state = await self.service.update_current_question_index(state.id, 1)
        self.assertEqual(state.current_question_index, 1)
        self.assertEqual((await self.service.get_quiz_state(state.id)).current_question_index, 1)

    async def test_lookups_by_session(self):
        state = await self.service.start_quiz(self.quiz.id, None)
        self.assertEqual((await self.service.get_quiz_by_session_id("session-1")).id, self.quiz.id)
        self.assertEqual((await self.service.get_quiz_state_by_session_id("session-1")).id, state.id)
        self.assertEqual((await self.service.find_latest_state_for_quiz(self.quiz.id)).id, state.id)
        with self.assertRaises(QuizNotFoundError):
            await self.service.get_quiz_by_session_id("other")

    async def test_save_streamed_quiz_rejects_malformed_json(self):
        with self.assertRaises(QuizValidationError) as ctx:
            await self.service.save_streamed_quiz("Budgeting", "session-2", "not json at all")
        self.assertEqual(ctx.exception.message, "Quiz JSON is malformed")

    async def test_save_streamed_quiz_persists(self):
        payload = (
            '{"questions": [{"question": "A budget tracks income and spending.", '
            '"type": "TRUE_FALSE", "options": ["True", "False"], "correctAnswer": "True", '
            '"explanation": "That is what a budget is for."}]}'
        )
        quiz = await self.service.save_streamed_quiz("Budgeting", "session-2", payload)
        self.assertEqual(quiz.topic, "Budgeting")
        self.assertEqual(quiz.chat_session_id, "session-2")
        self.assertIn(quiz.id, self.quizzes.items)


class TestConcurrentWrites(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.quizzes = InMemoryQuizRepository()
        self.quiz = make_quiz()
        await self.quizzes.insert(self.quiz)

    async def test_lost_race_is_retried(self):
        states = _RacingStateRepository(conflicts=1)
        service = QuizService(self.quizzes, states, generator=None, write_retries=3)
        state = await service.start_quiz(self.quiz.id, None)
        state = await service.submit_answer(state.id, 1, "True")
        self.assertEqual(state.score, 1)
        self.assertEqual(states.attempts, 2)

    async def test_gives_up_after_retries(self):
        states = _RacingStateRepository(conflicts=10)
        service = QuizService(self.quizzes, states, generator=None, write_retries=2)
        state = await service.start_quiz(self.quiz.id, None)
        with self.assertRaises(ConcurrentModificationError):
            await service.submit_answer(state.id, 0, "Annual Percentage Rate")
        self.assertEqual(states.attempts, 2)

    async def test_stale_version_is_not_written(self):
        states = InMemoryQuizStateRepository()
        service = QuizService(self.quizzes, states, generator=None)
        state = await service.start_quiz(self.quiz.id, None)
        stale = await states.find_by_id(state.id)
        await service.submit_answer(state.id, 1, "True")
        stale.score = 99
        self.assertFalse(await states.save_if_version(stale))
        self.assertEqual((await states.find_by_id(state.id)).score, 1)


if __name__ == "__main__":
    unittest.main()
