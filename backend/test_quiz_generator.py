import json
import unittest

from errors import QuizGenerationError, QuizValidationError, SearchError
from openai_helper import parse_llm_json_output
from quiz_engine import QuizService
from quiz_generator import QuizGenerator, build_quiz_prompt, is_recency_sensitive, parse_generated_quiz
from test_support import InMemoryQuizRepository, InMemoryQuizStateRepository, ScriptedChatClient
from topic_validator import TopicValidator

QUIZ_PAYLOAD = {
    "topic": "Compound interest",
    "questions": [
        {
            "question": "What is compound interest?",
            "type": "MULTIPLE_CHOICE",
            "options": ["Interest on interest", "A bank fee", "A tax", "A loan type"],
            "correctAnswer": "Interest on interest",
            "explanation": "You earn interest on previously earned interest.",
        },
        {
            "question": "Compound interest only applies to loans.",
            "type": "TRUE_FALSE",
            "options": ["True", "False"],
            "correctAnswer": "False",
            "explanation": "Savings accounts compound too.",
        },
    ],
}


class _StubSearchClient:
    def __init__(self, result=None, error=None):
        self.result = result or {"answer": "Rates rose in 2024.", "results": []}
        self.error = error
        self.queries = []

    @property
    def enabled(self):
        return True

    async def search(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.result


class TestPromptHelpers(unittest.TestCase):
    def test_recency_detection(self):
        self.assertTrue(is_recency_sensitive("Latest mortgage rates"))
        self.assertTrue(is_recency_sensitive("Stock market in 2025"))
        self.assertTrue(is_recency_sensitive("Immobilien aktuell"))
        self.assertFalse(is_recency_sensitive("What is a bond"))

    def test_prompt_includes_context_only_when_given(self):
        self.assertNotIn("CURRENT INFORMATION", build_quiz_prompt("Bonds"))
        prompt = build_quiz_prompt("Bonds", "Answer: yields are up")
        self.assertIn("CURRENT INFORMATION", prompt)
        self.assertIn("Answer: yields are up", prompt)

    def test_parse_accepts_fenced_output(self):
        raw = "```json\n" + json.dumps(QUIZ_PAYLOAD) + "\n```"
        quiz = parse_generated_quiz(raw, "fallback")
        self.assertEqual(quiz.topic, "Compound interest")
        self.assertEqual(len(quiz.questions), 2)
        self.assertEqual(quiz.questions[0].correct_answer, "Interest on interest")

    def test_parse_accepts_bare_question_list(self):
        quiz = parse_generated_quiz(json.dumps(QUIZ_PAYLOAD["questions"]), "Interest")
        self.assertEqual(quiz.topic, "Interest")
        self.assertEqual(len(quiz.questions), 2)

    def test_parse_ignores_surrounding_prose(self):
        raw = "Here is your quiz:\n" + json.dumps(QUIZ_PAYLOAD) + "\nGood luck!"
        self.assertEqual(len(parse_generated_quiz(raw, "fallback").questions), 2)

    def test_parse_patches_trailing_commas_and_cut_off_reply(self):
        self.assertEqual(parse_llm_json_output('{"questions": [1, 2,],}'), {"questions": [1, 2]})
        self.assertEqual(parse_llm_json_output('{"topic": "Bonds", "questions": [{"question": "Why'),
                         {"topic": "Bonds", "questions": [{"question": "Why"}]})

    def test_parse_rejects_text_without_json(self):
        for raw in ("", "   ", "I cannot help with that."):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    parse_llm_json_output(raw)


class TestQuizGenerator(unittest.IsolatedAsyncioTestCase):
    async def test_generates_quiz_for_finance_topic(self):
        client = ScriptedChatClient(json.dumps(QUIZ_PAYLOAD))
        generator = QuizGenerator(client, TopicValidator(client))
        quiz = await generator.generate_quiz("Compound interest")
        self.assertEqual(len(quiz.questions), 2)
        self.assertEqual(len(client.calls), 1)
        self.assertTrue(client.calls[0]["json_mode"])

    async def test_invalid_topic_raises_localized_validation_error(self):
        client = ScriptedChatClient("NO")
        generator = QuizGenerator(client, TopicValidator(client))
        with self.assertRaises(QuizValidationError) as ctx:
            await generator.generate_quiz("Pizza recipes")
        self.assertIn("Pizza recipes", ctx.exception.message)
        self.assertEqual(len(client.calls), 1)

    async def test_unparseable_output_is_generation_error(self):
        client = ScriptedChatClient("I cannot help with that.")
        generator = QuizGenerator(client, TopicValidator(client))
        with self.assertRaises(QuizGenerationError):
            await generator.generate_quiz("Compound interest")

    async def test_llm_failure_is_generation_error(self):
        client = ScriptedChatClient(RuntimeError("timeout"))
        generator = QuizGenerator(client, TopicValidator(client))
        with self.assertRaises(QuizGenerationError):
            await generator.generate_quiz("Compound interest")

    async def test_recent_topic_gets_search_context(self):
        client = ScriptedChatClient(json.dumps(QUIZ_PAYLOAD))
        search = _StubSearchClient()
        generator = QuizGenerator(client, TopicValidator(client), search)
        await generator.generate_quiz("Latest interest rate trends")
        self.assertEqual(search.queries, ["Latest interest rate trends"])
        self.assertIn("Rates rose in 2024.", client.calls[0]["messages"][1]["content"])

    async def test_search_failure_falls_back_to_plain_prompt(self):
        client = ScriptedChatClient(json.dumps(QUIZ_PAYLOAD))
        search = _StubSearchClient(error=SearchError())
        generator = QuizGenerator(client, TopicValidator(client), search)
        quiz = await generator.generate_quiz("Latest interest rate trends")
        self.assertEqual(len(quiz.questions), 2)
        self.assertNotIn("CURRENT INFORMATION", client.calls[0]["messages"][1]["content"])

    async def test_timeless_topic_skips_search(self):
        client = ScriptedChatClient(json.dumps(QUIZ_PAYLOAD))
        search = _StubSearchClient()
        generator = QuizGenerator(client, TopicValidator(client), search)
        await generator.generate_quiz("Compound interest")
        self.assertEqual(search.queries, [])


class TestQuizStreaming(unittest.IsolatedAsyncioTestCase):
    async def test_stream_relays_model_chunks(self):
        client = ScriptedChatClient(json.dumps(QUIZ_PAYLOAD))
        generator = QuizGenerator(client, TopicValidator(client))
        chunks = [chunk async for chunk in await generator.stream_quiz("Compound interest")]
        self.assertGreater(len(chunks), 1)
        quiz = parse_generated_quiz("".join(chunks), "Compound interest")
        self.assertEqual(len(quiz.questions), 2)
        self.assertTrue(client.calls[0]["stream"])
        self.assertIn("Compound interest", client.calls[0]["messages"][1]["content"])

    async def test_off_topic_is_rejected_before_streaming(self):
        client = ScriptedChatClient("NO")
        generator = QuizGenerator(client, TopicValidator(client))
        with self.assertRaises(QuizValidationError) as ctx:
            await generator.stream_quiz("Pizza recipes")
        self.assertIn("Pizza recipes", ctx.exception.message)
        self.assertEqual(len(client.calls), 1)

    async def test_broken_stream_is_generation_error(self):
        client = ScriptedChatClient(['{"questions": [', RuntimeError("connection reset")])
        generator = QuizGenerator(client, TopicValidator(client))
        stream = await generator.stream_quiz("Compound interest")
        received = []
        with self.assertRaises(QuizGenerationError):
            async for chunk in stream:
                received.append(chunk)
        self.assertEqual(received, ['{"questions": ['])

    async def test_recent_topic_stream_gets_search_context(self):
        client = ScriptedChatClient(json.dumps(QUIZ_PAYLOAD))
        search = _StubSearchClient()
        generator = QuizGenerator(client, TopicValidator(client), search)
        async for _chunk in await generator.stream_quiz("Latest interest rate trends"):
            pass
        self.assertIn("Rates rose in 2024.", client.calls[0]["messages"][1]["content"])


class TestQuizServiceGeneration(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.quizzes = InMemoryQuizRepository()
        self.states = InMemoryQuizStateRepository()

    def _service(self, *replies):
        client = ScriptedChatClient(*replies)
        generator = QuizGenerator(client, TopicValidator(client))
        return QuizService(self.quizzes, self.states, generator)

    async def test_generated_quiz_is_persisted_with_session(self):
        service = self._service(json.dumps(QUIZ_PAYLOAD))
        quiz = await service.generate_quiz("Compound interest", "session-9")
        stored = await self.quizzes.find_by_id(quiz.id)
        self.assertEqual(stored.chat_session_id, "session-9")

    async def test_invalid_topic_persists_nothing(self):
        service = self._service("NO")
        with self.assertRaises(QuizValidationError):
            await service.generate_quiz("Pizza recipes", "session-9")
        self.assertEqual(self.quizzes.items, {})

    async def test_structurally_broken_quiz_is_rejected(self):
        broken = json.loads(json.dumps(QUIZ_PAYLOAD))
        broken["questions"][0]["correctAnswer"] = "Something else"
        service = self._service(json.dumps(broken))
        with self.assertRaises(QuizValidationError):
            await service.generate_quiz("Compound interest", "session-9")
        self.assertEqual(self.quizzes.items, {})


if __name__ == "__main__":
    unittest.main()
