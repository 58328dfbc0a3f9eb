import re
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from errors import InvalidTokenError
from models import TokenType, User
from test_support import InMemoryTokenRepository
from token_service import TokenService, generate_otp, hash_otp

TTL = {TokenType.ACTIVATION: 15, TokenType.PASSWORD_RESET: 15}


def make_user(username: str = "ada") -> User:
    return User(username=username, email=f"{username}@example.com", password_hash="x")


class TestOtpHelpers(unittest.TestCase):
    def test_otp_is_six_digits(self):
        for _ in range(50):
            self.assertRegex(generate_otp(), r"^\d{6}$")

    def test_small_values_are_zero_padded(self):
        with mock.patch("token_service.secrets.randbelow", return_value=42):
            self.assertEqual(generate_otp(), "000042")

    def test_hash_is_peppered_and_stable(self):
        self.assertEqual(hash_otp("123456", "p"), hash_otp(" 123456 ", "p"))
        self.assertNotEqual(hash_otp("123456", "p"), hash_otp("123456", "q"))
        self.assertTrue(re.fullmatch(r"[0-9a-f]{64}", hash_otp("123456", "p")))


class TestTokenService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.repository = InMemoryTokenRepository()
        self.service = TokenService(self.repository, pepper="pepper", ttl_minutes=TTL)
        self.user = make_user()

    async def test_created_token_carries_plain_value_but_stores_hash(self):
        token = await self.service.create_activation_token(self.user)
        self.assertRegex(token.value, r"^\d{6}$")
        stored = self.repository.items[0]
        self.assertIsNone(stored.value)
        self.assertEqual(stored.token_hash, hash_otp(token.value, "pepper"))
        self.assertNotIn("value", stored.model_dump())
        self.assertAlmostEqual(
            (token.expires_at - token.created_at).total_seconds(), timedelta(minutes=15).total_seconds()
        )

    async def test_validate_and_consume_once(self):
        token = await self.service.create_activation_token(self.user)
        found = await self.service.validate_token(token.value, TokenType.ACTIVATION)
        self.assertIsNotNone(found)
        self.assertEqual(found.user_id, self.user.id)

        await self.service.mark_token_as_used(found)
        self.assertIsNotNone(found.used_at)
        self.assertIsNone(await self.service.validate_token(token.value, TokenType.ACTIVATION))

    async def test_wrong_type_does_not_validate(self):
        token = await self.service.create_password_reset_token(self.user)
        self.assertIsNone(await self.service.validate_token(token.value, TokenType.ACTIVATION))
        self.assertIsNotNone(await self.service.validate_token(token.value, TokenType.PASSWORD_RESET))

    async def test_new_token_supersedes_previous(self):
        with mock.patch("token_service.generate_otp", side_effect=["111111", "222222"]):
            first = await self.service.create_activation_token(self.user)
            second = await self.service.create_activation_token(self.user)
        self.assertEqual(len(self.repository.items), 1)
        self.assertIsNone(await self.service.validate_token(first.value, TokenType.ACTIVATION))
        self.assertIsNotNone(await self.service.validate_token(second.value, TokenType.ACTIVATION))

    async def test_superseding_keeps_other_types(self):
        await self.service.create_password_reset_token(self.user)
        await self.service.create_activation_token(self.user)
        await self.service.create_activation_token(self.user)
        types = sorted(t.type.value for t in self.repository.items)
        self.assertEqual(types, ["ACTIVATION", "PASSWORD_RESET"])

    async def test_expired_token_is_rejected(self):
        token = await self.service.create_activation_token(self.user)
        self.repository.items[0].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        self.assertIsNone(await self.service.validate_token(token.value, TokenType.ACTIVATION))

    async def test_blank_or_unknown_values(self):
        with mock.patch("token_service.generate_otp", side_effect=["555555"]):
            await self.service.create_activation_token(self.user)
        self.assertIsNone(await self.service.validate_token("", TokenType.ACTIVATION))
        self.assertIsNone(await self.service.validate_token("   ", TokenType.ACTIVATION))
        self.assertIsNone(await self.service.validate_token("111111", TokenType.ACTIVATION))
        self.assertIsNotNone(await self.service.validate_token(" 555555 ", TokenType.ACTIVATION))

    async def test_live_hash_collision_is_regenerated(self):
        other_user = make_user("grace")
        with mock.patch("token_service.generate_otp", side_effect=["333333"]):
            await self.service.create_activation_token(other_user)
        with mock.patch("token_service.generate_otp", side_effect=["333333", "444444"]):
            token = await self.service.create_activation_token(self.user)
        self.assertEqual(token.value, "444444")
        found = await self.service.validate_token("333333", TokenType.ACTIVATION)
        self.assertEqual(found.user_id, other_user.id)

    async def test_second_consumer_is_rejected(self):
        token = await self.service.create_activation_token(self.user)
        first = await self.service.validate_token(token.value, TokenType.ACTIVATION)
        second = await self.service.validate_token(token.value, TokenType.ACTIVATION)
        await self.service.mark_token_as_used(first)
        stored_used_at = self.repository.items[0].used_at
        with self.assertRaises(InvalidTokenError):
            await self.service.mark_token_as_used(second)
        self.assertEqual(self.repository.items[0].used_at, stored_used_at)
        self.assertIsNone(second.used_at)

    async def test_released_token_validates_again(self):
        token = await self.service.create_activation_token(self.user)
        found = await self.service.validate_token(token.value, TokenType.ACTIVATION)
        await self.service.mark_token_as_used(found)
        await self.service.release_token(found)
        self.assertIsNone(found.used_at)
        self.assertIsNone(self.repository.items[0].used_at)
        self.assertIsNotNone(await self.service.validate_token(token.value, TokenType.ACTIVATION))

    async def test_release_does_not_clear_another_claim(self):
        token = await self.service.create_activation_token(self.user)
        found = await self.service.validate_token(token.value, TokenType.ACTIVATION)
        found.used_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        self.repository.items[0].used_at = datetime.now(timezone.utc)
        await self.service.release_token(found)
        self.assertIsNotNone(self.repository.items[0].used_at)


if __name__ == "__main__":
    unittest.main()
