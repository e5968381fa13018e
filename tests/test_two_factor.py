import unittest
from unittest.mock import AsyncMock

from sqlmodel import select

from qatrack.core.exceptions import (
    Conflict,
    InvalidCode,
    InvalidCredentials,
    NotFound,
    NoValidCode,
    PhoneNumberMissing,
    SmsDispatchError,
    ValidationFailed,
)
from qatrack.domain.users.models import TwoFactorCode, User
from qatrack.domain.users.two_factor import CODE_DIGITS, TwoFactorGate, TwoFactorState, generate_code
from tests.base import BaseTest, FrozenClock


class TestTwoFactorGate(BaseTest):
    """Test suite for the SMS one-time code login step."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.clock = FrozenClock()
        self.sms = AsyncMock(return_value=True)
        self.user = await self.create_user("alice")

    def gate(self, session) -> TwoFactorGate:
        return TwoFactorGate(session, self.issuer, sms=self.sms, clock=self.clock, code_ttl_seconds=300)

    async def enroll(self, phone: str = "+15550001") -> None:
        async with self.test_session_maker() as session:
            await self.gate(session).enroll(self.user.id, phone)

    def last_code(self) -> str:
        _, message = self.sms.await_args.args
        return message.split(": ")[1][:CODE_DIGITS]

    async def test_generated_codes_are_zero_padded_digits(self) -> None:
        for _ in range(50):
            code = generate_code()
            self.assertEqual(len(code), CODE_DIGITS)
            self.assertTrue(code.isdigit())

    async def test_login_without_2fa_issues_session_directly(self) -> None:
        async with self.test_session_maker() as session:
            outcome = await self.gate(session).begin_login("alice", "pw123456")

        self.assertFalse(outcome.requires_2fa)
        self.assertEqual(self.issuer.decode(outcome.token).id, self.user.id)
        self.sms.assert_not_awaited()

    async def test_wrong_password_never_reaches_the_code_step(self) -> None:
        await self.enroll()

        async with self.test_session_maker() as session:
            with self.assertRaises(InvalidCredentials):
                await self.gate(session).begin_login("alice", "nope-nope")

        self.sms.assert_not_awaited()

    async def test_enrolled_login_sends_code_and_verify_issues_session(self) -> None:
        await self.enroll()

        async with self.test_session_maker() as session:
            outcome = await self.gate(session).begin_login("alice", "pw123456")

        self.assertTrue(outcome.requires_2fa)
        self.assertIsNone(outcome.token)
        phone, message = self.sms.await_args.args
        self.assertEqual(phone, "+15550001")
        self.assertIn("will expire in 5 minutes", message)

        async with self.test_session_maker() as session:
            token = await self.gate(session).verify_code(self.user.id, self.last_code())

        self.assertEqual(self.issuer.decode(token).username, "alice")

    async def test_code_is_single_use(self) -> None:
        await self.enroll()
        async with self.test_session_maker() as session:
            gate = self.gate(session)
            await gate.send_code(self.user.id)
            code = self.last_code()
            await gate.verify_code(self.user.id, code)

            with self.assertRaises(NoValidCode):
                await gate.verify_code(self.user.id, code)

    async def test_expired_code_is_rejected(self) -> None:
        await self.enroll()
        async with self.test_session_maker() as session:
            gate = self.gate(session)
            await gate.send_code(self.user.id)
            self.clock.advance(seconds=301)

            with self.assertRaises(NoValidCode):
                await gate.verify_code(self.user.id, self.last_code())

    async def test_wrong_code_keeps_the_live_code(self) -> None:
        await self.enroll()
        async with self.test_session_maker() as session:
            gate = self.gate(session)
            await gate.send_code(self.user.id)
            code = self.last_code()
            wrong = f"{(int(code) + 1) % 10**CODE_DIGITS:0{CODE_DIGITS}d}"

            with self.assertRaises(InvalidCode):
                await gate.verify_code(self.user.id, wrong)

            self.assertTrue(await gate.verify_code(self.user.id, code))

    async def test_resend_supersedes_previous_code(self) -> None:
        await self.enroll()
        async with self.test_session_maker() as session:
            gate = self.gate(session)
            await gate.send_code(self.user.id)
            first = self.last_code()
            await gate.resend_code(self.user.id)
            second = self.last_code()

            rows = (await session.exec(select(TwoFactorCode).where(TwoFactorCode.user_id == self.user.id))).all()
            self.assertEqual(len(rows), 1)

            if first != second:
                with self.assertRaises(InvalidCode):
                    await gate.verify_code(self.user.id, first)
            self.assertTrue(await gate.verify_code(self.user.id, second))

    async def test_failed_dispatch_keeps_the_stored_code(self) -> None:
        await self.enroll()
        self.sms.return_value = False

        async with self.test_session_maker() as session:
            with self.assertRaises(SmsDispatchError):
                await self.gate(session).send_code(self.user.id)

        async with self.test_session_maker() as session:
            stored = (await session.exec(select(TwoFactorCode).where(TwoFactorCode.user_id == self.user.id))).one()
            self.assertEqual(stored.code, self.last_code())

    async def test_failed_login_dispatch_carries_the_challenge(self) -> None:
        await self.enroll()
        self.sms.return_value = False

        async with self.test_session_maker() as session:
            with self.assertRaises(SmsDispatchError) as ctx:
                await self.gate(session).begin_login("alice", "pw123456")

        self.assertEqual(ctx.exception.details, {"requires_2fa": True, "user_id": self.user.id})

        self.sms.return_value = True
        async with self.test_session_maker() as session:
            gate = self.gate(session)
            await gate.resend_code(ctx.exception.details["user_id"])
            self.assertTrue(await gate.verify_code(self.user.id, self.last_code()))

    async def test_blank_phone_number_is_rejected(self) -> None:
        async with self.test_session_maker() as session:
            with self.assertRaises(ValidationFailed):
                await self.gate(session).enroll(self.user.id, "   ")

        async with self.test_session_maker() as session:
            self.assertEqual(await self.gate(session).state(self.user.id), TwoFactorState.DISABLED)

    async def test_send_code_requires_enrollment(self) -> None:
        async with self.test_session_maker() as session:
            with self.assertRaises(NotFound):
                await self.gate(session).send_code(self.user.id)

    async def test_enabled_user_without_phone_cannot_receive_code(self) -> None:
        async with self.test_session_maker() as session:
            user = await session.get(User, self.user.id)
            user.is_2fa_enabled = True
            session.add(user)
            await session.commit()

            with self.assertRaises(PhoneNumberMissing):
                await self.gate(session).send_code(self.user.id)

    async def test_phone_number_is_unique_across_users(self) -> None:
        await self.enroll("+15550001")
        bob = await self.create_user("bob")

        async with self.test_session_maker() as session:
            with self.assertRaises(Conflict):
                await self.gate(session).enroll(bob.id, "+15550001")

    async def test_state_transitions(self) -> None:
        async with self.test_session_maker() as session:
            gate = self.gate(session)
            self.assertEqual(await gate.state(self.user.id), TwoFactorState.DISABLED)

            await gate.enroll(self.user.id, "+15550001")
            self.assertEqual(await gate.state(self.user.id), TwoFactorState.ENROLLED_AWAITING_CODE)
            self.sms.assert_not_awaited()

            await gate.send_code(self.user.id)
            self.assertEqual(await gate.state(self.user.id), TwoFactorState.CODE_PENDING)

            self.clock.advance(minutes=10)
            self.assertEqual(await gate.state(self.user.id), TwoFactorState.ENROLLED_AWAITING_CODE)

    async def test_reset_returns_to_password_only_login(self) -> None:
        await self.enroll()
        async with self.test_session_maker() as session:
            gate = self.gate(session)
            await gate.send_code(self.user.id)
            await gate.reset(self.user.id)

            self.assertEqual(await gate.state(self.user.id), TwoFactorState.DISABLED)
            outcome = await gate.begin_login("alice", "pw123456")

        self.assertFalse(outcome.requires_2fa)
        async with self.test_session_maker() as session:
            user = await session.get(User, self.user.id)
            self.assertIsNone(user.phone_number)
            self.assertIsNone((await session.exec(select(TwoFactorCode))).first())


if __name__ == "__main__":
    unittest.main()
