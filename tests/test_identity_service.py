from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.errors import ErrorKind
from app.models import Account, AccountRole, Department, EmployeeProfile, ManagerProfile
from app.schemas import EmployeeProfileCreate, ManagerProfileCreate
from app.security import create_password_credential, decode_access_token
from app.services import identity
from app.services.notifications import NotificationChannel, NotificationMessage
from app.services.otp import _as_utc
from app.settings import get_settings

_TEST_ENV = {
    "JWT_SECRET": "identity-test-secret",
    "PASSWORD_HASH_ROUNDS": "1000",
    "REGISTRATION_REQUIRES_VERIFICATION": "false",
}


class _RecordingChannel(NotificationChannel):
    configured = True

    def __init__(self) -> None:
        self.messages: list[NotificationMessage] = []

    def send(self, message: NotificationMessage):  # type: ignore[no-untyped-def]
        self.messages.append(message)
        return {"mode": "sent", "sent": len(message.recipients), "recipients": list(message.recipients)}


class _BrokenChannel(NotificationChannel):
    def send(self, message: NotificationMessage):  # type: ignore[no-untyped-def]
        raise ConnectionRefusedError("smtp down")


def _session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _seed_manager(
    db: Session,
    *,
    manager_id: int = 7,
    department_id: int = 1,
    username: str = "boss",
    email: str = "boss@x.com",
    password: str = "BossPass123!",
    appointed: bool = True,
) -> ManagerProfile:
    department = Department(id=department_id, name=f"Department {department_id}")
    password_hash, password_salt = create_password_credential(password)
    account = Account(
        id=manager_id,
        username=username,
        email=email,
        role=AccountRole.MANAGER,
        password_hash=password_hash,
        password_salt=password_salt,
        is_verified=True,
        otp_resend_count=0,
    )
    manager = ManagerProfile(
        id=manager_id,
        department_id=department_id,
        is_appointed=appointed,
        full_name="Big Boss",
        salary=100,
        email=email,
    )
    db.add_all([department, account, manager])
    db.commit()
    return manager


def _employee_profile(manager_id: int = 7) -> EmployeeProfileCreate:
    return EmployeeProfileCreate(manager_id=manager_id, full_name="Alice Doe", salary=50, age=30)


class IdentityServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, _TEST_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()
        self.session_factory = _session_factory()
        self.db = self.session_factory()
        self.channel = _RecordingChannel()
        _seed_manager(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self._env.stop()
        get_settings.cache_clear()

    def _register_alice(self, **overrides):  # type: ignore[no-untyped-def]
        params = {
            "username": "alice",
            "email": "alice@x.com",
            "password": "AlicePass123!",
            "profile": _employee_profile(),
            "notifier": self.channel,
        }
        params.update(overrides)
        return identity.register(self.db, **params)

    def _account_count(self) -> int:
        return int(self.db.scalar(select(func.count()).select_from(Account)) or 0)

    def _account(self, email: str = "alice@x.com") -> Account:
        account = self.db.scalar(select(Account).where(Account.email == email))
        assert account is not None
        return account


class RegistrationTests(IdentityServiceTestCase):
    def test_register_employee_creates_account_and_profile(self) -> None:
        result = self._register_alice()

        self.assertTrue(result.success, result.message)
        account_id = result.data["account_id"]
        account = self.db.get(Account, account_id)
        self.assertIsNotNone(account)
        self.assertEqual(account.role, AccountRole.EMPLOYEE)
        self.assertTrue(account.is_verified)
        self.assertNotEqual(account.password_hash, "AlicePass123!")
        profile = self.db.get(EmployeeProfile, account_id)
        self.assertIsNotNone(profile)
        self.assertEqual(profile.manager_id, 7)

    def test_register_sends_welcome_without_password(self) -> None:
        self._register_alice()

        self.assertEqual(len(self.channel.messages), 1)
        message = self.channel.messages[0]
        self.assertEqual(message.recipients, ["alice@x.com"])
        self.assertIn("alice", message.body)
        self.assertNotIn("AlicePass123!", message.body)

    def test_register_rejects_malformed_email(self) -> None:
        result = self._register_alice(email="not-an-email")

        self.assertFalse(result.success)
        self.assertEqual(result.kind, ErrorKind.VALIDATION_ERROR)
        self.assertEqual(self._account_count(), 1)

    def test_register_same_username_any_case_conflicts(self) -> None:
        self.assertTrue(self._register_alice().success)

        result = self._register_alice(username="ALICE", email="other@x.com")

        self.assertFalse(result.success)
        self.assertEqual(result.kind, ErrorKind.CONFLICT)
        matching = self.db.scalar(
            select(func.count()).select_from(Account).where(func.lower(Account.username) == "alice")
        )
        self.assertEqual(matching, 1)

    def test_register_same_email_any_case_conflicts(self) -> None:
        self.assertTrue(self._register_alice().success)

        result = self._register_alice(username="alice2", email="Alice@X.com")

        self.assertEqual(result.kind, ErrorKind.CONFLICT)
        self.assertEqual(self._account_count(), 2)

    def test_register_employee_with_unknown_manager_rolls_back(self) -> None:
        result = self._register_alice(profile=_employee_profile(manager_id=99))

        self.assertFalse(result.success)
        self.assertEqual(result.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(self._account_count(), 1)
        self.assertIsNone(self.db.scalar(select(Account).where(Account.username == "alice")))

    def test_register_employee_under_vacant_manager_is_rejected(self) -> None:
        _seed_manager(self.db, manager_id=8, department_id=2, username="gone", email="gone@x.com", appointed=False)

        result = self._register_alice(profile=_employee_profile(manager_id=8))

        self.assertEqual(result.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(self._account_count(), 2)

    def test_register_manager_for_assigned_department_conflicts_without_account(self) -> None:
        before = self._account_count()

        result = identity.register(
            self.db,
            username="newboss",
            email="newboss@x.com",
            password="NewBoss123!",
            profile=ManagerProfileCreate(department_id=1, full_name="New Boss"),
            notifier=self.channel,
        )

        self.assertFalse(result.success)
        self.assertEqual(result.kind, ErrorKind.CONFLICT)
        self.assertEqual(self._account_count(), before)
        self.assertEqual(self.channel.messages, [])

    def test_register_manager_for_unknown_department(self) -> None:
        result = identity.register(
            self.db,
            username="newboss",
            email="newboss@x.com",
            password="NewBoss123!",
            profile=ManagerProfileCreate(department_id=42, full_name="New Boss"),
            notifier=self.channel,
        )

        self.assertEqual(result.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(self._account_count(), 1)

    def test_register_manager_for_free_department(self) -> None:
        self.db.add(Department(id=3, name="Research"))
        self.db.commit()

        result = identity.register(
            self.db,
            username="newboss",
            email="newboss@x.com",
            password="NewBoss123!",
            profile=ManagerProfileCreate(department_id=3, full_name="New Boss"),
            notifier=self.channel,
        )

        self.assertTrue(result.success, result.message)
        manager = self.db.get(ManagerProfile, result.data["account_id"])
        self.assertIsNotNone(manager)
        self.assertTrue(manager.is_appointed)
        self.assertEqual(manager.department_id, 3)

    def test_notification_failure_does_not_undo_registration(self) -> None:
        result = self._register_alice(notifier=_BrokenChannel())

        self.assertTrue(result.success)
        self.assertEqual(self._account_count(), 2)

    def test_registration_with_verification_issues_initial_code(self) -> None:
        with patch.dict(os.environ, {"REGISTRATION_REQUIRES_VERIFICATION": "true"}, clear=False):
            get_settings.cache_clear()
            before = datetime.now(timezone.utc)
            result = self._register_alice()

        self.assertTrue(result.success)
        account = self._account()
        self.assertFalse(account.is_verified)
        self.assertIsNotNone(account.otp_code)
        expires_at = _as_utc(account.otp_expires_at)
        self.assertLessEqual(expires_at - before, timedelta(minutes=2, seconds=5))
        self.assertGreater(expires_at - before, timedelta(minutes=1, seconds=55))
        self.assertIn(account.otp_code, self.channel.messages[0].body)

    def test_racing_duplicate_insert_is_a_neutral_conflict(self) -> None:
        self.assertTrue(self._register_alice().success)

        # The lookup misses the earlier row, as it would for a concurrent writer.
        with patch("app.services.identity._identity_conflict", return_value=None):
            result = self._register_alice(email="alice2@x.com")

        self.assertFalse(result.success)
        self.assertEqual(result.kind, ErrorKind.CONFLICT)
        self.assertEqual(result.message, "Account or department already exists.")
        self.assertEqual(self._account_count(), 2)

    def test_unexpected_store_failure_becomes_internal_result(self) -> None:
        with patch(
            "app.services.identity._find_by_username",
            side_effect=OperationalError("SELECT 1", {}, Exception("database is gone")),
        ):
            result = self._register_alice()

        self.assertFalse(result.success)
        self.assertEqual(result.kind, ErrorKind.INTERNAL)
        self.assertNotIn("database is gone", result.message)


class LoginTests(IdentityServiceTestCase):
    def test_login_returns_token_for_correct_password(self) -> None:
        account_id = self._register_alice().data["account_id"]

        result = identity.login(self.db, username="alice", password="AlicePass123!")

        self.assertTrue(result.success)
        self.assertTrue(result.data["access_token"])
        claims = decode_access_token(result.data["access_token"])
        self.assertEqual(claims["sub"], str(account_id))
        self.assertEqual(claims["role"], "Employee")
        self.assertEqual(claims["username"], "alice")

    def test_login_username_is_case_insensitive(self) -> None:
        self._register_alice()

        result = identity.login(self.db, username="Alice", password="AlicePass123!")

        self.assertTrue(result.success)

    def test_login_wrong_password(self) -> None:
        self._register_alice()

        result = identity.login(self.db, username="alice", password="WrongPass123!")

        self.assertFalse(result.success)
        self.assertEqual(result.kind, ErrorKind.INVALID_CREDENTIAL)

    def test_login_unknown_user(self) -> None:
        result = identity.login(self.db, username="nobody", password="whatever")

        self.assertEqual(result.kind, ErrorKind.NOT_FOUND)

    def test_vacant_manager_login_looks_like_unknown_user(self) -> None:
        self.assertTrue(identity.login(self.db, username="boss", password="BossPass123!").success)
        self.assertTrue(identity.delete_account(self.db, account_id=7).success)

        vacant = identity.login(self.db, username="boss", password="BossPass123!")
        unknown = identity.login(self.db, username="nobody", password="BossPass123!")

        self.assertFalse(vacant.success)
        self.assertEqual(vacant.kind, unknown.kind)
        self.assertEqual(vacant.message, unknown.message)

    def test_vacant_manager_with_wrong_password_looks_like_unknown_user(self) -> None:
        self.assertTrue(identity.delete_account(self.db, account_id=7).success)

        vacant = identity.login(self.db, username="boss", password="WrongPass123!")
        unknown = identity.login(self.db, username="nobody", password="WrongPass123!")

        self.assertEqual(vacant.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(vacant.message, unknown.message)


class OneTimeCodeFlowTests(IdentityServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.assertTrue(self._register_alice().success)
        self.channel.messages.clear()

    def _latest_code(self) -> str:
        code = self._account().otp_code
        assert code is not None
        return code

    def test_forgot_password_issues_three_minute_code_and_hides_it(self) -> None:
        before = datetime.now(timezone.utc)

        result = identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)

        self.assertTrue(result.success)
        account = self._account()
        self.assertFalse(account.is_verified)
        code = self._latest_code()
        self.assertNotIn(code, result.message)
        self.assertIsNone(result.data)
        window = _as_utc(account.otp_expires_at) - before
        self.assertGreater(window, timedelta(minutes=2, seconds=55))
        self.assertLessEqual(window, timedelta(minutes=3, seconds=5))
        self.assertEqual(len(self.channel.messages), 1)
        self.assertIn(code, self.channel.messages[0].body)

    def test_verify_succeeds_once_then_code_is_spent(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        code = self._latest_code()

        first = identity.verify(self.db, email="alice@x.com", code=code)
        second = identity.verify(self.db, email="alice@x.com", code=code)

        self.assertTrue(first.success)
        account = self._account()
        self.assertTrue(account.is_verified)
        self.assertIsNone(account.otp_code)
        self.assertFalse(second.success)
        self.assertEqual(second.kind, ErrorKind.INVALID_CODE)

    def test_verify_wrong_code(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        code = self._latest_code()
        wrong = "0" * len(code) if code != "0" * len(code) else "1" * len(code)

        result = identity.verify(self.db, email="alice@x.com", code=wrong)

        self.assertEqual(result.kind, ErrorKind.INVALID_CODE)
        self.assertEqual(self._account().otp_code, code)

    def test_verify_correct_code_after_expiry(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        account = self._account()
        code = self._latest_code()
        account.otp_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        self.db.commit()

        result = identity.verify(self.db, email="alice@x.com", code=code)

        self.assertEqual(result.kind, ErrorKind.EXPIRED)
        account = self._account()
        self.assertFalse(account.is_verified)
        self.assertEqual(account.otp_code, code)

    def test_verify_rejects_malformed_and_unknown_email(self) -> None:
        self.assertEqual(identity.verify(self.db, email="bad", code="123456").kind, ErrorKind.VALIDATION_ERROR)
        self.assertEqual(identity.verify(self.db, email="ghost@x.com", code="123456").kind, ErrorKind.NOT_FOUND)

    def test_forgot_password_rejects_malformed_and_unknown_email(self) -> None:
        self.assertEqual(identity.forgot_password(self.db, email="bad@", notifier=self.channel).kind, ErrorKind.VALIDATION_ERROR)
        self.assertEqual(
            identity.forgot_password(self.db, email="ghost@x.com", notifier=self.channel).kind,
            ErrorKind.NOT_FOUND,
        )
        self.assertEqual(self.channel.messages, [])

    def test_resend_ceiling_blocks_resend_and_verify(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        for _ in range(3):
            self.assertTrue(identity.resend_code(self.db, email="alice@x.com", notifier=self.channel).success)
        self.assertEqual(self._account().otp_resend_count, 3)
        code = self._latest_code()

        resend = identity.resend_code(self.db, email="alice@x.com", notifier=self.channel)
        verify = identity.verify(self.db, email="alice@x.com", code=code)

        self.assertEqual(resend.kind, ErrorKind.RESEND_LIMIT_EXCEEDED)
        self.assertEqual(verify.kind, ErrorKind.RESEND_LIMIT_EXCEEDED)
        self.assertFalse(self._account().is_verified)

    def test_resend_replaces_code_and_reports_expiry(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)

        result = identity.resend_code(self.db, email="alice@x.com", notifier=self.channel)

        self.assertTrue(result.success)
        account = self._account()
        self.assertEqual(account.otp_resend_count, 1)
        self.assertIn(account.otp_code, self.channel.messages[-1].body)
        self.assertIn("expire", self.channel.messages[-1].body)

    def test_forgot_password_starts_a_fresh_resend_cycle(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        for _ in range(3):
            identity.resend_code(self.db, email="alice@x.com", notifier=self.channel)
        self.assertEqual(self._account().otp_resend_count, 3)

        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)

        self.assertEqual(self._account().otp_resend_count, 0)
        self.assertTrue(identity.resend_code(self.db, email="alice@x.com", notifier=self.channel).success)

    def test_successful_verify_resets_resend_counter(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        identity.resend_code(self.db, email="alice@x.com", notifier=self.channel)

        self.assertTrue(identity.verify(self.db, email="alice@x.com", code=self._latest_code()).success)

        self.assertEqual(self._account().otp_resend_count, 0)


class PasswordResetTests(IdentityServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.assertTrue(self._register_alice().success)

    def test_reset_before_verify_is_unverified(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)

        result = identity.reset_password(self.db, email="alice@x.com", new_password="BrandNew123!")

        self.assertEqual(result.kind, ErrorKind.UNVERIFIED)
        self.assertTrue(identity.login(self.db, username="alice", password="AlicePass123!").success)

    def test_reset_after_verify_swaps_password(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        code = self._account().otp_code
        self.assertTrue(identity.verify(self.db, email="alice@x.com", code=code).success)

        result = identity.reset_password(self.db, email="alice@x.com", new_password="BrandNew123!")

        self.assertTrue(result.success, result.message)
        account = self._account()
        self.assertIsNone(account.otp_code)
        self.assertIsNone(account.otp_expires_at)
        old_login = identity.login(self.db, username="alice", password="AlicePass123!")
        new_login = identity.login(self.db, username="alice", password="BrandNew123!")
        self.assertEqual(old_login.kind, ErrorKind.INVALID_CREDENTIAL)
        self.assertTrue(new_login.success)

    def test_reset_after_window_lapsed_is_expired(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        self.assertTrue(identity.verify(self.db, email="alice@x.com", code=self._account().otp_code).success)
        account = self._account()
        account.otp_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        self.db.commit()

        result = identity.reset_password(self.db, email="alice@x.com", new_password="BrandNew123!")

        self.assertEqual(result.kind, ErrorKind.EXPIRED)

    def test_reset_cannot_be_repeated_without_new_code(self) -> None:
        identity.forgot_password(self.db, email="alice@x.com", notifier=self.channel)
        identity.verify(self.db, email="alice@x.com", code=self._account().otp_code)
        self.assertTrue(identity.reset_password(self.db, email="alice@x.com", new_password="BrandNew123!").success)

        again = identity.reset_password(self.db, email="alice@x.com", new_password="Another123!")

        self.assertEqual(again.kind, ErrorKind.EXPIRED)

    def test_reset_requires_email(self) -> None:
        self.assertEqual(
            identity.reset_password(self.db, email=None, new_password="BrandNew123!").kind,
            ErrorKind.VALIDATION_ERROR,
        )
        self.assertEqual(
            identity.reset_password(self.db, email="ghost@x.com", new_password="BrandNew123!").kind,
            ErrorKind.NOT_FOUND,
        )


class AccountLifecycleTests(IdentityServiceTestCase):
    def test_delete_employee_removes_account_and_profile(self) -> None:
        account_id = self._register_alice().data["account_id"]

        result = identity.delete_account(self.db, account_id=account_id)

        self.assertTrue(result.success)
        self.db.expunge_all()
        self.assertIsNone(self.db.get(Account, account_id))
        self.assertIsNone(self.db.get(EmployeeProfile, account_id))

    def test_delete_manager_keeps_rows_and_vacates_seat(self) -> None:
        result = identity.delete_account(self.db, account_id=7)

        self.assertTrue(result.success)
        self.db.expunge_all()
        self.assertIsNotNone(self.db.get(Account, 7))
        manager = self.db.get(ManagerProfile, 7)
        self.assertIsNotNone(manager)
        self.assertFalse(manager.is_appointed)
        self.assertEqual(manager.department_id, 1)

    def test_delete_unknown_and_admin(self) -> None:
        self.assertEqual(identity.delete_account(self.db, account_id=404).kind, ErrorKind.NOT_FOUND)
        admin = identity.bootstrap_admin(self.db, username="root", email="root@x.com", password="RootPass123!")
        self.assertTrue(admin.success)

        result = identity.delete_account(self.db, account_id=admin.data["account_id"])

        self.assertEqual(result.kind, ErrorKind.VALIDATION_ERROR)

    def test_appoint_new_manager_reuses_account_id(self) -> None:
        self._register_alice()
        identity.delete_account(self.db, account_id=7)

        result = identity.appoint_new_manager(
            self.db,
            manager_id=7,
            username="carol",
            email="carol@x.com",
            password="CarolPass123!",
            full_name="Carol Smith",
            salary=120,
            age=41,
            phone="555-0101",
            address="1 Main St",
            notifier=self.channel,
        )

        self.assertTrue(result.success, result.message)
        self.assertEqual(result.data["account_id"], 7)
        self.db.expunge_all()
        account = self.db.get(Account, 7)
        manager = self.db.get(ManagerProfile, 7)
        self.assertEqual(account.username, "carol")
        self.assertTrue(manager.is_appointed)
        self.assertEqual(manager.full_name, "Carol Smith")
        self.assertEqual(self.db.get(EmployeeProfile, self._account().id).manager_id, 7)
        self.assertTrue(identity.login(self.db, username="carol", password="CarolPass123!").success)
        self.assertEqual(identity.login(self.db, username="boss", password="BossPass123!").kind, ErrorKind.NOT_FOUND)
        self.assertEqual(self.channel.messages[-1].recipients, ["carol@x.com"])
        self.assertNotIn("CarolPass123!", self.channel.messages[-1].body)

    def test_appoint_new_manager_unknown_id(self) -> None:
        result = identity.appoint_new_manager(
            self.db,
            manager_id=404,
            username="carol",
            email="carol@x.com",
            password="CarolPass123!",
            full_name="Carol Smith",
            notifier=self.channel,
        )

        self.assertEqual(result.kind, ErrorKind.NOT_FOUND)

    def test_appoint_new_manager_rejects_taken_username(self) -> None:
        self._register_alice()

        result = identity.appoint_new_manager(
            self.db,
            manager_id=7,
            username="ALICE",
            email="carol@x.com",
            password="CarolPass123!",
            full_name="Carol Smith",
            notifier=self.channel,
        )

        self.assertEqual(result.kind, ErrorKind.CONFLICT)
        self.db.expunge_all()
        self.assertEqual(self.db.get(Account, 7).username, "boss")

    def test_get_and_list_accounts_hide_credentials(self) -> None:
        account_id = self._register_alice().data["account_id"]

        single = identity.get_account(self.db, account_id=account_id)
        listing = identity.list_accounts(self.db)

        self.assertTrue(single.success)
        self.assertEqual(single.data.username, "alice")
        self.assertNotIn("password_hash", single.data.model_dump())
        self.assertEqual([item.id for item in listing.data], [7, account_id])
        self.assertEqual(identity.get_account(self.db, account_id=404).kind, ErrorKind.NOT_FOUND)


if __name__ == "__main__":
    unittest.main()
