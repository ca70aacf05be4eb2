from __future__ import annotations

import functools
import logging
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import ErrorKind, ServiceResult
from app.models import Account, AccountRole, Department, EmployeeProfile, ManagerProfile
from app.schemas import AccountRead, EmployeeProfileCreate, ManagerProfileCreate
from app.security import create_access_token, create_password_credential, verify_password_credential
from app.services.notifications import (
    EmailChannel,
    NotificationChannel,
    build_manager_appointment_message,
    build_password_reset_message,
    build_resent_code_message,
    build_welcome_message,
    is_valid_email,
    safe_send,
)
from app.services.otp import OtpOutcome, consume_otp, is_otp_window_open, issue_otp, resend_otp
from app.settings import get_settings

logger = logging.getLogger("app.identity")

INTERNAL_FAILURE_MESSAGE = "An unexpected error occurred. Please try again later."

_OTP_FAILURES: dict[OtpOutcome, ServiceResult] = {
    OtpOutcome.RESEND_LIMIT_EXCEEDED: ServiceResult.fail(
        ErrorKind.RESEND_LIMIT_EXCEEDED, "Maximum code resend limit reached."
    ),
    OtpOutcome.INVALID_CODE: ServiceResult.fail(ErrorKind.INVALID_CODE, "Invalid code, please try again."),
    OtpOutcome.EXPIRED: ServiceResult.fail(ErrorKind.EXPIRED, "Your code has expired, please request a new one."),
}


def _service_boundary(action: str) -> Callable[[Callable[..., ServiceResult]], Callable[..., ServiceResult]]:
    """Turn any escaping exception into a rolled-back INTERNAL result."""

    def decorator(operation: Callable[..., ServiceResult]) -> Callable[..., ServiceResult]:
        @functools.wraps(operation)
        def wrapper(db: Session, **kwargs: Any) -> ServiceResult:
            try:
                return operation(db, **kwargs)
            except Exception:
                db.rollback()
                logger.exception("identity_operation_failed", extra={"action": action})
                return ServiceResult.fail(ErrorKind.INTERNAL, INTERNAL_FAILURE_MESSAGE)

        return wrapper

    return decorator


def _clean(value: str | None) -> str:
    return (value or "").strip()


def _find_by_username(db: Session, username: str) -> Account | None:
    return db.scalar(select(Account).where(func.lower(Account.username) == username.lower()))


def _find_by_email(db: Session, email: str) -> Account | None:
    return db.scalar(select(Account).where(func.lower(Account.email) == email.lower()))


def _invalid_email() -> ServiceResult:
    return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Invalid email address.")


def _email_not_found() -> ServiceResult:
    return ServiceResult.fail(ErrorKind.NOT_FOUND, "Email does not exist.")


def _identity_conflict(db: Session, *, username: str, email: str, exclude_id: int | None = None) -> ServiceResult | None:
    existing = _find_by_username(db, username)
    if existing is not None and existing.id != exclude_id:
        return ServiceResult.fail(ErrorKind.CONFLICT, "User already exists.")
    existing = _find_by_email(db, email)
    if existing is not None and existing.id != exclude_id:
        return ServiceResult.fail(ErrorKind.CONFLICT, "Email already exists.")
    return None


def _attach_profile(
    db: Session,
    account: Account,
    profile: EmployeeProfileCreate | ManagerProfileCreate,
) -> ServiceResult | None:
    if isinstance(profile, EmployeeProfileCreate):
        manager = db.get(ManagerProfile, profile.manager_id)
        if manager is None or not manager.is_appointed:
            return ServiceResult.fail(ErrorKind.NOT_FOUND, "Invalid manager ID. Manager not found.")
        db.add(
            EmployeeProfile(
                id=account.id,
                manager_id=manager.id,
                full_name=profile.full_name.strip(),
                salary=profile.salary,
                age=profile.age,
                email=account.email,
                phone=profile.phone,
                address=profile.address,
                designation=profile.designation,
            )
        )
    else:
        department = db.get(Department, profile.department_id)
        if department is None:
            return ServiceResult.fail(ErrorKind.NOT_FOUND, "Invalid department ID. Department not found.")
        existing_manager = db.scalar(
            select(ManagerProfile).where(ManagerProfile.department_id == profile.department_id)
        )
        if existing_manager is not None:
            return ServiceResult.fail(ErrorKind.CONFLICT, "Department is already associated with a manager.")
        db.add(
            ManagerProfile(
                id=account.id,
                department_id=department.id,
                is_appointed=True,
                full_name=profile.full_name.strip(),
                salary=profile.salary,
                age=profile.age,
                email=account.email,
                phone=profile.phone,
                address=profile.address,
            )
        )
    db.flush()
    return None


@_service_boundary("register")
def register(
    db: Session,
    *,
    username: str,
    email: str,
    password: str,
    profile: EmployeeProfileCreate | ManagerProfileCreate,
    notifier: NotificationChannel | None = None,
) -> ServiceResult:
    """Create an account and its role profile in one transaction.

    Admin accounts are not created here; see :func:`bootstrap_admin`.
    """
    settings = get_settings()
    username = _clean(username)
    email = _clean(email)
    if not is_valid_email(email):
        return _invalid_email()
    if not username:
        return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Username is required.")

    conflict = _identity_conflict(db, username=username, email=email)
    if conflict is not None:
        return conflict

    role = AccountRole.EMPLOYEE if isinstance(profile, EmployeeProfileCreate) else AccountRole.MANAGER
    password_hash, password_salt = create_password_credential(password)
    account = Account(
        username=username,
        email=email,
        role=role,
        password_hash=password_hash,
        password_salt=password_salt,
        is_verified=True,
        otp_resend_count=0,
    )
    verification_code: str | None = None
    if settings.registration_requires_verification:
        verification_code = issue_otp(
            account,
            ttl_minutes=settings.registration_otp_minutes,
            length=settings.otp_length,
        )

    try:
        db.add(account)
        db.flush()
        failure = _attach_profile(db, account, profile)
        if failure is not None:
            db.rollback()
            logger.info(
                "identity_register_rejected",
                extra={"username": username, "role": role.value, "reason": failure.kind.value if failure.kind else None},
            )
            return failure
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("identity_register_constraint_conflict", extra={"username": username, "role": role.value})
        return ServiceResult.fail(ErrorKind.CONFLICT, "Account or department already exists.")

    logger.info("identity_register_success", extra={"account_id": account.id, "role": role.value})
    safe_send(
        notifier or EmailChannel(),
        build_welcome_message(
            email=email,
            username=username,
            role_label=role.value.lower(),
            verification_code=verification_code,
        ),
    )
    return ServiceResult.ok(
        "User registered successfully.",
        data={"account_id": account.id, "role": role.value, "is_verified": account.is_verified},
    )


@_service_boundary("bootstrap_admin")
def bootstrap_admin(db: Session, *, username: str, email: str, password: str) -> ServiceResult:
    username = _clean(username)
    email = _clean(email)
    if not is_valid_email(email):
        return _invalid_email()
    if not username:
        return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Username is required.")

    conflict = _identity_conflict(db, username=username, email=email)
    if conflict is not None:
        return conflict

    password_hash, password_salt = create_password_credential(password)
    account = Account(
        username=username,
        email=email,
        role=AccountRole.ADMIN,
        password_hash=password_hash,
        password_salt=password_salt,
        is_verified=True,
        otp_resend_count=0,
    )
    try:
        db.add(account)
        db.commit()
    except IntegrityError:
        db.rollback()
        return ServiceResult.fail(ErrorKind.CONFLICT, "User already exists.")
    logger.info("identity_admin_bootstrapped", extra={"account_id": account.id})
    return ServiceResult.ok("Admin account created.", data={"account_id": account.id})


@_service_boundary("login")
def login(db: Session, *, username: str, password: str) -> ServiceResult:
    account = _find_by_username(db, _clean(username))
    if account is None:
        return ServiceResult.fail(ErrorKind.NOT_FOUND, "User not found.")
    if account.role == AccountRole.MANAGER:
        manager = db.get(ManagerProfile, account.id)
        if manager is None or not manager.is_appointed:
            # Checked before the password: a vacant seat answers exactly like an unknown user.
            return ServiceResult.fail(ErrorKind.NOT_FOUND, "User not found.")
    if not verify_password_credential(password, account.password_hash, account.password_salt):
        return ServiceResult.fail(ErrorKind.INVALID_CREDENTIAL, "Incorrect password.")

    token, expires_in, _claims = create_access_token(account)
    return ServiceResult.ok(
        "Login successful.",
        data={
            "access_token": token,
            "expires_in": expires_in,
            "account_id": account.id,
            "role": AccountRole(account.role).value,
        },
    )


@_service_boundary("verify")
def verify(db: Session, *, email: str, code: str) -> ServiceResult:
    email = _clean(email)
    if not is_valid_email(email):
        return _invalid_email()
    account = _find_by_email(db, email)
    if account is None:
        return _email_not_found()

    outcome = consume_otp(account, code, max_resends=get_settings().otp_max_resends)
    if outcome is not OtpOutcome.VERIFIED:
        return _OTP_FAILURES[outcome]

    db.commit()
    return ServiceResult.ok("Verification successful.")


@_service_boundary("forgot_password")
def forgot_password(db: Session, *, email: str, notifier: NotificationChannel | None = None) -> ServiceResult:
    settings = get_settings()
    email = _clean(email)
    if not is_valid_email(email):
        return _invalid_email()
    account = _find_by_email(db, email)
    if account is None:
        return _email_not_found()

    # A forgot-password request opens a new verification cycle.
    account.otp_resend_count = 0
    code = issue_otp(account, ttl_minutes=settings.password_reset_otp_minutes, length=settings.otp_length)
    db.commit()

    safe_send(
        notifier or EmailChannel(),
        build_password_reset_message(email=account.email, code=code, ttl_minutes=settings.password_reset_otp_minutes),
    )
    return ServiceResult.ok("Please check your email for the one-time code.")


@_service_boundary("resend_otp")
def resend_code(db: Session, *, email: str, notifier: NotificationChannel | None = None) -> ServiceResult:
    settings = get_settings()
    email = _clean(email)
    if not is_valid_email(email):
        return _invalid_email()
    account = _find_by_email(db, email)
    if account is None:
        return _email_not_found()

    outcome, code = resend_otp(
        account,
        ttl_minutes=settings.password_reset_otp_minutes,
        max_resends=settings.otp_max_resends,
        length=settings.otp_length,
    )
    if outcome is not OtpOutcome.ISSUED or code is None:
        return _OTP_FAILURES[OtpOutcome.RESEND_LIMIT_EXCEEDED]
    expires_at = account.otp_expires_at
    db.commit()

    if expires_at is not None:
        safe_send(
            notifier or EmailChannel(),
            build_resent_code_message(email=account.email, code=code, expires_at=expires_at),
        )
    return ServiceResult.ok("A new code has been sent.")


@_service_boundary("reset_password")
def reset_password(db: Session, *, email: str | None, new_password: str) -> ServiceResult:
    email = _clean(email)
    if not email:
        return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Email is required.")
    account = _find_by_email(db, email)
    if account is None:
        return ServiceResult.fail(ErrorKind.NOT_FOUND, "Invalid email address.")
    if not account.is_verified:
        return ServiceResult.fail(ErrorKind.UNVERIFIED, "Account is not verified.")
    if not is_otp_window_open(account):
        return ServiceResult.fail(ErrorKind.EXPIRED, "Your code has expired.")

    account.password_hash, account.password_salt = create_password_credential(new_password)
    account.otp_code = None
    account.otp_expires_at = None
    db.commit()
    logger.info("identity_password_reset", extra={"account_id": account.id})
    return ServiceResult.ok("Password changed successfully.")


@_service_boundary("delete_account")
def delete_account(db: Session, *, account_id: int) -> ServiceResult:
    account = db.get(Account, account_id)
    if account is None:
        return ServiceResult.fail(ErrorKind.NOT_FOUND, "User not found.")

    if account.role == AccountRole.EMPLOYEE:
        if account.employee_profile is not None:
            db.delete(account.employee_profile)
        db.delete(account)
        db.commit()
        logger.info("identity_employee_deleted", extra={"account_id": account_id})
        return ServiceResult.ok("User deleted successfully.")

    if account.role == AccountRole.MANAGER:
        manager = db.get(ManagerProfile, account_id)
        if manager is None:
            return ServiceResult.fail(ErrorKind.NOT_FOUND, "Manager profile not found.")
        manager.is_appointed = False
        db.commit()
        logger.info("identity_manager_vacated", extra={"account_id": account_id, "department_id": manager.department_id})
        return ServiceResult.ok("Manager removed. The department is now vacant.")

    return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Admin accounts cannot be deleted.")


@_service_boundary("appoint_new_manager")
def appoint_new_manager(
    db: Session,
    *,
    manager_id: int,
    username: str,
    email: str,
    password: str,
    full_name: str,
    salary: int = 0,
    age: int | None = None,
    phone: str | None = None,
    address: str | None = None,
    notifier: NotificationChannel | None = None,
) -> ServiceResult:
    """Re-credential a manager seat in place, keeping its account id."""
    manager = db.get(ManagerProfile, manager_id)
    account = db.get(Account, manager_id)
    if manager is None or account is None:
        return ServiceResult.fail(ErrorKind.NOT_FOUND, "Manager not found.")

    username = _clean(username)
    email = _clean(email)
    if not is_valid_email(email):
        return _invalid_email()
    if not username:
        return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Username is required.")
    conflict = _identity_conflict(db, username=username, email=email, exclude_id=account.id)
    if conflict is not None:
        return conflict

    account.username = username
    account.email = email
    account.password_hash, account.password_salt = create_password_credential(password)
    account.is_verified = True
    account.otp_code = None
    account.otp_expires_at = None
    account.otp_resend_count = 0

    manager.full_name = full_name.strip()
    manager.salary = salary
    manager.age = age
    manager.email = email
    manager.phone = phone
    manager.address = address
    manager.is_appointed = True

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return ServiceResult.fail(ErrorKind.CONFLICT, "User already exists.")

    logger.info("identity_manager_appointed", extra={"account_id": account.id, "department_id": manager.department_id})
    department_name = manager.department.name if manager.department is not None else None
    safe_send(
        notifier or EmailChannel(),
        build_manager_appointment_message(email=email, username=username, department_name=department_name),
    )
    return ServiceResult.ok("Manager appointed successfully.", data={"account_id": account.id})


@_service_boundary("get_account")
def get_account(db: Session, *, account_id: int) -> ServiceResult:
    account = db.get(Account, account_id)
    if account is None:
        return ServiceResult.fail(ErrorKind.NOT_FOUND, "User not found.")
    return ServiceResult.ok("User retrieved successfully.", data=AccountRead.model_validate(account))


@_service_boundary("list_accounts")
def list_accounts(db: Session) -> ServiceResult:
    accounts = db.scalars(select(Account).order_by(Account.id.asc())).all()
    return ServiceResult.ok(
        "Users retrieved successfully.",
        data=[AccountRead.model_validate(account) for account in accounts],
    )
