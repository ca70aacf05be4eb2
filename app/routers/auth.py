from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.audit import log_identity_event
from app.db import get_db
from app.errors import ApiError, ServiceResult
from app.models import AccountRole, AuditActorType
from app.schemas import (
    AppointManagerRequest,
    AuthResponse,
    EmailRequest,
    LoginRequest,
    PrincipalRead,
    RegisterRequest,
    ResetPasswordRequest,
    ServiceResponse,
    VerifyRequest,
)
from app.security import principal_account_id, require_account, require_roles
from app.services import identity

router = APIRouter(prefix="/api/auth", tags=["auth"])

require_admin = require_roles(AccountRole.ADMIN)


def _unwrap(result: ServiceResult) -> ServiceResponse:
    if not result.success:
        raise ApiError.from_result(result)
    return ServiceResponse(success=True, message=result.message, data=result.data)


def _admin_actor(claims: dict[str, Any]) -> str:
    return str(claims.get("username") or claims.get("sub") or "admin")


@router.post("/register", response_model=ServiceResponse)
def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)) -> ServiceResponse:
    result = identity.register(
        db,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        profile=payload.profile,
    )
    log_identity_event(
        db,
        request,
        action="ACCOUNT_REGISTER",
        result=result,
        actor_id=payload.username,
        entity_id=(result.data or {}).get("account_id") if result.success else None,
    )
    return _unwrap(result)


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)) -> AuthResponse:
    result = identity.login(db, username=payload.username, password=payload.password)
    log_identity_event(
        db,
        request,
        action="ACCOUNT_LOGIN_SUCCESS" if result.success else "ACCOUNT_LOGIN_FAIL",
        result=result,
        actor_type=AuditActorType.ACCOUNT,
        actor_id=payload.username,
    )
    if not result.success:
        raise ApiError.from_result(result)
    request.state.actor = str(result.data["role"]).lower()
    request.state.actor_id = payload.username
    return AuthResponse(
        access_token=result.data["access_token"],
        expires_in=result.data["expires_in"],
        account_id=result.data["account_id"],
        role=AccountRole(result.data["role"]),
    )


@router.post("/verify", response_model=ServiceResponse)
def verify(payload: VerifyRequest, request: Request, db: Session = Depends(get_db)) -> ServiceResponse:
    result = identity.verify(db, email=payload.email, code=payload.code)
    log_identity_event(db, request, action="ACCOUNT_VERIFY", result=result, actor_id=payload.email)
    return _unwrap(result)


@router.post("/forgot-password", response_model=ServiceResponse)
def forgot_password(payload: EmailRequest, request: Request, db: Session = Depends(get_db)) -> ServiceResponse:
    result = identity.forgot_password(db, email=payload.email)
    log_identity_event(db, request, action="ACCOUNT_FORGOT_PASSWORD", result=result, actor_id=payload.email)
    return _unwrap(result)


@router.post("/resend-otp", response_model=ServiceResponse)
def resend_otp(payload: EmailRequest, request: Request, db: Session = Depends(get_db)) -> ServiceResponse:
    result = identity.resend_code(db, email=payload.email)
    log_identity_event(db, request, action="ACCOUNT_RESEND_OTP", result=result, actor_id=payload.email)
    return _unwrap(result)


@router.post("/reset-password", response_model=ServiceResponse)
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ServiceResponse:
    result = identity.reset_password(db, email=payload.email, new_password=payload.new_password)
    log_identity_event(
        db,
        request,
        action="ACCOUNT_RESET_PASSWORD",
        result=result,
        actor_id=payload.email or "anonymous",
    )
    return _unwrap(result)


@router.get("/me", response_model=PrincipalRead)
def me(claims: dict[str, Any] = Depends(require_account)) -> PrincipalRead:
    return PrincipalRead(
        account_id=principal_account_id(claims),
        username=str(claims.get("username") or ""),
        role=AccountRole(claims["role"]),
    )


@router.get("/users", response_model=ServiceResponse, dependencies=[Depends(require_admin)])
def list_users(db: Session = Depends(get_db)) -> ServiceResponse:
    return _unwrap(identity.list_accounts(db))


@router.get("/users/{account_id}", response_model=ServiceResponse, dependencies=[Depends(require_admin)])
def get_user(account_id: int, db: Session = Depends(get_db)) -> ServiceResponse:
    return _unwrap(identity.get_account(db, account_id=account_id))


@router.delete("/users/{account_id}", response_model=ServiceResponse)
def delete_user(
    account_id: int,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ServiceResponse:
    result = identity.delete_account(db, account_id=account_id)
    log_identity_event(
        db,
        request,
        action="ACCOUNT_DELETE",
        result=result,
        actor_type=AuditActorType.ADMIN,
        actor_id=_admin_actor(claims),
        entity_id=account_id,
    )
    return _unwrap(result)


@router.post("/managers/{manager_id}/appoint", response_model=ServiceResponse)
def appoint_manager(
    manager_id: int,
    payload: AppointManagerRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ServiceResponse:
    result = identity.appoint_new_manager(
        db,
        manager_id=manager_id,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        full_name=payload.full_name,
        salary=payload.salary,
        age=payload.age,
        phone=payload.phone,
        address=payload.address,
    )
    log_identity_event(
        db,
        request,
        action="MANAGER_APPOINT",
        result=result,
        actor_type=AuditActorType.ADMIN,
        actor_id=_admin_actor(claims),
        entity_id=manager_id,
    )
    return _unwrap(result)
