from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from app.models import AccountRole


class EmployeeProfileCreate(BaseModel):
    role: Literal["Employee"] = "Employee"
    manager_id: int = Field(ge=1)
    full_name: str = Field(min_length=1, max_length=255)
    salary: int = Field(default=0, ge=0)
    age: int | None = Field(default=None, ge=16, le=100)
    phone: str | None = Field(default=None, max_length=32)
    address: str | None = Field(default=None, max_length=512)
    designation: str | None = Field(default=None, max_length=255)


class ManagerProfileCreate(BaseModel):
    role: Literal["Manager"] = "Manager"
    department_id: int = Field(ge=1)
    full_name: str = Field(min_length=1, max_length=255)
    salary: int = Field(default=0, ge=0)
    age: int | None = Field(default=None, ge=16, le=100)
    phone: str | None = Field(default=None, max_length=32)
    address: str | None = Field(default=None, max_length=512)


ProfileCreate = Annotated[
    Union[EmployeeProfileCreate, ManagerProfileCreate],
    Field(discriminator="role"),
]


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=100)
    email: str = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    profile: ProfileCreate


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=128)


class EmailRequest(BaseModel):
    email: str = Field(max_length=255)


class VerifyRequest(BaseModel):
    email: str = Field(max_length=255)
    code: str = Field(min_length=1, max_length=16)


class ResetPasswordRequest(BaseModel):
    email: str | None = Field(default=None, max_length=255)
    new_password: str = Field(min_length=8, max_length=128)


class AppointManagerRequest(BaseModel):
    username: str = Field(min_length=3, max_length=100)
    email: str = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    full_name: str = Field(min_length=1, max_length=255)
    salary: int = Field(default=0, ge=0)
    age: int | None = Field(default=None, ge=16, le=100)
    phone: str | None = Field(default=None, max_length=32)
    address: str | None = Field(default=None, max_length=512)


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account_id: int
    role: AccountRole


class AccountRead(BaseModel):
    id: int
    username: str
    email: str
    role: AccountRole
    is_verified: bool
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PrincipalRead(BaseModel):
    account_id: int
    username: str
    role: AccountRole


class ServiceResponse(BaseModel):
    success: bool = True
    message: str
    data: Any = None
