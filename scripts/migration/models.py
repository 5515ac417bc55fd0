"""Record shapes read from exports and written to the result files.

Input lines are validated with pydantic; anything that does not match
the model is reported as a ParseError for that line only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Auth0ExportedUser(BaseModel):
    """One user from the Auth0 bulk export job.

    Field names follow the "User Import / Export" extension defaults.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    user_id: str
    email: str
    email_verified: Any = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    provider: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    region: Optional[str] = None
    workos_user_id: Optional[str] = None

    @property
    def is_email_verified(self) -> bool:
        # The export writes booleans as either JSON booleans or strings
        return self.email_verified is True or self.email_verified == "true"

    def workos_metadata(self) -> dict[str, str]:
        metadata = {"auth0Sub": self.user_id}
        if self.region:
            metadata["region"] = self.region
        return metadata


class MigrationResult(BaseModel):
    """A Result Ledger line; also the input of the Auth0 back-fill replay."""

    model_config = ConfigDict(frozen=True)

    workos_user_id: str
    auth0_user_id: str
    created: bool


class PasswordIdentifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    value: str
    verified: bool = False


class Auth0PasswordRecord(BaseModel):
    """One line of the password hash export provided by Auth0 support."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str = Field(alias="_id")
    email: str
    password_hash: str = Field(alias="passwordHash")
    email_verified: Any = None
    tenant: Optional[str] = None
    connection: Optional[str] = None
    identifiers: list[PasswordIdentifier] = Field(default_factory=list)

    @property
    def auth0_user_id(self) -> str:
        return f"auth0|{self.id}"


class WorkOSUser(BaseModel):
    """The subset of a WorkOS user object the migration reads."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    email: str
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Per-record migration outcome
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Created:
    user: WorkOSUser


@dataclass(frozen=True)
class Updated:
    user: WorkOSUser


@dataclass(frozen=True)
class Unresolved:
    reason: str


Outcome = Union[Created, Updated, Unresolved]


# ----------------------------------------------------------------------
# Duplicate resolution
# ----------------------------------------------------------------------


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DuplicateCandidate(BaseModel):
    """A local account that shares its email with at least one other account.

    Column names match the CSV export of the application's users table.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str
    s_id: str = Field(alias="sId")
    username: str = ""
    email: str
    name: str = ""
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    created_at: str = Field(default="", alias="createdAt")
    updated_at: str = Field(default="", alias="updatedAt")
    provider: Optional[str] = None
    provider_id: Optional[str] = Field(default=None, alias="providerId")
    is_super_user: bool = Field(default=False, alias="isDustSuperUser")
    auth0_sub: Optional[str] = Field(default=None, alias="auth0Sub")
    workos_user_id: Optional[str] = Field(default=None, alias="workOSUserId")

    @field_validator("id", "s_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        # Database rows carry integer primary keys
        return str(value) if isinstance(value, int) else value

    @field_validator(
        "first_name", "last_name", "image_url", "provider", "provider_id",
        "auth0_sub", "workos_user_id", mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        # Empty CSV cells mean "not set"
        return None if value == "" else value

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _timestamp_to_str(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return "" if value is None else value

    @field_validator("is_super_user", mode="before")
    @classmethod
    def _parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)


class AuthoritativeAccount(BaseModel):
    """An Auth0 user as returned by the management API at resolution time."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: str
    email: str = ""
    last_login: Optional[str] = None
    last_ip: Optional[str] = None
    logins_count: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def last_login_at(self) -> Optional[datetime]:
        return _parse_timestamp(self.last_login)


Action = Literal["keep", "skip", "manual_review"]
ACTIONS: tuple[Action, ...] = ("keep", "manual_review", "skip")


class ResolutionDecision(BaseModel):
    """Disposition of one email group.

    Serialised with the key names the downstream id-update step reads.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    email: str
    duplicates: list[DuplicateCandidate]
    auth0_users: list[AuthoritativeAccount] = Field(default_factory=list, alias="auth0Users")
    user_to_keep: Optional[DuplicateCandidate] = Field(default=None, alias="userToKeep")
    auth0_user: Optional[AuthoritativeAccount] = Field(default=None, alias="auth0User")
    action: Action
    reason: str
    requires_manual_review: bool = Field(default=False, alias="requiresManualReview")

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True)
