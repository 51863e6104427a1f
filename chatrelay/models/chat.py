from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

MESSAGE_MAX_LENGTH = 300


class Location(BaseModel):
    country: str | None = Field(default=None, pattern=r"^[A-Za-z]{2}$")
    region: str | None = None
    city: str | None = None

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str | None) -> str | None:
        return value.upper() if value else value


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    account_number: int = Field(alias="accountNumber", gt=0)
    player_id: str | None = Field(default=None, alias="playerId")
    player_username: str | None = Field(default=None, alias="playerUsername")
    session_id: str | None = Field(default=None, alias="sessionId")
    conversation_id: UUID | None = Field(default=None, alias="conversationId")
    source_client: str | None = Field(default=None, alias="sourceClient")
    gender: Literal["male", "female", "other", "unknown"] | None = None
    location: Location | None = None
    client_timestamp: str | int | None = Field(default=None, alias="clientTimestamp")

    @field_validator("player_id", mode="before")
    @classmethod
    def _stringify_player_id(cls, value: object) -> object:
        # numeric ids are accepted from clients that send them unquoted
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("player_id", "player_username", "source_client")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @property
    def country(self) -> str | None:
        return self.location.country if self.location else None


class RecommendationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_number: int = Field(alias="accountNumber", gt=0)
    roblox_user_id: int = Field(alias="robloxUserId", gt=0)
    ideas: str = Field(min_length=1, max_length=4000)
    source_type: str = Field(alias="sourceType", min_length=1, max_length=64)
