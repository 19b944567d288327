"""Control messages accepted on the push socket, discriminated by `action`."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter


class SubscribeCommand(BaseModel):
    action: Literal["subscribe"]
    user_id: str | None = None
    cadence_ms: int | None = None


class UnsubscribeCommand(BaseModel):
    action: Literal["unsubscribe"]
    subscription_id: str


class JoinRoomCommand(BaseModel):
    action: Literal["join-room"]
    user_id: str = Field(min_length=1)


class RecordAddedCommand(BaseModel):
    action: Literal["record-added"]
    user_id: str = Field(min_length=1)
    category: str = Field(min_length=1)
    value: str
    notes: str | None = None


class GetInsightsCommand(BaseModel):
    action: Literal["get-insights"]
    user_id: str = Field(min_length=1)
    days: int = Field(default=7, gt=0, le=365)


ControlCommand = Annotated[
    SubscribeCommand | UnsubscribeCommand | JoinRoomCommand | RecordAddedCommand | GetInsightsCommand,
    Field(discriminator="action"),
]

command_adapter: TypeAdapter[ControlCommand] = TypeAdapter(ControlCommand)

KNOWN_ACTIONS = frozenset(
    {"subscribe", "unsubscribe", "join-room", "record-added", "get-insights"}
)


class CreateUserRequest(BaseModel):
    id: str = Field(min_length=1)
    username: str = Field(min_length=1)


class CreateReminderRequest(BaseModel):
    title: str = Field(min_length=1)
    time_of_day: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    frequency: Literal["once", "daily", "weekly", "monthly", "custom"] = "daily"
    description: str | None = None
    category: str = "custom"
