"""User aggregate. Users are only ever registered; profile edits live elsewhere."""
from typing import Literal

from pydantic import BaseModel, field_validator

from ..aggregate import Aggregate, Command, EventPayload, register_event
from ..errors import InvariantViolation


class RegisterUser(Command):
    name: str
    email: str

    @field_validator("email")
    @classmethod
    def _looks_like_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value


@register_event
class UserCreated(EventPayload):
    event_type = "UserCreated"

    name: str
    email: str
    status: Literal["active"] = "active"


class UserState(BaseModel):
    name: str | None = None
    email: str | None = None
    status: str | None = None


class UserAggregate(Aggregate[UserState]):
    aggregate_type = "user"
    state_type = UserState

    def command_handlers(self):
        return {RegisterUser: self.register}

    def event_appliers(self):
        return {UserCreated.event_type: self._on_created}

    def register(self, command: RegisterUser):
        if self.exists:
            raise InvariantViolation(f"User {self.id} already exists.")
        self._record(UserCreated(name=command.name, email=command.email))

    def _on_created(self, event):
        data = UserCreated.from_event(event)
        self.state = UserState(name=data.name, email=data.email, status=data.status)
