"""
Inbound client actions.

Every WebSocket message is validated against this tagged union before it
reaches a handler. Unknown types, missing required fields and wrong field
types are rejected at the boundary, so the engine never sees them.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Action(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class ListRoomsAction(_Action):
    type: Literal["list_rooms"]


class CreateRoomAction(_Action):
    type: Literal["create_room"]
    room_name: Optional[str] = None
    player_name: Optional[str] = None
    token: Optional[str] = None


class JoinRoomAction(_Action):
    type: Literal["join_room"]
    room_id: str = Field(min_length=1)
    name: Optional[str] = None
    token: Optional[str] = None


class LeaveRoomAction(_Action):
    type: Literal["leave_room"]


class StartAction(_Action):
    type: Literal["start"]
    cards_per_player: Optional[int] = None


class PlayCardAction(_Action):
    type: Literal["play_card"]
    card_id: str = Field(min_length=1)
    chosen_suit: Optional[str] = None


class DrawCardAction(_Action):
    type: Literal["draw_card"]


class DeclareLastCardAction(_Action):
    type: Literal["declare_last_card"]


class CallJodeteAction(_Action):
    type: Literal["call_jodete"]
    target_id: str = Field(min_length=1)


class ResetAction(_Action):
    type: Literal["reset"]


Action = Annotated[
    Union[
        ListRoomsAction,
        CreateRoomAction,
        JoinRoomAction,
        LeaveRoomAction,
        StartAction,
        PlayCardAction,
        DrawCardAction,
        DeclareLastCardAction,
        CallJodeteAction,
        ResetAction,
    ],
    Field(discriminator="type"),
]

_action_adapter: TypeAdapter = TypeAdapter(Action)


def parse_action(data: object) -> Action:
    """
    Validate a raw message into an action model.

    Raises:
        pydantic.ValidationError: If the payload is not a valid action.
    """
    return _action_adapter.validate_python(data)
