"""WebSocket message handlers for the Jódete card game.

Each handler corresponds to a single action type from the client.
handle_message validates the raw payload, dispatches via the HANDLERS dict
and turns any failure into an action_error for the sender only.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import WebSocket
from pydantic import ValidationError

from errors import GameError
from logging_config import room_id_var
from models.actions import (
    Action,
    CreateRoomAction,
    JoinRoomAction,
    parse_action,
)
from room import RoomManager

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"


@dataclass
class ConnectionContext:
    """State tracked per WebSocket connection."""

    websocket: WebSocket
    connection_id: str
    auth_user_id: Optional[str] = None


async def send_error(ctx: ConnectionContext, message: str, code: Optional[str] = None) -> None:
    payload = {"type": "action_error", "message": message}
    if code:
        payload["code"] = code
    await ctx.websocket.send_json(payload)


def _validation_message(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "Invalid action"
    first = details[0]
    if first["type"] in ("union_tag_invalid", "union_tag_not_found"):
        return "Unknown action type"
    field = ".".join(str(part) for part in first["loc"][1:])
    if field:
        return f"Invalid action: {field}: {first['msg']}"
    return f"Invalid action: {first['msg']}"


# ---------------------------------------------------------------------------
# Lobby / Room handlers
# ---------------------------------------------------------------------------

async def handle_list_rooms(action: Action, ctx: ConnectionContext, *, room_manager: RoomManager, **kw) -> None:
    await room_manager.send_rooms(ctx.connection_id)


async def handle_create_room(action: CreateRoomAction, ctx: ConnectionContext, *, room_manager: RoomManager, **kw) -> None:
    room = room_manager.create_room(action.room_name)
    await room_manager.join_room(
        ctx.connection_id,
        room.id,
        action.player_name,
        token=action.token,
        auth_user_id=ctx.auth_user_id,
    )


async def handle_join_room(action: JoinRoomAction, ctx: ConnectionContext, *, room_manager: RoomManager, **kw) -> None:
    await room_manager.join_room(
        ctx.connection_id,
        action.room_id,
        action.name,
        token=action.token,
        auth_user_id=ctx.auth_user_id,
    )


async def handle_leave_room(action: Action, ctx: ConnectionContext, *, room_manager: RoomManager, **kw) -> None:
    await room_manager.leave_room(ctx.connection_id, voluntary=True)


# ---------------------------------------------------------------------------
# Match handlers
# ---------------------------------------------------------------------------

async def handle_match_action(action: Action, ctx: ConnectionContext, *, room_manager: RoomManager, **kw) -> None:
    await room_manager.dispatch(ctx.connection_id, action)


# ---------------------------------------------------------------------------
# Handler dispatch table
# ---------------------------------------------------------------------------

HANDLERS = {
    "list_rooms": handle_list_rooms,
    "create_room": handle_create_room,
    "join_room": handle_join_room,
    "leave_room": handle_leave_room,
    "start": handle_match_action,
    "play_card": handle_match_action,
    "draw_card": handle_match_action,
    "declare_last_card": handle_match_action,
    "call_jodete": handle_match_action,
    "reset": handle_match_action,
}


async def handle_message(data: object, ctx: ConnectionContext, *, room_manager: RoomManager, **kw) -> None:
    """
    Validate and handle one inbound message.

    Never raises for a bad or failing action: the sender gets an
    action_error and the connection stays open.
    """
    try:
        action = parse_action(data)
    except ValidationError as e:
        await send_error(ctx, _validation_message(e))
        return

    room = room_manager.find_connection_room(ctx.connection_id)
    room_token = room_id_var.set(room.id if room else None)
    try:
        await HANDLERS[action.type](action, ctx, room_manager=room_manager, **kw)
    except GameError as e:
        logger.debug(f"{action.type} rejected: {e.message}")
        await send_error(ctx, e.message, e.code)
    except Exception:
        logger.exception(f"Unhandled error in {action.type}")
        await send_error(ctx, INTERNAL_ERROR_MESSAGE)
    finally:
        room_id_var.reset(room_token)
