from typing import Annotated

from fastapi import Depends, Request, WebSocket

from storyforge.api.websocket import WebSocketManager
from storyforge.render.player import TimelinePlayer


def get_player(request: Request) -> TimelinePlayer:
    return request.app.state.player


def get_websocket_manager(websocket: WebSocket) -> WebSocketManager:
    return websocket.app.state.websocket_manager


Player = Annotated[TimelinePlayer, Depends(get_player)]
Connections = Annotated[WebSocketManager, Depends(get_websocket_manager)]
