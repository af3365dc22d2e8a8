"""WebSocket implementation of the subscription message channel"""
import logging

import websockets

from sources.base import ChannelError, DecodeError

logger = logging.getLogger(__name__)


class WebSocketChannel:
    """
    MessageChannel on top of a websockets client connection.

    Translates websockets exceptions into ChannelError so the session
    controller does not depend on the transport library.
    """

    def __init__(self, websocket):
        self.websocket = websocket

    async def send(self, message: str) -> None:
        try:
            await self.websocket.send(message)
        except (websockets.ConnectionClosed, OSError) as e:
            raise ChannelError(f"Socket closed while sending: {e}") from e

    async def recv(self) -> str:
        try:
            message = await self.websocket.recv()
        except websockets.ConnectionClosed as e:
            raise ChannelError(f"Socket closed while expecting data: {e}") from e
        if isinstance(message, bytes):
            try:
                message = message.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"Binary message is not UTF-8: {e}") from e
        return message

    async def close(self) -> None:
        await self.websocket.close(code=1000, reason="Done")


async def connect_websocket(
    url: str,
    subprotocol: str,
    headers: dict[str, str]
) -> WebSocketChannel:
    """
    Open the subscription WebSocket.

    The caller bounds the whole attempt with its own deadline, so the
    library's open timeout is disabled.
    """
    headers = dict(headers)
    # websockets sends its own User-Agent unless told otherwise
    user_agent = headers.pop("User-Agent", None)
    try:
        websocket = await websockets.connect(
            url,
            subprotocols=[subprotocol],
            additional_headers=headers,
            user_agent_header=user_agent,
            open_timeout=None
        )
    except (websockets.InvalidHandshake, websockets.InvalidURI, OSError) as e:
        raise ChannelError(f"Cannot connect to {url}: {e}") from e

    logger.debug(f"WebSocket open, subprotocol {websocket.subprotocol}")
    return WebSocketChannel(websocket)
