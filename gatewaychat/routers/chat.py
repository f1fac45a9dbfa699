"""Chat relay endpoints: drive the shared chat session over HTTP and WebSocket."""

import asyncio
import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from gatewaychat.schemas.chat import (
    ActionResponse,
    CancelRequest,
    ChatState,
    SendPromptRequest,
    SwitchAgentRequest,
)
from gatewaychat.services.chat_session import chat_session

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/state", response_model=ChatState)
async def get_state():
    return chat_session.state


@router.post("/connect", response_model=ChatState)
async def connect():
    await chat_session.connect()
    return chat_session.state


@router.post("/disconnect", response_model=ChatState)
async def disconnect():
    await chat_session.disconnect()
    return chat_session.state


@router.post("/send", response_model=ActionResponse)
async def send_prompt(data: SendPromptRequest):
    accepted = await chat_session.send_prompt(data.message, data.attachments)
    return ActionResponse(accepted=accepted, state=chat_session.state)


@router.post("/agents/switch", response_model=ActionResponse)
async def switch_agent(data: SwitchAgentRequest):
    accepted = await chat_session.switch_agent(data.agent_id)
    return ActionResponse(accepted=accepted, state=chat_session.state)


@router.post("/cancel", response_model=ActionResponse)
async def cancel(data: CancelRequest):
    accepted = chat_session.cancel_pending(data.reason)
    return ActionResponse(accepted=accepted, state=chat_session.state)


@router.websocket("/ws")
async def state_ws(ws: WebSocket):
    """Push a ``ChatState`` snapshot on connect and after every change.

    Only the newest snapshot matters, so a slow client skips stale ones.
    """
    await ws.accept()
    queue: asyncio.Queue[ChatState] = asyncio.Queue(maxsize=1)

    def push(state: ChatState) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(state)

    async def pump() -> None:
        while True:
            state = await queue.get()
            await ws.send_text(state.model_dump_json())

    unsubscribe = chat_session.subscribe(push)
    push(chat_session.state)
    sender = asyncio.create_task(pump())
    logger.info("Chat state WS connected")
    try:
        # Inbound text is ignored; receiving only surfaces the disconnect
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        logger.info("Chat state WS disconnected")
    finally:
        unsubscribe()
        sender.cancel()
        with contextlib.suppress(Exception, asyncio.CancelledError):
            await sender
