"""
Chat augmentation routes.

  POST   /api/chat/augment   - instruction/data messages for one turn
  POST   /api/chat/memory    - MEMORY_JSON snapshot for the conversation
  DELETE /api/chat/sessions  - forget every session's memory
"""

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Request
from pydantic import Field

from tabular_query.domain.base import CamelCaseModel
from tabular_query.domain.models import ChatContext, ChatMessage, Message
from tabular_query.nlq.intent_router import IntentRouter
from tabular_query.nlq.presenter import is_verbatim
from tabular_query.utils.log_utils import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class AugmentRequest(CamelCaseModel):
    """One chat turn: optional explicit text plus the visible history."""
    text: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    context: ChatContext = Field(default_factory=ChatContext)


class AugmentResponse(CamelCaseModel):
    messages: List[Message]
    verbatim: bool = False


class ClearResponse(CamelCaseModel):
    status: str
    cleared: int


def _intent_router(request: Request) -> IntentRouter:
    return request.app.state.intent_router


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/augment", response_model=AugmentResponse, response_model_by_alias=True)
async def augment(body: AugmentRequest, request: Request):
    """Classify the turn and return what the chat layer should see."""
    messages = await _intent_router(request).augment(body.text, body.messages, body.context)
    return AugmentResponse(messages=messages, verbatim=bool(messages) and is_verbatim(messages[0]))


@router.post("/memory", response_model=AugmentResponse, response_model_by_alias=True)
async def memory(body: AugmentRequest, request: Request):
    """Background memory; fetch failures still yield an (empty) snapshot."""
    message = await _intent_router(request).build_memory(body.messages, body.context)
    return AugmentResponse(messages=[message])


@router.post("/turn", response_model=AugmentResponse, response_model_by_alias=True)
async def turn(body: AugmentRequest, request: Request):
    """Memory snapshot and turn augmentation fetched concurrently, memory first."""
    intent_router = _intent_router(request)
    memory_message, messages = await asyncio.gather(
        intent_router.build_memory(body.messages, body.context),
        intent_router.augment(body.text, body.messages, body.context),
    )
    if messages and is_verbatim(messages[0]):
        return AugmentResponse(messages=messages, verbatim=True)
    return AugmentResponse(messages=[memory_message] + messages)


@router.delete("/sessions", response_model=ClearResponse)
async def clear_sessions(request: Request):
    sessions = _intent_router(request).sessions
    cleared = len(sessions.keys())
    sessions.clear()
    logger.info(f"[ChatRoutes] Cleared {cleared} sessions")
    return ClearResponse(status="ok", cleared=cleared)
