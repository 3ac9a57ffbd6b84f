"""
Chat Controller

Handles the OpenAI-compatible chat completion endpoint.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, StreamingResponse

from gcli_gateway.core.domain.chat import ChatRequest, ChatResponse
from gcli_gateway.core.services.chat_service import ChatService
from gcli_gateway.core.services.streaming import sse_event_stream

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


class ChatController:
    """Controller for chat-related endpoints."""

    def __init__(self, chat_service: ChatService) -> None:
        self._service = chat_service

    async def handle_chat_completion(self, request_data: ChatRequest) -> Response:
        """Handle a chat completion request.

        Args:
            request_data: The parsed request body

        Returns:
            A JSON response for ``stream=false``, otherwise a server-sent
            event stream terminated by ``data: [DONE]``
        """
        if logger.isEnabledFor(logging.INFO):
            logger.info(
                "Handling chat completion request: model=%s stream=%s messages=%d",
                request_data.model,
                request_data.stream,
                len(request_data.messages),
            )

        result = await self._service.chat_completion(request_data)
        if isinstance(result, ChatResponse):
            return JSONResponse(result.model_dump(exclude_none=True))

        # Closed by sse_event_stream, or by the background task when the body
        # is never read
        return StreamingResponse(
            sse_event_stream(result),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(result.aclose),
        )


def get_chat_controller(request: Request) -> ChatController:
    return request.app.state.chat_controller


@router.post("/v1/chat/completions")
async def chat_completions(
    request_data: ChatRequest,
    controller: ChatController = Depends(get_chat_controller),
) -> Response:
    return await controller.handle_chat_completion(request_data)
