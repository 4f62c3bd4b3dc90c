from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from memory_relay.application.api.schema.chat import ChatCompletionRequest
from memory_relay.domain.orchestration.relay_service import RelayService

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_relay_service(request: Request) -> RelayService:
    return request.app.state.relay_service


@router.post("/v1/chat/completions")
async def chat_completions(body: ChatCompletionRequest, request: Request):
    """Relay a chat completion with long-term memory attached"""

    service = get_relay_service(request)
    result = await service.handle(
        messages=body.message_dicts(),
        conversation_id=body.conversation_id,
        stream=body.stream,
        passthrough=body.passthrough_fields()
    )

    if result.is_stream:
        # Settles upstream even when the body is never iterated
        return StreamingResponse(
            result.stream,
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
            background=BackgroundTask(result.aclose)
        )
    return JSONResponse(result.body)


@router.get("/health")
async def health_check():
    """Liveness check"""
    return {"status": "alive"}
