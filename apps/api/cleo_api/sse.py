"""Server-Sent Events bridge for progress channels."""

from fastapi.responses import StreamingResponse

from cleo_shared.publishing.channel import ProgressChannel, to_sse

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def stream_channel(channel: ProgressChannel) -> StreamingResponse:
    """Stream events until the terminal one.

    If the client disconnects the channel is detached; the publish keeps
    running and its outcome stays readable through the publish-state endpoints.
    """

    async def generate():
        try:
            async for event in channel:
                yield to_sse(event)
        finally:
            channel.detach()

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)
