"""Tweet publishing endpoints.

Publish and retry respond with a ``text/event-stream`` of progress events,
one ``data: {json}`` frame per event, ending with ``complete`` or ``error``.
"""

from fastapi import APIRouter, Depends, HTTPException

from cleo_api.deps import current_owner, get_publish_service
from cleo_api.sse import stream_channel
from cleo_shared.errors import NotFound
from cleo_shared.publishing.state import PostPublishState

router = APIRouter(tags=["tweets"])


@router.post("/tweets/{post_id}/publish")
async def publish_tweet(post_id: int, owner_id: int = Depends(current_owner)):
    """Publish a tweet. Thread members publish through their thread."""
    channel = await get_publish_service().publish_post(post_id, owner_id)
    return stream_channel(channel)


@router.post("/tweets/{post_id}/retry")
async def retry_tweet(post_id: int, owner_id: int = Depends(current_owner)):
    """Retry a failed tweet from pending."""
    channel = await get_publish_service().retry_post(post_id, owner_id)
    return stream_channel(channel)


@router.get("/tweets/{post_id}/publish-state", response_model=PostPublishState)
async def tweet_publish_state(post_id: int, owner_id: int = Depends(current_owner)):
    try:
        return await get_publish_service().post_state(post_id, owner_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
