"""Thread publishing endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from cleo_api.deps import current_owner, get_publish_service
from cleo_api.sse import stream_channel
from cleo_shared.errors import NotFound
from cleo_shared.publishing.state import ThreadPublishState

router = APIRouter(tags=["threads"])


@router.post("/threads/{thread_id}/publish")
async def publish_thread(thread_id: int, owner_id: int = Depends(current_owner)):
    """Publish every unposted member in order, replying to the previous one."""
    return stream_channel(get_publish_service().publish_thread(thread_id, owner_id))


@router.post("/threads/{thread_id}/retry")
async def retry_thread(thread_id: int, owner_id: int = Depends(current_owner)):
    """Resume a partially failed thread from its first unposted member."""
    return stream_channel(get_publish_service().retry_thread(thread_id, owner_id))


@router.get("/threads/{thread_id}/publish-state", response_model=ThreadPublishState)
async def thread_publish_state(thread_id: int, owner_id: int = Depends(current_owner)):
    try:
        return await get_publish_service().thread_state(thread_id, owner_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
