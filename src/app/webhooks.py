import json
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from pydantic import ValidationError as PayloadValidationError

from src.app.schemas import IdentityWebhookEvent
from src.core.security import verify_identity_webhook_signature
from src.domain.roles.sync import RoleSynchronizer
from src.domain.roles.tasks import ROLES_QUEUE
from src.domain.users.router import get_synchronizer

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])

# event type -> arq task name
EVENT_TASKS: dict[str, str] = {
    "user.created": "sync_identity_user_task",
    "user.updated": "sync_identity_user_task",
    "user.deleted": "soft_delete_user_task",
}


@router.post("/identity")
async def identity_webhook_ingress(
    request: Request,
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
    raw_body: bytes = Depends(verify_identity_webhook_signature),
) -> dict[str, str]:
    """Receives validated identity-provider events and dispatches them to the roles queue.

    A ``user.updated`` event that carries a role is also applied inline, so the
    database and this process's permission cache follow identity-side role edits.
    """
    try:
        event = IdentityWebhookEvent.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, PayloadValidationError) as e:
        logger.error(f"Failed to parse identity webhook payload: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload.") from e

    task_name = EVENT_TASKS.get(event.type)
    user_id = event.data.get("id")
    logger.debug(f"Identity webhook event {event.type} for {user_id}")

    if task_name is None:
        logger.info(f"Ignoring unhandled identity event type: {event.type}")
        return {"status": "ignored"}

    if not user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Event is missing a user id.")

    arq_pool = getattr(request.app.state, "arq_pool", None)
    if not arq_pool:
        logger.error("ARQ pool is not bound to application state. Cannot enqueue.")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Queue unavailable.")

    job = await arq_pool.enqueue_job(task_name, user_id, _queue_name=ROLES_QUEUE)
    if job:
        logger.info(f"Enqueued {task_name} for {user_id} (Job ID: {job.job_id})")
    else:
        # arq returns None when a job with the same id is already queued
        logger.warning(f"Redis rejected job enqueue for {user_id} ({task_name}).")

    if event.type == "user.updated" and (event.data.get("public_metadata") or {}).get("role") is not None:
        result = await synchronizer.apply_identity_role_update(user_id)
        if result is not None and result.changed:
            logger.info(f"Applied identity-side role update for {user_id}: {result.role.value}")

    return {"status": "accepted"}
