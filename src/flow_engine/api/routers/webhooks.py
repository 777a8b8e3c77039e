"""
Webhook 入站 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Request, status
import json
import logging

from ..models import WebhookResponse, WebhookInfoResponse
from ..dependencies import get_session_manager, get_workspaces
from ...core import SessionManager, InboundMessage
from ...exceptions import (
    WorkspaceNotFoundError, SessionNotFoundError, NoTriggerError, FlowEngineError
)


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{workspace_id}", response_model=WebhookResponse)
async def receive_webhook(
    workspace_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager)
) -> WebhookResponse:
    """接收渠道 webhook 并推进对应会话"""
    request.state.workspace_id = workspace_id
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_payload",
                "message": f"Request body is not valid JSON: {e}"
            }
        )

    logger.info(f"Webhook received for workspace {workspace_id}")
    inbound = InboundMessage.from_payload(payload, dict(request.headers))
    request.state.session_key = inbound.resume_session_id or inbound.session_key

    try:
        result = await manager.handle_inbound(workspace_id, inbound)
    except (WorkspaceNotFoundError, SessionNotFoundError, NoTriggerError) as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": str(e)
            }
        )
    except FlowEngineError as e:
        logger.error(f"Failed to process webhook for {workspace_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "processing_failed",
                "message": str(e)
            }
        )

    return WebhookResponse(**result.to_dict())


@router.get("/{workspace_id}", response_model=WebhookInfoResponse)
async def webhook_info(
    workspace_id: str,
    workspaces=Depends(get_workspaces)
) -> WebhookInfoResponse:
    """检查 webhook 地址对应的工作区是否存在"""
    workspace = await workspaces.get(workspace_id)
    if workspace is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Workspace '{workspace_id}' not found"
            }
        )
    return WebhookInfoResponse(
        workspace_id=workspace.id,
        message=f"Workspace '{workspace.name}' is ready to receive POST webhooks."
    )
