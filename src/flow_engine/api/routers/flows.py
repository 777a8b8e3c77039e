"""
流程管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Body, status
from typing import List, Dict, Any
import logging

from ..models import FlowValidationResponse, DiagnosticModel, WorkspaceSummary, ErrorResponse
from ..dependencies import get_parser, get_workspaces
from ...core import FlowParser
from ...exceptions import FlowParseError


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=List[WorkspaceSummary])
async def list_flows(workspaces=Depends(get_workspaces)) -> List[WorkspaceSummary]:
    """列出已加载的工作区"""
    return [
        WorkspaceSummary(
            id=workspace.id,
            name=workspace.name,
            organization_id=workspace.organization_id,
            node_count=len(workspace.graph.nodes),
            edge_count=len(workspace.graph.edges)
        )
        for workspace in await workspaces.list()
    ]


@router.post(
    "/validate",
    response_model=FlowValidationResponse,
    responses={400: {"model": ErrorResponse}}
)
async def validate_flow(
    document: Dict[str, Any] = Body(..., description="流程文档"),
    parser: FlowParser = Depends(get_parser)
) -> FlowValidationResponse:
    """校验流程文档并返回诊断"""
    try:
        graph = parser.parse(document)
    except FlowParseError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "parse_error",
                "message": str(e)
            }
        )

    diagnostics = graph.validate()
    workspace = document.get("workspace", document)
    return FlowValidationResponse(
        valid=not diagnostics,
        workspace_id=str(workspace.get("id")) if workspace.get("id") is not None else None,
        node_count=len(graph.nodes),
        edge_count=len(graph.edges),
        diagnostics=[DiagnosticModel(**d.to_dict()) for d in diagnostics]
    )
