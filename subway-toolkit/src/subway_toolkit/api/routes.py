"""
HTTP surface of a 'SubwayController'.

'build_router' binds one controller to a FastAPI 'APIRouter':

    GET    /path                  - display path of a branch (root branch if omitted)
    GET    /layout                - every branch with its layout, layout status and color
    POST   /layout                - recompute layouts ('?force=true' to skip the shape check)
    POST   /branches              - fork a branch at a node
    DELETE /branches/{branch_id}  - delete a childless branch
    DELETE /branches/{branch_id}/stream - abort the reply streaming on a branch
    POST   /messages              - send a message; the reply is streamed as server-sent events
    DELETE /nodes/{node_id}       - delete a leaf message

Toolkit exceptions are mapped onto status codes by 'raise_http'; transport
faults reported in an 'OperationResult' become 502 responses.
"""

from collections.abc import AsyncGenerator
from typing import Any, NoReturn

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from subway_toolkit.conversation_database.controller import (
    BranchInput,
    MessageInput,
    OperationResult,
    StreamingUpdate,
    SubwayController,
)
from subway_toolkit.conversation_database.data_models.branch import Branch, BranchLayout
from subway_toolkit.conversation_database.data_models.node import TimelineNode
from subway_toolkit.errors import (
    BranchNotDeletableError,
    BranchNotFoundError,
    DataIntegrityError,
    NodeNotDeletableError,
    NodeNotFoundError,
    StreamingInProgressError,
    SubwayError,
)
from subway_toolkit.layout.cache import LayoutStatus


class BranchView(BaseModel):
    branch: Branch
    layout: BranchLayout | None
    status: LayoutStatus
    color: str


def raise_http(exc: SubwayError) -> NoReturn:
    match exc:
        case BranchNotFoundError() | NodeNotFoundError():
            status = 404
        case StreamingInProgressError() | NodeNotDeletableError() | BranchNotDeletableError():
            status = 409
        case DataIntegrityError():
            status = 500
        case _:
            status = 400
    raise HTTPException(status_code=status, detail=str(exc)) from exc


def unwrap(result: OperationResult[Any]) -> Any:
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    return result.value


def format_event(update: StreamingUpdate) -> str:
    return f"event: {update.state}\ndata: {update.encode().decode()}\n\n"


def build_router(controller: SubwayController) -> APIRouter:
    router = APIRouter()

    @router.get("/path", response_model=list[TimelineNode])
    async def get_path(branch_id: str | None = None) -> list[TimelineNode]:
        try:
            return controller.get_display_path(branch_id)
        except SubwayError as exc:
            raise_http(exc)

    @router.get("/layout", response_model=list[BranchView])
    async def get_layout() -> list[BranchView]:
        layouts = controller.get_layout()
        return [
            BranchView(
                branch=branch,
                layout=layouts.get(branch.id),
                status=controller.layout_status(branch.id),
                color=controller.color_for(branch.id),
            )
            for branch in controller.snapshot.branches
        ]

    @router.post("/layout", response_model=dict[str, BranchLayout])
    async def recalculate_layout(force: bool = False) -> dict[str, BranchLayout]:
        return unwrap(await controller.recalculate_layout(force=force))

    @router.post("/branches", response_model=Branch)
    async def create_branch(branch_input: BranchInput) -> Branch:
        try:
            result = await controller.create_branch(
                None, branch_input.branch_point_node_id, direction=branch_input.direction, name=branch_input.name
            )
        except SubwayError as exc:
            raise_http(exc)
        if result.value is None:
            unwrap(result)
        return result.value

    @router.delete("/branches/{branch_id}")
    async def delete_branch(branch_id: str) -> bool:
        try:
            return unwrap(await controller.delete_branch(branch_id))
        except SubwayError as exc:
            raise_http(exc)

    @router.delete("/branches/{branch_id}/stream")
    async def abort_stream(branch_id: str) -> bool:
        try:
            return controller.abort_stream(branch_id)
        except SubwayError as exc:
            raise_http(exc)

    @router.post("/messages")
    async def send_message(message_input: MessageInput) -> StreamingResponse:
        stream = controller.send_message_stream(message_input.content, message_input.branch_id)
        # Validation happens before the first update, so it can still become an HTTP error.
        try:
            first = await anext(stream, None)
        except SubwayError as exc:
            raise_http(exc)
        if first is None:
            raise HTTPException(status_code=400, detail="Message content is empty")

        async def events() -> AsyncGenerator[str, None]:
            yield format_event(first)
            async for update in stream:
                yield format_event(update)

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
        )

    @router.delete("/nodes/{node_id}")
    async def delete_node(node_id: str) -> bool:
        try:
            return unwrap(await controller.delete_node(node_id))
        except SubwayError as exc:
            raise_http(exc)

    return router
