from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response

from dealflow.context import get_correlation_id
from dealflow.crm.errors import ItemNotFoundError, RemoteWriteError
from dealflow.crm.schemas import (
    DealCreate,
    DealMoveRequest,
    DealUpdate,
    DealView,
    MoveResult,
    MutationStatusRead,
)
from dealflow.crm.service import DealFilters, DealsClient


router = APIRouter(prefix="/api/deals", tags=["deals"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure_response(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, ItemNotFoundError):
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="deal_not_found",
            message=str(exc),
            details={"item_id": exc.item_id},
        )
    if isinstance(exc, RemoteWriteError):
        return error_response(
            request,
            status_code=status.HTTP_502_BAD_GATEWAY,
            code=f"remote_{exc.code}",
            message=str(exc),
            details={"entity": exc.entity, "operation": exc.operation, "detail": exc.detail},
        )
    raise exc


def get_deals_client(request: Request) -> DealsClient:
    return request.app.state.deals_client


@router.get("", response_model=list[DealView])
def list_deals(
    request: Request,
    pipeline_id: str | None = Query(default=None),
    stage_id: str | None = Query(default=None),
    search: str | None = Query(default=None),
    min_value: float | None = Query(default=None),
    max_value: float | None = Query(default=None),
    client: DealsClient = Depends(get_deals_client),
) -> list[DealView] | JSONResponse:
    filters = DealFilters(
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        search=search,
        min_value=min_value,
        max_value=max_value,
    )
    items = client.items(filters)
    if items is None:
        return error_response(
            request,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="deals_not_loaded",
            message=f"Dataset '{client.dataset}' has not been loaded",
        )
    return items


@router.get("/mutations", response_model=list[MutationStatusRead])
def list_mutation_statuses(client: DealsClient = Depends(get_deals_client)) -> list[MutationStatusRead]:
    return [
        MutationStatusRead(
            operation=mutation_status.operation,
            pending=mutation_status.pending,
            settled=mutation_status.settled,
            failed=mutation_status.failed,
            last_error=str(mutation_status.last_error) if mutation_status.last_error else None,
        )
        for mutation_status in client.statuses.values()
    ]


@router.get("/{item_id}", response_model=DealView)
def get_deal(
    request: Request,
    item_id: str,
    client: DealsClient = Depends(get_deals_client),
) -> DealView | JSONResponse:
    record = client.get_item(item_id)
    if record is None:
        return _failure_response(request, ItemNotFoundError(client.dataset, item_id))
    return record


@router.post("", response_model=DealView, status_code=status.HTTP_201_CREATED)
async def create_deal(
    request: Request,
    dto: DealCreate,
    client: DealsClient = Depends(get_deals_client),
) -> DealView | JSONResponse:
    try:
        return await client.create_item(dto)
    except (ItemNotFoundError, RemoteWriteError) as exc:
        return _failure_response(request, exc)


@router.patch("/{item_id}", response_model=DealView)
async def update_deal(
    request: Request,
    item_id: str,
    dto: DealUpdate,
    client: DealsClient = Depends(get_deals_client),
) -> DealView | JSONResponse:
    try:
        return await client.update_item(item_id, dto)
    except (ItemNotFoundError, RemoteWriteError) as exc:
        return _failure_response(request, exc)


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_deal(
    request: Request,
    item_id: str,
    client: DealsClient = Depends(get_deals_client),
) -> Response:
    try:
        await client.delete_item(item_id)
    except (ItemNotFoundError, RemoteWriteError) as exc:
        return _failure_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{item_id}/move", response_model=MoveResult)
async def move_deal(
    request: Request,
    item_id: str,
    dto: DealMoveRequest,
    client: DealsClient = Depends(get_deals_client),
) -> MoveResult | JSONResponse:
    try:
        return await client.move_item(item_id, dto)
    except (ItemNotFoundError, RemoteWriteError) as exc:
        return _failure_response(request, exc)
