"""FastAPI application factory for the plan-guard HTTP surface.

The ``PlanGuard`` instance lives on ``app.state``; routes reach it
through a dependency, so several apps (and tests) can run side by side
in one process.

Status mapping: 200 allowed, 403 denied, 503 when a backing store
could not answer.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from plan_guard import __version__
from plan_guard.api.schemas import (
    ErrorResponse,
    HealthResponse,
    RecordUsageRequest,
    ValidateRequest,
)
from plan_guard.errors import CollaboratorUnavailable
from plan_guard.models import SubscriptionStatus, UsageRecord
from plan_guard.sdk.client import PlanGuard, PlanGuardError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_guard(request: Request) -> PlanGuard:
    return request.app.state.guard


@router.get("/health", response_model=HealthResponse, tags=["health"])
def health_check(guard: PlanGuard = Depends(get_guard)) -> HealthResponse:
    return HealthResponse(
        version=__version__,
        tiers=len(guard.catalog),
        operations=len(guard.registry),
    )


@router.post(
    "/operations/validate",
    tags=["operations"],
    responses={403: {"description": "Denied"}, 503: {"model": ErrorResponse}},
)
def validate_operation(
    body: ValidateRequest, guard: PlanGuard = Depends(get_guard),
) -> JSONResponse:
    verdict = guard.check(
        body.user_id, body.operation, body.context,
        subscription_level=body.subscription_level,
    )
    return JSONResponse(
        status_code=200 if verdict.allowed else 403,
        content=verdict.to_dict(),
    )


@router.get(
    "/subscription/status",
    response_model=SubscriptionStatus,
    tags=["subscription"],
    responses={503: {"model": ErrorResponse}},
)
def subscription_status(
    user_id: str = Query(..., min_length=1),
    subscription_level: str = Query("free"),
    guard: PlanGuard = Depends(get_guard),
) -> SubscriptionStatus:
    return guard.status(user_id, subscription_level=subscription_level)


@router.post(
    "/usage/record",
    response_model=UsageRecord,
    tags=["usage"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def record_usage(
    body: RecordUsageRequest, guard: PlanGuard = Depends(get_guard),
) -> UsageRecord:
    status_code = 404 if body.operation not in guard.registry else 400
    try:
        return guard.record_usage(body.user_id, body.operation, actual_cost=body.actual_cost)
    except PlanGuardError as e:
        raise HTTPException(status_code=status_code, detail=str(e)) from e


def _unavailable(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Collaborator unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app(guard: PlanGuard | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    Without *guard*, one is built from the discovered ``plan-guard.yaml``.
    """
    if guard is None:
        guard = PlanGuard.from_config()

    app = FastAPI(
        title="plan-guard",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    app.state.guard = guard
    app.add_exception_handler(CollaboratorUnavailable, _unavailable)
    app.include_router(router)
    return app
