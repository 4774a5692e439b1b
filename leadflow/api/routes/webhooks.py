from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status

from leadflow.runtime import get_runtime
from leadflow.schemas.webhooks import (
    DeliveryFailureOut,
    DeliveryLogOut,
    DeliveryStatus,
    DeliverySummaryOut,
    ReplayAllOut,
    ReplayAllRequest,
    ReplayOut,
    SendTestEventOut,
    SendTestEventRequest,
    SubscriptionCreateRequest,
    SubscriptionCreatedOut,
    SubscriptionOut,
    SubscriptionPatchRequest,
    VerifyEndpointOut,
    VerifyEndpointRequest,
)
from leadflow.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)

router = APIRouter()


@router.post("/subscriptions", response_model=SubscriptionCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    payload: SubscriptionCreateRequest,
    runtime=Depends(get_runtime),
) -> SubscriptionCreatedOut:
    try:
        row = await runtime.dispatcher.create_subscription(
            target_url=payload.target_url,
            event_types=payload.event_types,
            signing_secret=payload.signing_secret,
            is_active=payload.is_active,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SubscriptionCreatedOut(**row)


@router.get("/subscriptions", response_model=list[SubscriptionOut])
async def list_subscriptions(
    runtime=Depends(get_runtime),
    active_only: bool = Query(default=False),
    event_type: str | None = Query(default=None),
) -> list[SubscriptionOut]:
    try:
        rows = await runtime.repository.list_subscriptions(active_only=active_only, event_type=event_type)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [SubscriptionOut(**row) for row in rows]


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionOut)
async def get_subscription(subscription_id: str, runtime=Depends(get_runtime)) -> SubscriptionOut:
    try:
        row = await runtime.repository.get_subscription(subscription_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionOut(**row)


@router.patch("/subscriptions/{subscription_id}", response_model=SubscriptionOut)
async def patch_subscription(
    subscription_id: str,
    payload: SubscriptionPatchRequest,
    runtime=Depends(get_runtime),
) -> SubscriptionOut:
    try:
        row = await runtime.repository.update_subscription(
            subscription_id,
            target_url=payload.target_url,
            event_types=payload.event_types,
            is_active=payload.is_active,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionOut(**row)


@router.delete("/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(subscription_id: str, runtime=Depends(get_runtime)) -> Response:
    try:
        await runtime.repository.delete_subscription(subscription_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/deliveries", response_model=list[DeliveryLogOut])
async def list_deliveries(
    runtime=Depends(get_runtime),
    subscription_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    status_filter: DeliveryStatus | None = Query(default=None, alias="status"),
    delivery_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[DeliveryLogOut]:
    try:
        rows = await runtime.repository.list_delivery_logs(
            subscription_id=subscription_id,
            event_type=event_type,
            status=status_filter,
            delivery_id=delivery_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [DeliveryLogOut(**row) for row in rows]


@router.get("/failures", response_model=list[DeliveryFailureOut])
async def list_failures(
    runtime=Depends(get_runtime),
    subscription_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    include_resolved: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[DeliveryFailureOut]:
    try:
        rows = await runtime.repository.list_delivery_failures(
            subscription_id=subscription_id,
            event_type=event_type,
            include_resolved=include_resolved,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [DeliveryFailureOut(**row) for row in rows]


@router.post("/failures/replay-all", response_model=ReplayAllOut, status_code=status.HTTP_202_ACCEPTED)
async def replay_all_failures(
    payload: ReplayAllRequest | None = Body(default=None),
    runtime=Depends(get_runtime),
) -> ReplayAllOut:
    filters = payload or ReplayAllRequest()
    try:
        replayed = await runtime.dispatcher.replay_all(
            event_type=filters.event_type,
            subscription_id=filters.subscription_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ReplayAllOut(replayed=replayed)


@router.post("/failures/{failure_id}/replay", response_model=ReplayOut, status_code=status.HTTP_202_ACCEPTED)
async def replay_failure(failure_id: str, runtime=Depends(get_runtime)) -> ReplayOut:
    try:
        failure = await runtime.dispatcher.replay(failure_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ReplayOut(failure_id=failure["id"], delivery_id=failure["delivery_id"])


@router.post("/test", response_model=SendTestEventOut, status_code=status.HTTP_202_ACCEPTED)
async def send_test_event(payload: SendTestEventRequest, runtime=Depends(get_runtime)) -> SendTestEventOut:
    try:
        delivery_id = await runtime.dispatcher.send_test_event(
            payload.subscription_id,
            event_type=payload.event_type,
            payload=payload.payload,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SendTestEventOut(queued=True, delivery_id=delivery_id)


@router.post("/verify", response_model=VerifyEndpointOut)
async def verify_endpoint(payload: VerifyEndpointRequest, runtime=Depends(get_runtime)) -> VerifyEndpointOut:
    result = await runtime.dispatcher.verify_endpoint(payload.url, event_type=payload.event_type)
    return VerifyEndpointOut(**result)


@router.get("/metrics", response_model=DeliverySummaryOut)
async def delivery_summary(runtime=Depends(get_runtime)) -> DeliverySummaryOut:
    try:
        summary = await runtime.dispatcher.delivery_summary()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return DeliverySummaryOut(**summary)
