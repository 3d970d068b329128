"""FastAPI router for Courier API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.security import HTTPAuthorizationCredentials

from courier import __version__
from courier.models import SubscriptionUpdate
from courier.service import CourierService
from courier.webhooks import EventContext
from courier.webhooks.ledger import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

from .auth import OWNER_HEADER, AuthenticatedOwner, resolve_owner, security
from .schemas import (
    AttemptResponse,
    CreateSubscriptionRequest,
    DeliveryDetailResponse,
    DeliveryListResponse,
    DeliveryResponse,
    DispatchResponse,
    EventCatalogResponse,
    EventCategoryResponse,
    EventTypeInfo,
    HealthResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionSecretResponse,
    TriggerEventRequest,
    UpdateSubscriptionRequest,
)

router = APIRouter()

# Service instance (set by app lifespan)
_service: CourierService | None = None


def set_service(service: CourierService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> CourierService:
    """Dependency to get the CourierService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[CourierService, Depends(get_service)]


async def get_owner(
    service: ServiceDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    x_owner_id: Annotated[str | None, Header(alias=OWNER_HEADER)] = None,
) -> AuthenticatedOwner:
    """Dependency resolving the calling owner from the token or header."""
    return resolve_owner(service.settings, credentials, x_owner_id)


OwnerDep = Annotated[AuthenticatedOwner, Depends(get_owner)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health.

    Reports whether the service is initialized and whether its
    background delivery components are running.
    """
    if _service is None:
        return HealthResponse(status="unhealthy", version=__version__, storage_connected=False)
    return HealthResponse(
        status="healthy",
        version=__version__,
        storage_connected=True,
        delivery_pool_running=_service.pool.running,
        retry_scheduler_running=_service.scheduler.running,
    )


@router.get("/webhooks/events", response_model=EventCatalogResponse, tags=["webhooks"])
async def list_event_types(service: ServiceDep) -> EventCatalogResponse:
    """List the event types that can be subscribed to, by category."""
    catalog = service.event_catalog()
    return EventCatalogResponse(
        categories=[
            EventCategoryResponse(
                category=category.value,
                events=[
                    EventTypeInfo(event=event_type.value, description=info.description)
                    for event_type, info in entries
                ],
            )
            for category, entries in catalog.items()
        ]
    )


@router.post(
    "/webhooks",
    response_model=SubscriptionSecretResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["webhooks"],
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    service: ServiceDep,
    owner: OwnerDep,
) -> SubscriptionSecretResponse:
    """Register a webhook endpoint.

    The response contains the signing secret. It is not shown again;
    rotate the secret if it is lost.
    """
    created = await service.registry.create(
        owner_id=owner.owner_id,
        url=request.url,
        event_types=request.event_types,
        description=request.description,
    )
    return SubscriptionSecretResponse.from_registered(created.subscription, created.secret)


@router.get("/webhooks", response_model=SubscriptionListResponse, tags=["webhooks"])
async def list_subscriptions(service: ServiceDep, owner: OwnerDep) -> SubscriptionListResponse:
    """List the caller's webhook subscriptions, newest first."""
    subscriptions = await service.registry.list_subscriptions(owner.owner_id)
    return SubscriptionListResponse(
        subscriptions=[SubscriptionResponse.from_subscription(s) for s in subscriptions],
        total=len(subscriptions),
    )


@router.get(
    "/webhooks/{subscription_id}",
    response_model=SubscriptionResponse,
    tags=["webhooks"],
)
async def get_subscription(
    subscription_id: str,
    service: ServiceDep,
    owner: OwnerDep,
) -> SubscriptionResponse:
    """Get a single webhook subscription."""
    subscription = await service.registry.get(subscription_id, owner.owner_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.patch(
    "/webhooks/{subscription_id}",
    response_model=SubscriptionResponse,
    tags=["webhooks"],
)
async def update_subscription(
    subscription_id: str,
    request: UpdateSubscriptionRequest,
    service: ServiceDep,
    owner: OwnerDep,
) -> SubscriptionResponse:
    """Update the URL, event types, description or active flag."""
    changes = SubscriptionUpdate.model_validate(request.model_dump(exclude_unset=True))
    subscription = await service.registry.update(subscription_id, owner.owner_id, changes)
    return SubscriptionResponse.from_subscription(subscription)


@router.delete(
    "/webhooks/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["webhooks"],
)
async def delete_subscription(
    subscription_id: str,
    service: ServiceDep,
    owner: OwnerDep,
) -> Response:
    """Delete a subscription. Its delivery history is kept."""
    await service.registry.delete(subscription_id, owner.owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/webhooks/{subscription_id}/rotate-secret",
    response_model=SubscriptionSecretResponse,
    tags=["webhooks"],
)
async def rotate_secret(
    subscription_id: str,
    service: ServiceDep,
    owner: OwnerDep,
) -> SubscriptionSecretResponse:
    """Replace the signing secret. Pending retries use the new secret."""
    rotated = await service.registry.rotate_secret(subscription_id, owner.owner_id)
    return SubscriptionSecretResponse.from_registered(rotated.subscription, rotated.secret)


@router.post(
    "/webhooks/{subscription_id}/test",
    response_model=DeliveryResponse,
    tags=["webhooks"],
)
async def send_test_delivery(
    subscription_id: str,
    service: ServiceDep,
    owner: OwnerDep,
) -> DeliveryResponse:
    """Send a test event and return the outcome of the single attempt."""
    delivery = await service.send_test_delivery(subscription_id, owner.owner_id)
    return DeliveryResponse.from_delivery(delivery)


@router.get(
    "/webhooks/{subscription_id}/deliveries",
    response_model=DeliveryListResponse,
    tags=["deliveries"],
)
async def list_deliveries(
    subscription_id: str,
    service: ServiceDep,
    owner: OwnerDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE,
) -> DeliveryListResponse:
    """List a subscription's deliveries, newest first."""
    delivery_page = await service.ledger.list_deliveries(
        subscription_id, owner.owner_id, page=page, limit=limit
    )
    return DeliveryListResponse.from_page(delivery_page)


@router.get(
    "/deliveries/{delivery_id}",
    response_model=DeliveryDetailResponse,
    tags=["deliveries"],
)
async def get_delivery(
    delivery_id: str,
    service: ServiceDep,
    owner: OwnerDep,
) -> DeliveryDetailResponse:
    """Get a delivery with its payload and every attempt."""
    delivery = await service.ledger.get_delivery(delivery_id, owner.owner_id)
    attempts = await service.ledger.list_attempts(delivery_id, owner.owner_id)
    summary = DeliveryResponse.from_delivery(delivery)
    return DeliveryDetailResponse(
        **summary.model_dump(),
        payload=delivery.payload,
        attempt_log=[AttemptResponse.from_attempt(a) for a in attempts],
    )


@router.post(
    "/deliveries/{delivery_id}/redeliver",
    response_model=DeliveryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["deliveries"],
)
async def redeliver(
    delivery_id: str,
    service: ServiceDep,
    owner: OwnerDep,
) -> DeliveryResponse:
    """Queue a new delivery of a finished delivery's event."""
    delivery = await service.redeliver(delivery_id, owner.owner_id)
    return DeliveryResponse.from_delivery(delivery)


@router.post(
    "/events",
    response_model=DispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["events"],
)
async def trigger_event(
    request: TriggerEventRequest,
    service: ServiceDep,
    owner: OwnerDep,
) -> DispatchResponse:
    """Trigger an event for the caller's subscriptions.

    Returns once deliveries are recorded; they are sent in the background.
    An unknown event type is accepted and dispatches nothing.
    """
    result = await service.trigger_event(
        request.event_type,
        request.payload,
        EventContext(owner_id=owner.owner_id),
    )
    return DispatchResponse(
        event_id=result.event_id,
        event_type=result.event_type.value if result.event_type else None,
        dispatched_count=result.dispatched_count,
        delivery_ids=result.delivery_ids,
    )
