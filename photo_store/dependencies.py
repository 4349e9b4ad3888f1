"""
dependencies.py — FastAPI dependency providers.

Long-lived clients (Redis pool, StripeGateway) are built once in the lifespan and
stored on app.state; the cheap per-request components that wrap them are built here.

Usage in routes:
    from photo_store.dependencies import get_authorizer
    async def my_route(authorizer: DownloadAuthorizer = Depends(get_authorizer)): ...
"""
import redis.asyncio as aioredis
from fastapi import Depends, Request

from photo_store.checkout.gateway import StripeGateway
from photo_store.purchases.authorization import DownloadAuthorizer
from photo_store.purchases.ingestor import WebhookIngestor
from photo_store.store import PurchaseRepository


def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.redis


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.payments


def get_repository(client: aioredis.Redis = Depends(get_redis)) -> PurchaseRepository:
    return PurchaseRepository(client)


def get_authorizer(
    repository: PurchaseRepository = Depends(get_repository),
) -> DownloadAuthorizer:
    return DownloadAuthorizer(repository)


def get_ingestor(
    repository: PurchaseRepository = Depends(get_repository),
    gateway: StripeGateway = Depends(get_gateway),
    client: aioredis.Redis = Depends(get_redis),
) -> WebhookIngestor:
    return WebhookIngestor(repository, gateway, client)
