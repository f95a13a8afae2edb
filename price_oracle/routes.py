import time
from typing import List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from .error_handling import DatabaseError, InvalidAssetListError, PriceUnavailableError
from .models import (
    CircuitBreakerStatus, EndpointHealthSnapshot, PriceDetailResponse,
    PriceHistoryResponse, PriceRefreshRequest, PricesResponse, SecurityEvent
)
from .security import verify_admin_key

logger = structlog.get_logger()

# Track application startup time for uptime calculation
app_start_time = time.time()

router = APIRouter()


def get_services(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Price oracle is not ready")
    return services


async def require_admin(x_admin_key: Optional[str] = Header(None),
                        services=Depends(get_services)) -> str:
    """Validate the X-Admin-Key header against ADMIN_API_KEY"""
    expected = services.settings.ADMIN_API_KEY
    if not expected:
        logger.error("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise HTTPException(status_code=500, detail="Admin API key not configured")
    if not verify_admin_key(x_admin_key, expected):
        logger.warning("Rejected admin request with invalid key")
        raise HTTPException(status_code=403, detail="Invalid admin key")
    return x_admin_key


def _split_ids(raw: str) -> List[str]:
    return [part for part in raw.split(",") if part.strip()]


@router.get("/api/prices", response_model=PricesResponse)
async def get_prices(ids: str = Query(..., description="Comma separated asset ids"),
                     services=Depends(get_services)):
    """Prices for the requested assets; unresolved assets are listed as missing"""
    requested = _split_ids(ids)
    try:
        prices = await services.aggregator.get_prices(requested)
    except InvalidAssetListError as e:
        raise HTTPException(status_code=400, detail=str(e))

    missing = [asset_id.strip() for asset_id in requested if asset_id.strip() not in prices]
    return PricesResponse(prices=prices, missing=missing)


@router.get("/api/prices/status")
async def get_price_service_status(services=Depends(get_services)):
    status = services.get_service_status()
    status["uptime_seconds"] = int(time.time() - app_start_time)
    return status


@router.get("/api/prices/cache")
async def get_cache_stats(services=Depends(get_services)):
    return services.aggregator.get_cache_stats()


@router.get("/api/prices/endpoints", response_model=List[EndpointHealthSnapshot])
async def get_endpoint_health(services=Depends(get_services)):
    return services.endpoint_pool.get_health_status()


@router.post("/api/prices/refresh", response_model=PricesResponse)
async def refresh_prices(body: PriceRefreshRequest,
                         services=Depends(get_services),
                         _admin: str = Depends(require_admin)):
    """Optionally clear the cache, then refetch the given (or all enabled) assets"""
    if body.clear_cache:
        services.aggregator.clear_cache(body.asset_ids)
    try:
        prices = await services.refresh_prices(body.asset_ids)
    except InvalidAssetListError as e:
        raise HTTPException(status_code=400, detail=str(e))

    missing = [asset_id for asset_id in (body.asset_ids or []) if asset_id not in prices]
    return PricesResponse(prices=prices, missing=missing)


@router.get("/api/prices/{asset_id}", response_model=PriceDetailResponse)
async def get_price(asset_id: str, services=Depends(get_services)):
    aggregator = services.aggregator
    try:
        record = await aggregator.get_current_price(asset_id)
    except InvalidAssetListError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PriceUnavailableError as e:
        raise HTTPException(status_code=404, detail=str(e))

    try:
        price_24h_ago = await aggregator.get_price_24h_ago(asset_id)
    except Exception as e:
        logger.warning("Could not load 24h price", asset_id=asset_id, error=str(e))
        price_24h_ago = None

    return PriceDetailResponse(
        price=record,
        age_ms=max(0, int(time.time() * 1000) - record.observed_at_ms),
        price_24h_ago=price_24h_ago,
    )


@router.get("/api/prices/{asset_id}/history", response_model=PriceHistoryResponse)
async def get_price_history(asset_id: str,
                            interval: Literal["1h", "4h", "1d"] = Query("1h"),
                            from_ms: Optional[int] = Query(None, ge=0),
                            to_ms: Optional[int] = Query(None, ge=0),
                            services=Depends(get_services)):
    """Stored price history, latest observation per interval bucket"""
    aggregator = services.aggregator
    try:
        asset_id = aggregator.normalize_asset_ids([asset_id])[0]
    except InvalidAssetListError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        points = await aggregator.get_price_history(asset_id, interval, from_ms, to_ms)
    except DatabaseError as e:
        logger.error("Price history query failed", asset_id=asset_id, error=str(e))
        raise HTTPException(status_code=503, detail="Price history unavailable")
    return PriceHistoryResponse(asset_id=asset_id, interval=interval, points=points)


@router.get("/api/health")
async def health_check(services=Depends(get_services)):
    """Liveness plus a summary of the components prices depend on"""
    database = {}
    if services.db_manager is not None:
        database = await services.db_manager.health_check()

    healthy_endpoints = services.endpoint_pool.healthy_count()
    breaker_tripped = services.circuit_breaker.is_tripped
    status = "healthy"
    if healthy_endpoints == 0 or database.get("mongodb", {}).get("status") == "disconnected":
        status = "degraded"

    return {
        "status": status,
        "database": database,
        "endpoints": {"total": len(services.endpoint_pool), "healthy": healthy_endpoints},
        "stream": services.stream.state.value if services.stream else "disabled",
        "circuit_breaker_tripped": breaker_tripped,
        "uptime_seconds": int(time.time() - app_start_time),
    }


# Admin endpoints

@router.get("/api/admin/security-events", response_model=List[SecurityEvent])
async def get_security_events(limit: int = Query(100, ge=1, le=2000),
                              min_severity: Optional[str] = None,
                              event_type: Optional[str] = None,
                              services=Depends(get_services),
                              _admin: str = Depends(require_admin)):
    return services.security.recent_events(limit, min_severity, event_type)


@router.post("/api/admin/endpoints/reset", response_model=List[EndpointHealthSnapshot])
async def reset_endpoints(services=Depends(get_services),
                          _admin: str = Depends(require_admin)):
    services.endpoint_pool.reset_all()
    return services.endpoint_pool.get_health_status()


@router.post("/api/admin/endpoints/{endpoint_id}/test")
async def test_endpoint(endpoint_id: str, services=Depends(get_services),
                        _admin: str = Depends(require_admin)):
    if services.endpoint_pool.get(endpoint_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown endpoint {endpoint_id}")
    return await services.quote_provider.test_endpoint(
        endpoint_id, services.settings.NATIVE_ASSET_ID
    )


@router.get("/api/admin/circuit-breaker", response_model=CircuitBreakerStatus)
async def get_circuit_breaker(services=Depends(get_services),
                              _admin: str = Depends(require_admin)):
    return services.circuit_breaker.get_status()


@router.post("/api/admin/circuit-breaker/check", response_model=CircuitBreakerStatus)
async def check_circuit_breaker(services=Depends(get_services),
                                _admin: str = Depends(require_admin)):
    await services.circuit_breaker.evaluate()
    return services.circuit_breaker.get_status()


@router.post("/api/admin/circuit-breaker/reset", response_model=CircuitBreakerStatus)
async def reset_circuit_breaker(x_operator_id: Optional[str] = Header(None),
                                services=Depends(get_services),
                                _admin: str = Depends(require_admin)):
    if not x_operator_id:
        raise HTTPException(status_code=400, detail="Missing X-Operator-Id header")
    await services.circuit_breaker.reset(x_operator_id)
    return services.circuit_breaker.get_status()
