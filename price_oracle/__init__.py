"""
Price Oracle - price aggregation and liquidation risk-trigger service

This package provides a FastAPI microservice that keeps trustworthy,
low-latency USD prices for volatile Solana assets and uses them to drive
forced liquidations and a protocol-wide circuit breaker.

Key Features:
- Credentialed quote API endpoint pool with health tracking and cooldowns
- Provider waterfall: quote API, on-chain bonding curves, liquidity aggregator
- Short-lived in-process price cache with an optional Redis tier
- Live price stream over WebSocket with anomaly detection
- Liquidation threshold checks on every accepted price
- Circuit breaker over realized losses and liquidation velocity
- Security/audit events persisted to MongoDB and forwarded to an audit sink
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
