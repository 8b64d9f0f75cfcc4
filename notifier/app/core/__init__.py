"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — delivery exception taxonomy & handlers
    middleware  — request logging and correlation IDs
    health      — health check aggregation
    database    — async SQL engine for the delivery ledger
    cache       — Redis client for the distributed rate limiter
"""
