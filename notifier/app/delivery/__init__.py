"""
delivery — Multi-channel alert delivery.

Sub-modules:
    channels/        — Per-channel transports (email, WhatsApp, SMS, Slack, dashboard)
    dispatcher       — Orchestration: selection, rate limiting, render, send, record
    registry         — Channel catalogue with priorities and rate limits
    rate_limiter     — Per (recipient, channel) sliding windows
    personalization  — Template rendering, tone and channel formatting
    selector         — Urgency-driven channel choice
    tracker          — Delivery ledger and engagement analytics
    service          — Builds the whole stack from settings
    models           — Data structures shared across the system
"""
