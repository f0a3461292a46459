"""Outbound campaign dispatch engine for email and SMS/MMS channels.

The package turns queued campaign sends into confirmed deliveries:

- Quota-aware email scheduling with idempotent queue inserts
- Lease-based email queue worker with retry, backoff and dead-lettering
- Carrier-paced SMS dispatch with sticky sender numbers and thread persistence
- Prometheus metrics, a FastAPI control surface and an operator CLI

Example:
    Basic usage with the FastAPI application::

        from campaign_dispatch.core import DispatchCore
        from campaign_dispatch.api import create_app

        core = DispatchCore(db_path="/data/dispatch.db")
        app = create_app(core, api_token="secret")
"""
