"""
Order Management service package.

Serves catalog items, orders and sales analytics for a small retail
operation taking orders through social channels.

Structure:
- app.main: FastAPI app, routes, and read-path wiring.
- app.caching: Stale-while-revalidate response cache and version registry.
- app.pagination: Offset and cursor paginators.
- app.analytics: Time-windowed sales aggregation.
- app.persistence: PostgreSQL and in-memory stores.
"""
