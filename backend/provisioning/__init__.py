"""
Customer Provisioning Service — Package Initializer
====================================================

What: Links internal accounts to exactly one Stripe customer each.
Who:  Imported by uvicorn (provisioning.main:app), Alembic and pytest.

Architecture Note:
    ┌─────────────────────────────────────┐
    │      Routes (Request Boundary)      │  ← validation, status codes
    ├─────────────────────────────────────┤
    │   Provisioning Coordinator          │  ← insert-if-absent gate
    ├──────────────────┬──────────────────┤
    │  Identity Store  │  Provider Client │  ← customer_links table / Stripe
    ├──────────────────┴──────────────────┤
    │        Database (Persistence)       │  ← async SQLAlchemy sessions
    └─────────────────────────────────────┘

    The Coordinator never holds a database lock while Stripe is being called.
    The committed PENDING row is the only concurrency token.
"""

__version__ = "1.0.0"
