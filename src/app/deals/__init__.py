"""Deal management module -- deals, their stage history, and the workflows around them.

Provides the Deal schemas, the stage tracker (append-only stage history and
derived stage age), the SQLAlchemy model, DealRepository for async
tenant-scoped persistence, and DealService for the deal workflows.
"""
