"""
Features package — each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    models.py        — data models specific to this feature
    db.py            — database layer (if applicable)
    ...              — any other feature-specific modules

Features:
  work_items  — task records and the payment-gated lifecycle
  payments    — SOL pricing, ledger access and payment matching
  users       — identity resolution from session cookies
"""
