"""Services Layer: wallet adapter, course store, enrollment coordinator, reconciler.

Invariants:
    - Services own all state mutation; core/ functions only compute
    - Every boundary (backend, wallet, storage) is injected, never imported as a global
"""
