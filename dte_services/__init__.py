"""
dte_services -- stateful orchestration over the issuance kernel.

Holds the composition root (``IssuanceService``) that wires kernel services
from an ``AuthorityConfig`` and owns transaction boundaries, and the
background ``StatusPoller``.
"""
