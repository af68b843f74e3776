"""
DTE Kernel - Tax Document Issuance & Submission

Numbers, signs, transmits and tracks electronic tax documents against an
authority's intake service with:
- Concurrency-safe folio allocation bound to granted ranges
- Deterministic canonical XML and enveloped XML-DSig signatures
- Seed/sign/token session handshake with single-flight caching
- Bounded-retry submission and a normalized outcome state machine
"""

__version__ = "0.1.0"
