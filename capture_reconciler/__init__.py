"""
Capture Reconciler — decision logic for untrusted document-capture signals.

Architecture: OCR + lookups + detectors → four independent analyses
(geometry, lookup, redaction, arithmetic) → report + sticky operator ledger.
Philosophy:  Every signal is advisory. Only the operator's decision is sticky.
"""

__version__ = "1.0.0"
