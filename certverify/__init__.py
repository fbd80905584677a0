"""
Certificate verification service.

Decides whether an uploaded academic certificate is authentic by delegating
document analysis to an external OCR/LLM service, then records the decision,
a durable verification trail and a per-run audit log.
"""

__version__ = "1.0.0"
