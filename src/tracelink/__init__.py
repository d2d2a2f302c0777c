"""
Tracelink: correlated event telemetry for web applications.

Lets request handling, persistence changes and background jobs emit events
that can be reassembled into one causal story, and ships those events to a
remote collector with sampling, PII redaction and resilient delivery.
"""

__version__ = "0.1.0"
