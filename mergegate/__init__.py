"""
MergeGate - CI-gated merge orchestration.

Pins a merge to one revision, waits for its CI pipeline with adaptive
backoff, drives a bounded auto-fix loop on failures, and merges only after
job-level success has been verified.
"""

__version__ = "0.1.0"
