"""Deployment orchestrator (dorc).

A single-node control loop for container workloads that provides:
 - a desired-state store with numbered revisions per application
 - live state observation with health probing and change events
 - idempotent reconciliation (scale, self-heal, garbage collection)
 - health-gated rollouts (canary -> partial -> full) with automatic rollback

The implementation is intentionally small so it can be audited and explained.
"""
from __future__ import annotations

__version__ = "0.1.0"
