"""Lending App - Services Package

Process-wide services that sit in front of the lending core:
- Rate limiter (per-client token bucket admission control)
"""
