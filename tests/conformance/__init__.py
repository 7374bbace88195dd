"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the margin engine.

The tests are organized by invariant:
1. test_engine_invariants.py - Pool aggregates match open positions; replay determinism
2. test_atomic_execution.py - All-or-nothing entry points, reentrancy, serialization

These tests use hypothesis for property-based testing.
"""
