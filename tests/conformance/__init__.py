"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the flash-loan runtime.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Value is neither created nor destroyed
2. atomicity.py - All-or-nothing batch semantics
3. idempotency.py - Duplicate batch handling
4. determinism.py - Reproducible behavior and stable identifiers

These tests use hypothesis for property-based testing.
"""
