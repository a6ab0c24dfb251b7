"""
Test suite for apex-ptb

Contains:
- tests/unit/ : Unit tests for individual modules and sandbox ledger scenarios
"""
