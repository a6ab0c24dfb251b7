"""
Core domain models, integer math, configuration and contracts.

Everything here is pure data and pure functions: no ledger I/O, so the
transaction builder, the sandbox ledger and the intent engine share one
vocabulary.
"""
