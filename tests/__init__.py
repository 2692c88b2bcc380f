"""
Backstube Test Suite
====================

Test Organization
-----------------
- tests/unit/   : Fast unit tests with mocks and in-memory fakes (no network)
- tests/fakes.py: Scripted in-memory gateway used by state machine and runtime tests

Testing Philosophy
------------------
- Deterministic timing: tiny backoff and heartbeat intervals, injected clocks
- Follow AAA pattern: Arrange, Act, Assert
"""
